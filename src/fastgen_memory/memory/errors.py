"""
Error taxonomy for the memory engine
====================================

Every failure raised by the memory subsystem derives from
:class:`MemoryEngineError` so chat handlers can degrade with one ``except``.
"""

from __future__ import annotations


class MemoryEngineError(Exception):
    """Base class for memory subsystem failures."""


class PoolExhausted(MemoryEngineError):
    """Every credential is either invalid or cooling down.

    ``retry_after`` is the number of seconds until the earliest cooldown ends,
    or ``None`` when no credential will ever become usable again.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class EmbeddingError(MemoryEngineError):
    """Embedding could not be synthesized within the attempt budget."""


class EmbeddingParseError(EmbeddingError):
    """The provider answered but no numeric array could be extracted."""


class EmbeddingProviderError(EmbeddingError):
    """Network, auth or quota failure talking to the text provider."""


class IndexProvisionError(MemoryEngineError):
    """The remote collection cannot be made ready (fatal for memory)."""


class IndexProvisionTimeout(IndexProvisionError):
    """Provisioning did not reach READY within the polling budget."""


class IndexNotReady(MemoryEngineError):
    """A store operation ran before the collection was provisioned."""


class StoreError(MemoryEngineError):
    """Remote vector service failure, surfaced after the local retry."""


__all__ = [
    "MemoryEngineError",
    "PoolExhausted",
    "EmbeddingError",
    "EmbeddingParseError",
    "EmbeddingProviderError",
    "IndexProvisionError",
    "IndexProvisionTimeout",
    "IndexNotReady",
    "StoreError",
]
