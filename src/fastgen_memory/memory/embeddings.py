"""
Embedding synthesis
===================

Turns a text passage into a fixed-length vector using whatever the provider
can give us. The default ``prompt`` strategy asks a general text model to emit
a numeric array and extracts it from the reply; ``endpoint`` calls a dedicated
embeddings API and only falls back to the prompt path when that reply is
unusable.

The prompt path is a best-effort structured extraction, not a precision
embedding. Replies of the wrong length are forced to ``EMB_DIM`` by
right-padding with zeros or truncating the tail, so similarity between such
vectors is only approximate.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from typing import List, Sequence

import numpy as np

from fastgen_memory.clients.oai import classify_error, complete, embed_text
from .credentials import CredentialPool
from .errors import EmbeddingParseError, EmbeddingProviderError, PoolExhausted
from .models import Credential

logger = logging.getLogger(__name__)

_NUMBER = r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?"
_ARRAY_RE = re.compile(rf"\[\s*{_NUMBER}\s*(?:,\s*{_NUMBER}\s*)*,?\s*\]")
_FENCE_RE = re.compile(r"```(?:json|python)?", re.IGNORECASE)

PROMPT_TEMPLATE = (
    "Represent the meaning of the text below as an embedding vector.\n"
    "Respond with ONLY a JSON array of exactly {dim} floating point numbers "
    "between -1 and 1. Do not add prose, labels or code fences.\n\n"
    "Text:\n{text}"
)


def extract_vector(raw: str | None) -> List[float]:
    """
    Return the first well-formed numeric array literal in ``raw``.

    :raises EmbeddingParseError: when no array with at least one number exists.
    """
    if not raw:
        raise EmbeddingParseError("Provider returned an empty response")

    cleaned = _FENCE_RE.sub("", raw)
    match = _ARRAY_RE.search(cleaned)
    if match is None:
        raise EmbeddingParseError(
            f"No numeric array found in provider response ({len(raw)} chars)"
        )

    body = match.group(0)[1:-1]
    values = [float(tok) for tok in body.split(",") if tok.strip()]
    return [v if math.isfinite(v) else 0.0 for v in values]


def fit_dimension(values: Sequence[float], dim: int) -> np.ndarray:
    """
    Force ``values`` to exactly ``dim`` entries.

    Short vectors are right-padded with zeros, long vectors keep their first
    ``dim`` entries. Non-finite entries become zero.
    """
    vec = np.zeros(dim, dtype=np.float32)
    head = np.asarray(list(values)[:dim], dtype=np.float32)
    vec[: head.size] = head
    np.nan_to_num(vec, copy=False, nan=0.0, posinf=0.0, neginf=0.0)
    return vec


class EmbeddingSynthesizer:
    """Embed text with credential rotation and a fixed attempt budget."""

    def __init__(
        self,
        pool: CredentialPool,
        *,
        dim: int,
        strategy: str = "prompt",
        prompt_model: str | None = None,
        endpoint_model: str | None = None,
        max_attempts: int = 3,
        pool_retry_delay: float = 1.0,
    ) -> None:
        if strategy not in ("prompt", "endpoint"):
            raise ValueError(f"Unknown embedding strategy {strategy!r}")
        self.pool = pool
        self.dim = dim
        self.strategy = strategy
        self.prompt_model = prompt_model
        self.endpoint_model = endpoint_model
        self.max_attempts = max(1, max_attempts)
        self.pool_retry_delay = pool_retry_delay

    async def embed(self, text: str) -> np.ndarray:
        """
        Return a float32 vector of shape ``(dim,)`` for ``text``.

        :raises ValueError: ``text`` is blank.
        :raises EmbeddingParseError: the last attempt produced no usable array.
        :raises EmbeddingProviderError: provider or credential failures used up
            the attempt budget.
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed blank text")

        last_exc: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                credential = self.pool.acquire()
            except PoolExhausted as e:
                last_exc = e
                if attempt < self.max_attempts:
                    delay = self.pool_retry_delay
                    if e.retry_after is not None:
                        delay = min(delay, e.retry_after)
                    logger.warning(
                        "No provider credential available (attempt %d/%d); retrying in %.1fs",
                        attempt, self.max_attempts, delay,
                    )
                    await asyncio.sleep(delay)
                continue

            try:
                values = await self._attempt(credential, text)
            except EmbeddingParseError as e:
                logger.warning(
                    "Unparseable embedding reply (attempt %d/%d, key=%s): %s",
                    attempt, self.max_attempts, credential.masked, e,
                )
                last_exc = e
                continue
            except EmbeddingProviderError as e:
                last_exc = e
                continue

            self.pool.mark_success(credential)
            if len(values) != self.dim:
                logger.debug("Fitting embedding of length %d to %d", len(values), self.dim)
            return fit_dimension(values, self.dim)

        if isinstance(last_exc, EmbeddingParseError):
            raise EmbeddingParseError(
                f"No usable embedding after {self.max_attempts} attempts"
            ) from last_exc
        raise EmbeddingProviderError(
            f"Embedding provider failed after {self.max_attempts} attempts"
        ) from last_exc

    async def _attempt(self, credential: Credential, text: str) -> List[float]:
        if self.strategy == "endpoint":
            try:
                values = await self._call(
                    credential, embed_text(text, api_key=credential.secret, model=self.endpoint_model)
                )
            except EmbeddingProviderError as e:
                if e.__cause__ is not None and classify_error(e.__cause__) != "transient":
                    raise
                logger.info("Embeddings endpoint unavailable (%s); using prompt fallback", e)
            else:
                if values:
                    return values
                logger.info("Embeddings endpoint returned no data; using prompt fallback")

        prompt = PROMPT_TEMPLATE.format(dim=self.dim, text=text)
        raw = await self._call(
            credential, complete(prompt, api_key=credential.secret, model=self.prompt_model)
        )
        return extract_vector(raw)

    async def _call(self, credential: Credential, coro):
        """Await a provider call, updating credential status on failure."""
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify_error(e)
            if kind == "quota":
                self.pool.mark_exhausted(credential)
            elif kind == "auth":
                self.pool.mark_invalid(credential)
            else:
                logger.warning("Provider call failed (key=%s): %s", credential.masked, e)
            raise EmbeddingProviderError(f"{kind} error from provider: {e}") from e


__all__ = ["EmbeddingSynthesizer", "extract_vector", "fit_dimension", "PROMPT_TEMPLATE"]
