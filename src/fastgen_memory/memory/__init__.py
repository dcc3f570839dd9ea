"""
Public façade for chat memory
=============================

Stable, async API used by the chat and account handlers. Import from here::

    from fastgen_memory.memory import remember, recall, forget, ChatMessage

The engine is built from ``fastgen_memory.config`` on first use. Call
:func:`start` during application startup so a collection that cannot be
provisioned fails the boot instead of silently disabling memory.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Tuple

from .context import build_memory_messages
from .credentials import CredentialPool
from .embeddings import EmbeddingSynthesizer
from .engine import MemoryEngine
from .errors import (
    EmbeddingParseError,
    EmbeddingProviderError,
    IndexNotReady,
    IndexProvisionError,
    IndexProvisionTimeout,
    MemoryEngineError,
    PoolExhausted,
    StoreError,
)
from .models import ChatMessage, CollectionInfo, RetrievalHit, RetrievalResult

# Limit the public surface (keeps star-imports clean)
__all__ = [
    "ChatMessage",
    "CollectionInfo",
    "RetrievalHit",
    "RetrievalResult",
    "MemoryEngine",
    "MemoryEngineError",
    "PoolExhausted",
    "EmbeddingParseError",
    "EmbeddingProviderError",
    "IndexProvisionError",
    "IndexProvisionTimeout",
    "IndexNotReady",
    "StoreError",
    "build_engine",
    "get_engine",
    "set_engine",
    "start",
    "remember",
    "recall",
    "forget",
    "forget_chat",
    "backfill",
    "stats",
    "build_memory_messages",
]

# --- Internals -------------------------------------------------------------

_engine: MemoryEngine | None = None


def build_engine() -> MemoryEngine:
    """Wire a :class:`MemoryEngine` from the loaded configuration."""
    from fastgen_memory.config import memory as memory_cfg, milvus as milvus_cfg, provider as provider_cfg
    from .vector.gateway import MilvusGateway
    from .vector.provisioner import IndexLifecycleManager
    from .vector.store import MemoryStore

    pool = CredentialPool(provider_cfg.API_KEYS, cooldown=provider_cfg.CREDENTIAL_COOLDOWN)
    synthesizer = EmbeddingSynthesizer(
        pool,
        dim=memory_cfg.EMB_DIM,
        strategy=provider_cfg.EMB_STRATEGY,
        prompt_model=provider_cfg.EMB_PROMPT_MODEL_ID,
        endpoint_model=provider_cfg.EMB_MODEL_ID,
        max_attempts=provider_cfg.EMBED_MAX_ATTEMPTS,
        pool_retry_delay=provider_cfg.POOL_RETRY_DELAY,
    )
    gateway = MilvusGateway(
        milvus_cfg.MILVUS_URI,
        token=milvus_cfg.MILVUS_TOKEN,
        nlist=milvus_cfg.MILVUS_NLIST,
        nprobe=milvus_cfg.MILVUS_NPROBE,
    )
    provisioner = IndexLifecycleManager(
        gateway,
        poll_interval=milvus_cfg.PROVISION_POLL_INTERVAL,
        max_attempts=milvus_cfg.PROVISION_MAX_ATTEMPTS,
        timeout=milvus_cfg.PROVISION_TIMEOUT,
        hints={"cloud": milvus_cfg.MILVUS_CLOUD, "region": milvus_cfg.MILVUS_REGION},
    )
    store = MemoryStore(
        gateway,
        provisioner,
        collection=milvus_cfg.MILVUS_COLLECTION,
        dimension=memory_cfg.EMB_DIM,
        metric=milvus_cfg.MILVUS_METRIC,
        retry_backoff=memory_cfg.STORE_RETRY_BACKOFF,
        overfetch=memory_cfg.QUERY_OVERFETCH,
    )
    return MemoryEngine(
        synthesizer,
        store,
        excerpt_chars=memory_cfg.CONTENT_EXCERPT_CHARS,
        default_top_k=memory_cfg.RECALL_TOP_K,
        default_timeout=memory_cfg.MEMORY_TIMEOUT or None,
        backfill_concurrency=memory_cfg.BACKFILL_CONCURRENCY,
    )


def get_engine() -> MemoryEngine:
    """Return the process-wide engine, building it on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: MemoryEngine | None) -> None:
    """Replace the process-wide engine (tests, alternative wiring)."""
    global _engine
    _engine = engine


# --- Public async-friendly API ----------------------------------------------

async def start() -> CollectionInfo:
    """Provision the memory collection. Raises on provisioning failure."""
    return await get_engine().start()


async def remember(message: ChatMessage, *, timeout: float | None = None) -> bool:
    """Best-effort write of one chat message into memory."""
    return await get_engine().remember(message, timeout=timeout)


async def recall(
    user_id: str,
    query_text: str,
    *,
    chat_id: str | None = None,
    exclude_chat_id: str | None = None,
    top_k: int | None = None,
    timeout: float | None = None,
) -> RetrievalResult:
    """Similar prior messages for ``user_id``; empty on any failure."""
    return await get_engine().recall(
        user_id,
        query_text,
        chat_id=chat_id,
        exclude_chat_id=exclude_chat_id,
        top_k=top_k,
        timeout=timeout,
    )


async def forget(user_id: str, *, expected: int | None = None) -> int:
    """Delete all of a user's memory; returns the deleted count."""
    return await get_engine().forget(user_id, expected=expected)


async def forget_chat(user_id: str, chat_id: str) -> int:
    """Delete the memory of one conversation."""
    return await get_engine().forget_chat(user_id, chat_id)


async def backfill(messages: Iterable[ChatMessage], *, concurrency: int | None = None) -> Tuple[int, int]:
    """Bulk import existing chat history; returns ``(stored, failed)``."""
    return await get_engine().backfill(messages, concurrency=concurrency)


async def stats() -> Dict[str, Any]:
    """Collection name, dimension, metric, state and record count."""
    return await get_engine().stats()
