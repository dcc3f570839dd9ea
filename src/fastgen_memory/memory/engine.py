"""
Retrieval orchestration
=======================

The object chat handling talks to. ``remember`` and ``recall`` are best
effort: they log and degrade instead of raising, so a broken memory layer
costs conversational context but never a chat reply. ``start`` is the one
fatal path, because without a ready collection nothing here can work.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import nullcontext
from typing import Any, Dict, Iterable, Tuple

import numpy as np

from .embeddings import EmbeddingSynthesizer
from .errors import MemoryEngineError
from .models import ChatMessage, CollectionInfo, MemoryRecord, RetrievalResult
from .vector.store import MemoryStore

logger = logging.getLogger(__name__)

_PROGRESS_EVERY = 100


def _deadline(timeout: float | None):
    return asyncio.timeout(timeout) if timeout and timeout > 0 else nullcontext()


class MemoryEngine:
    """Façade over the synthesizer and the store."""

    def __init__(
        self,
        synthesizer: EmbeddingSynthesizer,
        store: MemoryStore,
        *,
        excerpt_chars: int = 1000,
        default_top_k: int = 5,
        default_timeout: float | None = None,
        backfill_concurrency: int = 8,
    ) -> None:
        self.synthesizer = synthesizer
        self.store = store
        self.excerpt_chars = excerpt_chars
        self.default_top_k = default_top_k
        self.default_timeout = default_timeout
        self.backfill_concurrency = max(1, backfill_concurrency)

    async def start(self) -> CollectionInfo:
        """
        Provision the collection before serving traffic.

        :raises IndexProvisionError: including ``IndexProvisionTimeout``.
        """
        store = self.store
        return await store.provisioner.ensure_ready(store.collection, store.dimension, store.metric)

    # --- writes -------------------------------------------------------------

    async def remember(self, message: ChatMessage, *, timeout: float | None = None) -> bool:
        """
        Embed and store one chat message. Returns ``True`` when stored.

        Failures are logged and swallowed; message delivery never depends on
        memory.
        """
        if not message.content or not message.content.strip():
            return False

        timeout = self.default_timeout if timeout is None else timeout
        try:
            async with _deadline(timeout):
                vec = await self.synthesizer.embed(message.content)
                record = MemoryRecord.from_message(message, vec, excerpt_chars=self.excerpt_chars)
                await self.store.upsert(record)
        except TimeoutError:
            logger.warning("Memory write for %s timed out after %.1fs; skipped", message.record_id, timeout)
            return False
        except (MemoryEngineError, ValueError) as e:
            logger.error("Memory write for %s skipped: %s", message.record_id, e)
            return False
        except Exception:
            logger.exception("Unexpected error writing memory for %s; skipped", message.record_id)
            return False

        logger.info("Stored memory vector %s", record.id)
        return True

    async def backfill(
        self,
        messages: Iterable[ChatMessage],
        *,
        concurrency: int | None = None,
    ) -> Tuple[int, int]:
        """
        Remember many messages with bounded concurrency.

        Returns ``(stored, failed)``; blank messages count as failed.
        """
        sem = asyncio.Semaphore(concurrency or self.backfill_concurrency)

        async def _one(msg: ChatMessage) -> bool:
            async with sem:
                return await self.remember(msg)

        stored = failed = 0
        tasks = [asyncio.create_task(_one(m)) for m in messages]
        for fut in asyncio.as_completed(tasks):
            if await fut:
                stored += 1
            else:
                failed += 1
            if (stored + failed) % _PROGRESS_EVERY == 0:
                logger.info("Backfill progress: %d stored, %d failed", stored, failed)

        logger.info("Backfill finished: %d stored, %d failed", stored, failed)
        return stored, failed

    # --- reads --------------------------------------------------------------

    async def recall(
        self,
        user_id: str,
        query_text: str,
        *,
        chat_id: str | None = None,
        exclude_chat_id: str | None = None,
        top_k: int | None = None,
        timeout: float | None = None,
    ) -> RetrievalResult:
        """
        Return the user's most similar prior messages for ``query_text``.

        Scoped to ``chat_id`` when given. ``exclude_chat_id`` leaves one chat
        out, typically the conversation already in the prompt, so only the
        user's other chats are searched. Any failure returns an empty result.
        """
        if not query_text or not query_text.strip():
            return RetrievalResult.empty()

        k = self.default_top_k if top_k is None else top_k
        flt: Dict[str, Any] = {"user_id": str(user_id)}
        if chat_id is not None:
            flt["chat_id"] = str(chat_id)
        exclude: Dict[str, Any] = {}
        if exclude_chat_id is not None:
            exclude["chat_id"] = str(exclude_chat_id)

        timeout = self.default_timeout if timeout is None else timeout
        try:
            async with _deadline(timeout):
                qvec = await self.synthesizer.embed(query_text)
                if not np.any(qvec):
                    logger.info("Degenerate query embedding (user_id=%s); no memory recalled", user_id)
                    return RetrievalResult.empty()
                result = await self.store.query(qvec, k, flt, exclude=exclude)
        except TimeoutError:
            logger.warning("Memory recall for user %s timed out after %.1fs", user_id, timeout)
            return RetrievalResult.empty()
        except (MemoryEngineError, ValueError) as e:
            logger.warning("Memory recall for user %s failed: %s", user_id, e)
            return RetrievalResult.empty()
        except Exception:
            logger.exception("Unexpected error recalling memory for user %s", user_id)
            return RetrievalResult.empty()

        if not result:
            logger.info("No memory recalled (user_id=%s chat_id=%s)", user_id, chat_id)
        return result

    # --- deletes ------------------------------------------------------------

    async def forget(self, user_id: str, *, expected: int | None = None) -> int:
        """
        Delete every record for ``user_id`` (account deletion).

        A deleted count that differs from ``expected`` (or from the pre-delete
        count when not given) is logged as a partial delete.

        :raises StoreError: the remote delete failed.
        """
        return await self._forget({"user_id": str(user_id)}, expected)

    async def forget_chat(self, user_id: str, chat_id: str, *, expected: int | None = None) -> int:
        """Delete the records of one conversation."""
        return await self._forget({"user_id": str(user_id), "chat_id": str(chat_id)}, expected)

    async def _forget(self, flt: Dict[str, str], expected: int | None) -> int:
        if expected is None:
            try:
                expected = await self.store.count(flt)
            except MemoryEngineError as e:
                logger.warning("Could not count records before delete %s: %s", flt, e)

        deleted = await self.store.delete_by_filter(flt)
        if expected is not None and deleted != expected:
            logger.warning("Partial memory delete for %s: expected %d, deleted %d", flt, expected, deleted)
        else:
            logger.info("Deleted %d memory vector(s) for %s", deleted, flt)
        return deleted

    async def stats(self) -> Dict[str, Any]:
        return await self.store.stats()


__all__ = ["MemoryEngine"]
