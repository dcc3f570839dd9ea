"""Async record operations on the memory collection.

The remote collection is the only copy of the data. Remote failures are
retried once with exponential backoff before surfacing as
:class:`~fastgen_memory.memory.errors.StoreError`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, TypeVar

import numpy as np

from ..errors import IndexProvisionError, StoreError
from ..models import (
    FILTERABLE_FIELDS,
    CollectionInfo,
    MemoryRecord,
    RetrievalHit,
    RetrievalResult,
    matches_filter,
    rank_hits,
)
from .gateway import MilvusGateway
from .provisioner import IndexLifecycleManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


def check_vector(vector, dim: int) -> list[float]:
    """Return ``vector`` as a writable float list, enforcing ``len == dim``."""

    v = np.array(vector, dtype=np.float32, copy=True).reshape(-1)
    if v.shape[0] != dim:
        raise ValueError(f"Expected embedding of dim {dim}, got {v.shape[0]}")
    np.nan_to_num(v, copy=False)
    return v.tolist()


def check_filter(flt: Mapping[str, Any] | None) -> Dict[str, str]:
    flt = dict(flt or {})
    unknown = set(flt) - set(FILTERABLE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot filter on unknown metadata field(s): {', '.join(sorted(unknown))}")
    return {key: str(value) for key, value in flt.items()}


class MemoryStore:
    """Upsert / query / delete over one provisioned collection."""

    def __init__(
        self,
        gateway: MilvusGateway,
        provisioner: IndexLifecycleManager,
        *,
        collection: str,
        dimension: int,
        metric: str = "COSINE",
        retry_backoff: float = 0.5,
        overfetch: int = 2,
    ) -> None:
        self.gateway = gateway
        self.provisioner = provisioner
        self.collection = collection
        self.dimension = dimension
        self.metric = metric
        self.retry_backoff = retry_backoff
        self.overfetch = max(1, overfetch)

    async def _ready(self) -> CollectionInfo:
        return await self.provisioner.ensure_ready(self.collection, self.dimension, self.metric)

    async def _call(self, op: str, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run a blocking gateway call with one retry after backoff."""
        attempts = 2
        for attempt in range(attempts):
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except (ValueError, IndexProvisionError):
                raise
            except Exception as e:
                if attempt + 1 >= attempts:
                    raise StoreError(f"{op} failed on {self.collection!r}: {e}") from e
                delay = self.retry_backoff * (2 ** attempt)
                logger.warning("%s failed (%s); retrying in %.2fs", op, e, delay)
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    # --- writes -------------------------------------------------------------

    def _row(self, record: MemoryRecord) -> Dict[str, Any]:
        row = dict(record.metadata)
        row["id"] = record.id
        row["embedding"] = check_vector(record.vector, self.dimension)
        return row

    async def upsert(self, record: MemoryRecord) -> None:
        """
        Insert or overwrite ``record`` by id.

        :raises ValueError: the vector length differs from the collection dim.
        :raises StoreError: the remote write failed twice.
        """
        await self.upsert_many([record])

    async def upsert_many(self, records: Iterable[MemoryRecord]) -> None:
        rows = [self._row(r) for r in records]
        if not rows:
            return
        info = await self._ready()
        await self._call("upsert", self.gateway.upsert, info.name, rows)
        logger.debug("Upserted %d memory vector(s)", len(rows))

    async def delete_by_filter(self, flt: Mapping[str, Any]) -> int:
        """Delete every record matching ``flt``; returns the reported count."""
        flt = check_filter(flt)
        if not flt:
            raise ValueError("Refusing to delete with an empty filter")
        info = await self._ready()
        return await self._call("delete", self.gateway.delete, info.name, flt)

    # --- reads --------------------------------------------------------------

    async def query(
        self,
        vector,
        top_k: int,
        flt: Mapping[str, Any] | None = None,
        *,
        exclude: Mapping[str, Any] | None = None,
    ) -> RetrievalResult:
        """
        Return at most ``top_k`` hits matching ``flt``.

        Fields in ``exclude`` must differ from the given value (e.g. recall
        across a user's other chats). Ordered by descending similarity, ties
        broken by most recent timestamp. Hits that violate either constraint
        are never returned.
        """
        flt = check_filter(flt)
        exclude = check_filter(exclude)
        if top_k <= 0:
            return RetrievalResult.empty()
        vec = check_vector(vector, self.dimension)
        info = await self._ready()

        raw = await self._call(
            "query",
            self.gateway.search,
            info.name,
            vec,
            limit=top_k * self.overfetch,
            flt=flt,
            metric=info.metric,
            exclude=exclude,
        )

        hits: List[RetrievalHit] = []
        for item in raw:
            metadata = item.get("metadata") or {}
            if not matches_filter(metadata, flt, exclude):
                logger.error(
                    "Dropping hit %s that violates filter %s (exclude %s)", item.get("id"), flt, exclude
                )
                continue
            hits.append(RetrievalHit(id=str(item["id"]), score=float(item["score"]), metadata=metadata))

        return RetrievalResult(rank_hits(hits, top_k))

    async def count(self, flt: Mapping[str, Any] | None = None) -> int:
        flt = check_filter(flt)
        info = await self._ready()
        return await self._call("count", self.gateway.count, info.name, flt)

    async def stats(self) -> Dict[str, Any]:
        info = await self._ready()
        total = await self._call("count", self.gateway.count, info.name, {})
        return {
            "collection": info.name,
            "dimension": info.dimension,
            "metric": info.metric,
            "state": info.state.value,
            "records": total,
        }


__all__ = ["MemoryStore", "check_vector", "check_filter"]
