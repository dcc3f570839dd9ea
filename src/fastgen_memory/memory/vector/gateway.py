"""Blocking wrapper around the Milvus ORM used by the provisioner and store.

Every method here performs network I/O; async callers run them through
``asyncio.to_thread``.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List, Mapping, Sequence

from pymilvus import (
    Collection,
    CollectionSchema,
    DataType,
    FieldSchema,
    connections,
    utility,
)
from pymilvus.client.types import LoadState

from ..models import FILTERABLE_FIELDS, SCALAR_FIELDS

logger = logging.getLogger(__name__)

_VECTOR_FIELD = "embedding"
_OUTPUT_FIELDS = ["*"]


def build_expr(flt: Mapping[str, Any], exclude: Mapping[str, Any] | None = None) -> str:
    """
    Render exact-match (``flt``) and not-equal (``exclude``) constraints as
    one Milvus boolean conjunction.

    Only the typed scalar fields may be filtered on; values are JSON-quoted so
    quotes and backslashes cannot break out of the literal.
    """
    clauses = []
    for op, constraints in (("==", flt), ("!=", exclude or {})):
        for key in sorted(constraints):
            if key not in FILTERABLE_FIELDS:
                raise ValueError(f"Cannot filter on unknown metadata field {key!r}")
            clauses.append(f"{key} {op} {json.dumps(str(constraints[key]), ensure_ascii=False)}")
    return " and ".join(clauses)


class MilvusGateway:
    """Connection plus per-collection handles for one Milvus deployment."""

    def __init__(
        self,
        uri: str,
        *,
        token: str | None = None,
        alias: str = "default",
        nlist: int = 1024,
        nprobe: int = 32,
    ) -> None:
        self.uri = uri
        self.token = token
        self.alias = alias
        self.nlist = nlist
        self.nprobe = nprobe
        self._connected = False
        self._collections: Dict[str, Collection] = {}
        self._lock = threading.Lock()

    # --- connection ---------------------------------------------------------

    def connect(self) -> None:
        if self._connected:
            return
        with self._lock:
            if self._connected:
                return
            kwargs: Dict[str, Any] = {"alias": self.alias, "uri": self.uri}
            if self.token:
                kwargs["token"] = self.token
            connections.connect(**kwargs)
            self._connected = True
            logger.info("Connected to Milvus at %s", self.uri)

    def _collection(self, name: str) -> Collection:
        self.connect()
        col = self._collections.get(name)
        if col is None:
            col = Collection(name, using=self.alias)
            self._collections[name] = col
        return col

    # --- collection management ---------------------------------------------

    def list_collections(self) -> List[str]:
        self.connect()
        return list(utility.list_collections(using=self.alias))

    def describe(self, name: str) -> Dict[str, Any]:
        """Return ``{"name", "dimension", "metric"}`` for an existing collection."""
        col = self._collection(name)
        dimension = None
        for fld in col.schema.fields:
            if fld.dtype == DataType.FLOAT_VECTOR:
                dimension = int(fld.params.get("dim"))
                break
        metric = None
        for idx in col.indexes:
            metric = (idx.params or {}).get("metric_type")
        return {"name": name, "dimension": dimension, "metric": metric}

    def create(self, name: str, dimension: int, metric: str, hints: Mapping[str, str] | None = None) -> None:
        """Create the collection and its vector index."""
        self.connect()
        fields = [
            FieldSchema(name="id", dtype=DataType.VARCHAR, is_primary=True, auto_id=False, max_length=512),
            FieldSchema(name="user_id", dtype=DataType.VARCHAR, max_length=128),
            FieldSchema(name="chat_id", dtype=DataType.VARCHAR, max_length=128),
            FieldSchema(name="message_id", dtype=DataType.VARCHAR, max_length=128),
            FieldSchema(name="sender", dtype=DataType.VARCHAR, max_length=16),
            FieldSchema(name="content", dtype=DataType.VARCHAR, max_length=8192),
            FieldSchema(name="timestamp", dtype=DataType.DOUBLE),
            FieldSchema(name=_VECTOR_FIELD, dtype=DataType.FLOAT_VECTOR, dim=dimension),
        ]
        placement = ", ".join(f"{k}={v}" for k, v in sorted((hints or {}).items()))
        schema = CollectionSchema(
            fields,
            description=f"Chat memory embeddings ({placement})" if placement else "Chat memory embeddings",
            enable_dynamic_field=True,
        )
        col = Collection(name, schema, using=self.alias)
        col.create_index(
            _VECTOR_FIELD,
            {"index_type": "IVF_FLAT", "metric_type": metric, "params": {"nlist": self.nlist}},
        )
        self._collections[name] = col

    def load(self, name: str) -> None:
        """Ask the server to load the collection without waiting for it."""
        self._collection(name).load(_async=True)

    def is_ready(self, name: str) -> bool:
        self.connect()
        return utility.load_state(name, using=self.alias) == LoadState.Loaded

    # --- records ------------------------------------------------------------

    def upsert(self, name: str, rows: Sequence[Dict[str, Any]]) -> None:
        self._collection(name).upsert(list(rows))

    def search(
        self,
        name: str,
        vector: Sequence[float],
        *,
        limit: int,
        flt: Mapping[str, Any],
        metric: str,
        exclude: Mapping[str, Any] | None = None,
    ) -> List[Dict[str, Any]]:
        """Return ``{"id", "score", "metadata"}`` dicts, most similar first."""
        col = self._collection(name)
        res = col.search(
            data=[list(vector)],
            anns_field=_VECTOR_FIELD,
            param={"metric_type": metric, "params": {"nprobe": self.nprobe}},
            limit=limit,
            expr=build_expr(flt, exclude) or None,
            output_fields=_OUTPUT_FIELDS,
            consistency_level="Strong",
        )
        hits = res[0] if res else []
        out: List[Dict[str, Any]] = []
        for h in hits:
            # "*" flattens dynamic fields next to the typed scalars
            entity = dict(h.to_dict().get("entity") or {})
            entity.pop(_VECTOR_FIELD, None)
            entity.pop("id", None)
            metadata = {key: entity.pop(key, None) for key in SCALAR_FIELDS}
            metadata.update(entity)
            score = float(h.distance)
            if metric == "L2":
                score = -score  # smaller distance means more similar
            out.append({"id": str(h.id), "score": score, "metadata": metadata})
        return out

    def count(self, name: str, flt: Mapping[str, Any] | None = None) -> int:
        col = self._collection(name)
        rows = col.query(
            expr=build_expr(flt or {}),
            output_fields=["count(*)"],
            consistency_level="Strong",
        )
        return int(rows[0]["count(*)"]) if rows else 0

    def delete(self, name: str, flt: Mapping[str, Any]) -> int:
        expr = build_expr(flt)
        if not expr:
            raise ValueError("Refusing to delete with an empty filter")
        result = self._collection(name).delete(expr)
        return int(getattr(result, "delete_count", 0) or 0)


__all__ = ["MilvusGateway", "build_expr"]
