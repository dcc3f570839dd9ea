import os, sys
from pathlib import Path
import threading

import numpy as np
import pytest

# Add src/ to sys.path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

# Ensure required environment variables for config validation
os.environ.setdefault("GEN_API_KEYS", "test-key-1,test-key-2")
os.environ.setdefault("MILVUS_URI", "http://127.0.0.1:19530")
os.environ.setdefault("FASTGEN_CONFIG", str(Path(__file__).resolve().parent / "missing-config.toml"))


class FakeGateway:
    """In-memory stand-in for ``MilvusGateway`` with cosine search."""

    def __init__(self, *, existing=None, ready_after: int = 0):
        self.collections = {}
        self.ready_checks = {}
        self.ready_after = ready_after
        self.create_calls = 0
        self.load_calls = 0
        self.fail_next = 0
        self.fail_ready = 0
        self._lock = threading.Lock()
        for name, dim in (existing or {}).items():
            self.collections[name] = {"dimension": dim, "metric": "COSINE", "rows": {}}

    def _maybe_fail(self):
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectionError("milvus unavailable")

    def list_collections(self):
        return list(self.collections)

    def describe(self, name):
        col = self.collections[name]
        return {"name": name, "dimension": col["dimension"], "metric": col["metric"]}

    def create(self, name, dimension, metric, hints=None):
        with self._lock:
            self.create_calls += 1
            self.collections[name] = {"dimension": dimension, "metric": metric, "rows": {}, "hints": hints}

    def load(self, name):
        self.load_calls += 1

    def is_ready(self, name):
        if self.fail_ready > 0:
            self.fail_ready -= 1
            raise ConnectionError("describe failed")
        seen = self.ready_checks.get(name, 0)
        self.ready_checks[name] = seen + 1
        return seen >= self.ready_after

    def upsert(self, name, rows):
        self._maybe_fail()
        store = self.collections[name]["rows"]
        for row in rows:
            store[row["id"]] = dict(row)

    def _matching(self, name, flt):
        for row in self.collections[name]["rows"].values():
            if all(str(row.get(k)) == str(v) for k, v in (flt or {}).items()):
                yield row

    def search(self, name, vector, *, limit, flt, metric, exclude=None):
        self._maybe_fail()
        q = np.asarray(vector, dtype=np.float32)
        hits = []
        for row in self._matching(name, flt):
            if any(str(row.get(k)) == str(v) for k, v in (exclude or {}).items()):
                continue
            emb = np.asarray(row["embedding"], dtype=np.float32)
            denom = float(np.linalg.norm(q) * np.linalg.norm(emb)) or 1.0
            metadata = {k: v for k, v in row.items() if k not in ("id", "embedding")}
            hits.append({"id": row["id"], "score": float(np.dot(q, emb)) / denom, "metadata": metadata})
        hits.sort(key=lambda h: h["score"], reverse=True)
        return hits[:limit]

    def count(self, name, flt=None):
        self._maybe_fail()
        return sum(1 for _ in self._matching(name, flt))

    def delete(self, name, flt):
        self._maybe_fail()
        ids = [row["id"] for row in self._matching(name, flt)]
        for rid in ids:
            del self.collections[name]["rows"][rid]
        return len(ids)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def gateway_factory():
    return FakeGateway
