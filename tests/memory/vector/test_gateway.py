import asyncio
from types import SimpleNamespace

import pytest
from pymilvus import DataType
from pymilvus.client.types import LoadState

from fastgen_memory.memory.vector import gateway
from fastgen_memory.memory.vector.gateway import MilvusGateway
from fastgen_memory.memory.vector.provisioner import IndexLifecycleManager
from fastgen_memory.memory.vector.store import MemoryStore


class FakeHit:
    def __init__(self, id, distance, entity):
        self.id = id
        self.distance = distance
        self._entity = entity

    def to_dict(self):
        return {"id": self.id, "distance": self.distance, "entity": dict(self._entity)}


def _entity(user="u1", chat="c1", msg="m1", content="hello", ts=1000.0, **extra):
    entity = {
        "id": f"{user}_{chat}_{msg}",
        "user_id": user,
        "chat_id": chat,
        "message_id": msg,
        "sender": "user",
        "content": content,
        "timestamp": ts,
        "embedding": [0.0, 0.0, 0.0, 1.0],
    }
    entity.update(extra)
    return entity


class FakeCollection:
    def __init__(self, name, schema=None, using="default", dim=4, metric="L2"):
        self.name = name
        self.using = using
        self.schema = schema or SimpleNamespace(
            fields=[
                SimpleNamespace(name="id", dtype=DataType.VARCHAR, params={"max_length": 512}),
                SimpleNamespace(name="embedding", dtype=DataType.FLOAT_VECTOR, params={"dim": dim}),
            ]
        )
        self.indexes = [SimpleNamespace(params={"index_type": "IVF_FLAT", "metric_type": metric})]
        self.hits = []
        self.count_rows = [{"count(*)": 0}]
        self.delete_count = 0
        self.calls = []

    def create_index(self, field, params):
        self.calls.append(("create_index", field, params))

    def load(self, _async=False):
        self.calls.append(("load", _async))

    def upsert(self, rows):
        self.calls.append(("upsert", rows))

    def search(self, **kwargs):
        self.calls.append(("search", kwargs))
        return [list(self.hits)]

    def query(self, **kwargs):
        self.calls.append(("query", kwargs))
        return self.count_rows

    def delete(self, expr):
        self.calls.append(("delete", expr))
        return SimpleNamespace(delete_count=self.delete_count)


@pytest.fixture
def milvus(monkeypatch):
    """Patch the pymilvus entry points used by the gateway."""
    state = SimpleNamespace(
        collection=FakeCollection("chats"),
        connects=[],
        created=[],
        names=["chats"],
        load_state=LoadState.Loaded,
    )

    def make_collection(name, schema=None, using="default"):
        if schema is not None:
            state.collection = FakeCollection(name, schema=schema, using=using)
            state.created.append(state.collection)
        return state.collection

    monkeypatch.setattr(gateway, "Collection", make_collection)
    monkeypatch.setattr(
        gateway, "connections", SimpleNamespace(connect=lambda **kw: state.connects.append(kw))
    )
    monkeypatch.setattr(
        gateway,
        "utility",
        SimpleNamespace(
            list_collections=lambda using=None: list(state.names),
            load_state=lambda name, using=None: state.load_state,
        ),
    )
    return state


def test_connects_once_with_token(milvus):
    gw = MilvusGateway("https://milvus.example:19530", token="secret")

    gw.list_collections()
    gw.is_ready("chats")

    assert milvus.connects == [
        {"alias": "default", "uri": "https://milvus.example:19530", "token": "secret"}
    ]


def test_describe_reads_dimension_and_metric(milvus):
    info = MilvusGateway("http://m").describe("chats")

    assert info == {"name": "chats", "dimension": 4, "metric": "L2"}


def test_is_ready_follows_load_state(milvus):
    gw = MilvusGateway("http://m")
    assert gw.is_ready("chats") is True

    milvus.load_state = LoadState.Loading
    assert gw.is_ready("chats") is False


def test_create_builds_schema_index_and_hints(milvus):
    gw = MilvusGateway("http://m", nlist=64)

    gw.create("fresh", 8, "COSINE", {"region": "us-east-1", "cloud": "aws"})
    gw.load("fresh")

    col = milvus.created[0]
    fields = {f.name: f for f in col.schema.fields}
    assert fields["id"].is_primary
    assert fields["embedding"].params["dim"] == 8
    assert {"user_id", "chat_id", "message_id", "sender", "content", "timestamp"} <= set(fields)
    assert col.schema.enable_dynamic_field
    assert "cloud=aws, region=us-east-1" in col.schema.description
    assert col.calls == [
        ("create_index", "embedding", {"index_type": "IVF_FLAT", "metric_type": "COSINE", "params": {"nlist": 64}}),
        ("load", True),
    ]


def test_search_flattens_entity_into_metadata(milvus):
    milvus.collection.hits = [FakeHit("u1_c1_m1", 0.25, _entity(title="Tea chat"))]
    gw = MilvusGateway("http://m", nprobe=16)

    out = gw.search(
        "chats", [1, 0, 0, 0], limit=4, flt={"user_id": "u1"}, metric="COSINE", exclude={"chat_id": "c9"}
    )

    assert out == [
        {
            "id": "u1_c1_m1",
            "score": 0.25,
            "metadata": {
                "user_id": "u1",
                "chat_id": "c1",
                "message_id": "m1",
                "sender": "user",
                "content": "hello",
                "timestamp": 1000.0,
                "title": "Tea chat",
            },
        }
    ]
    _, kwargs = milvus.collection.calls[-1]
    assert kwargs["expr"] == 'user_id == "u1" and chat_id != "c9"'
    assert kwargs["param"] == {"metric_type": "COSINE", "params": {"nprobe": 16}}
    assert kwargs["output_fields"] == ["*"]
    assert kwargs["consistency_level"] == "Strong"
    assert kwargs["limit"] == 4


def test_search_without_filter_passes_no_expr(milvus):
    MilvusGateway("http://m").search("chats", [1, 0, 0, 0], limit=1, flt={}, metric="IP")

    _, kwargs = milvus.collection.calls[-1]
    assert kwargs["expr"] is None


def test_l2_distance_is_negated(milvus):
    milvus.collection.hits = [
        FakeHit("near", 0.1, _entity(msg="near")),
        FakeHit("far", 2.5, _entity(msg="far")),
    ]

    out = MilvusGateway("http://m").search("chats", [1, 0, 0, 0], limit=2, flt={}, metric="L2")

    assert [(h["id"], h["score"]) for h in out] == [("near", -0.1), ("far", -2.5)]


def test_store_ranks_l2_hits_nearest_first(milvus):
    # Server order is irrelevant; ranking uses the negated distance.
    milvus.collection.hits = [
        FakeHit("far", 3.0, _entity(msg="far", content="far away")),
        FakeHit("near", 0.2, _entity(msg="near", content="close by")),
        FakeHit("other", 0.0, _entity(user="u2", msg="other")),
    ]
    gw = MilvusGateway("http://m")
    provisioner = IndexLifecycleManager(gw, poll_interval=0, max_attempts=2, timeout=5)
    store = MemoryStore(gw, provisioner, collection="chats", dimension=4, metric="COSINE", retry_backoff=0)

    result = asyncio.run(store.query([1, 0, 0, 0], 2, {"user_id": "u1"}))

    assert result.contents() == ["close by", "far away"]
    assert provisioner.get("chats").metric == "L2"


def test_count_parses_aggregate(milvus):
    milvus.collection.count_rows = [{"count(*)": 7}]
    gw = MilvusGateway("http://m")

    assert gw.count("chats", {"user_id": "u1"}) == 7
    _, kwargs = milvus.collection.calls[-1]
    assert kwargs["expr"] == 'user_id == "u1"'
    assert kwargs["output_fields"] == ["count(*)"]

    milvus.collection.count_rows = []
    assert gw.count("chats") == 0


def test_delete_reports_delete_count(milvus):
    milvus.collection.delete_count = 3
    gw = MilvusGateway("http://m")

    assert gw.delete("chats", {"user_id": "u1", "chat_id": "c1"}) == 3
    assert milvus.collection.calls[-1] == ("delete", 'chat_id == "c1" and user_id == "u1"')

    with pytest.raises(ValueError):
        gw.delete("chats", {})


def test_upsert_passes_rows_through(milvus):
    rows = [{"id": "u1_c1_m1", "embedding": [0.0] * 4, "user_id": "u1"}]

    MilvusGateway("http://m").upsert("chats", rows)

    assert milvus.collection.calls[-1] == ("upsert", rows)
