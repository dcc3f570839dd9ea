import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from fastgen_memory.clients import oai


def _response(status):
    return httpx.Response(status, request=httpx.Request("POST", "https://api.example.com/v1/chat/completions"))


@pytest.mark.parametrize(
    "exc, kind",
    [
        (openai.RateLimitError("slow down", response=_response(429), body=None), "quota"),
        (openai.AuthenticationError("bad key", response=_response(401), body=None), "auth"),
        (openai.PermissionDeniedError("nope", response=_response(403), body=None), "auth"),
        (RuntimeError("429 RESOURCE_EXHAUSTED: Quota exceeded"), "quota"),
        (RuntimeError("400 API key not valid. Please pass a valid API key."), "auth"),
        (ConnectionError("connection reset by peer"), "transient"),
        (openai.InternalServerError("boom", response=_response(500), body=None), "transient"),
    ],
)
def test_classify_error(exc, kind):
    assert oai.classify_error(exc) == kind


def test_clients_are_cached_per_key():
    a = oai.get_client("sk-test-a")
    assert oai.get_client("sk-test-a") is a
    assert oai.get_client("sk-test-b") is not a
    asyncio.run(oai.close_all())
    assert oai.get_client("sk-test-a") is not a
    asyncio.run(oai.close_all())


def test_complete_strips_reply(monkeypatch):
    seen = {}

    async def create(**kwargs):
        seen.update(kwargs)
        message = SimpleNamespace(content="  [0.1, 0.2]\n")
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    fake = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    monkeypatch.setattr(oai, "get_client", lambda api_key: fake)

    reply = asyncio.run(oai.complete("embed this", api_key="k", model="m", system="sys"))

    assert reply == "[0.1, 0.2]"
    assert seen["model"] == "m"
    assert seen["temperature"] == 0
    assert [m["role"] for m in seen["messages"]] == ["system", "user"]


def test_embed_text_returns_list(monkeypatch):
    async def create(**kwargs):
        return SimpleNamespace(data=[SimpleNamespace(embedding=(0.5, 0.25))])

    fake = SimpleNamespace(embeddings=SimpleNamespace(create=create))
    monkeypatch.setattr(oai, "get_client", lambda api_key: fake)

    assert asyncio.run(oai.embed_text("hi", api_key="k")) == [0.5, 0.25]
