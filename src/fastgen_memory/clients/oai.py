"""Helpers for interacting with an OpenAI-compatible text provider"""

from __future__ import annotations

import threading
from typing import Dict

import openai
from openai import AsyncOpenAI

from fastgen_memory.config import provider

import logging
logger = logging.getLogger(__name__)

# One async-capable client per API key, built on first use
_clients: Dict[str, AsyncOpenAI] = {}
_clients_lock = threading.Lock()

_QUOTA_MARKERS = ("quota", "insufficient_quota", "resource_exhausted", "rate limit")
_AUTH_MARKERS = ("permission_denied", "api key not valid", "invalid api key", "invalid_api_key")


def get_client(api_key: str) -> AsyncOpenAI:
    """Return the cached client for ``api_key``."""

    client = _clients.get(api_key)
    if client is not None:
        return client

    with _clients_lock:
        client = _clients.get(api_key)
        if client is None:
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=provider.BASE_URL,
                timeout=provider.TIMEOUT,
                max_retries=0,  # rotation across keys is handled by the caller
            )
            _clients[api_key] = client
        return client


# ==============================================
# Error classification
# ==============================================

def classify_error(exc: BaseException) -> str:
    """
    Map a provider exception onto ``"quota"``, ``"auth"`` or ``"transient"``.

    Status-specific SDK errors are checked first; message markers cover
    OpenAI-compatible gateways that report quota or permission problems with
    unusual status codes.
    """
    if isinstance(exc, openai.RateLimitError):
        return "quota"
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return "auth"

    message = str(exc).lower()
    if any(marker in message for marker in _QUOTA_MARKERS):
        return "quota"
    if any(marker in message for marker in _AUTH_MARKERS):
        return "auth"
    return "transient"


# ==============================================
# Text utilities
# ==============================================

async def complete(
    prompt: str,
    *,
    api_key: str,
    model: str | None = None,
    system: str | None = None,
) -> str:
    """
    Send a single chat completion request and return the response text.

    Temperature is pinned to 0 so repeated prompts for the same passage stay
    as close as the model allows.
    """
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    resp = await get_client(api_key).chat.completions.create(
        model=model or provider.EMB_PROMPT_MODEL_ID,
        messages=messages,
        temperature=0,
    )
    return (resp.choices[0].message.content or "").strip()


# ==============================================
# Embedding utilities
# ==============================================

async def embed_text(text: str, *, api_key: str, model: str | None = None) -> list[float]:
    """Return the raw embedding list from the dedicated embeddings endpoint."""

    resp = await get_client(api_key).embeddings.create(
        model=model or provider.EMB_MODEL_ID,
        input=text,
    )
    return list(resp.data[0].embedding)


async def close_all() -> None:
    """Close every cached client (used on shutdown and by the CLI)."""
    with _clients_lock:
        clients = list(_clients.values())
        _clients.clear()
    for client in clients:
        await client.close()
