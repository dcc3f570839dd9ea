"""Render recalled memory into chat-completion-friendly messages."""

from __future__ import annotations

from .models import RetrievalHit, RetrievalResult

__all__ = ["build_memory_messages", "format_hit"]

DEFAULT_HEADER = "### Relevant Memory"


def build_memory_messages(
    result: RetrievalResult,
    *,
    header: str = DEFAULT_HEADER,
) -> list[dict[str, str]]:
    """Convert a retrieval result into one assistant message for the LLM."""

    if not result:
        return []

    lines = [format_hit(idx, hit) for idx, hit in enumerate(result, start=1)]
    return [
        {
            "role": "assistant",
            "content": header + "\n" + "\n".join(lines),
        }
    ]


def format_hit(idx: int, hit: RetrievalHit) -> str:
    sender = hit.metadata.get("sender") or "unknown"
    when = hit.when.strftime("%Y-%m-%d") if hit.timestamp else "unknown date"
    snippet = " ".join(hit.content.split()) or "(no content)"
    return f"{idx}. [{sender}, {when}] {snippet}"
