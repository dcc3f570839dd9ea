"""Data types shared by the memory engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import time
from typing import Any, Dict, Iterator, List, Sequence

import numpy as np

# Metadata keys the vector schema stores as typed scalar fields. Anything else
# supplied through ``ChatMessage.extra`` is kept as a dynamic field.
FILTERABLE_FIELDS = ("user_id", "chat_id", "message_id", "sender")
SCALAR_FIELDS = FILTERABLE_FIELDS + ("content", "timestamp")

SENDERS = ("user", "assistant")


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    INVALID = "invalid"


@dataclass(slots=True)
class Credential:
    """One provider API key plus its best-effort health status."""

    secret: str
    status: CredentialStatus = CredentialStatus.ACTIVE
    exhausted_at: float | None = None

    @property
    def masked(self) -> str:
        return f"{self.secret[:6]}..." if len(self.secret) > 6 else "***"

    def __repr__(self) -> str:
        return f"Credential({self.masked}, status={self.status.value})"


@dataclass(slots=True)
class ChatMessage:
    """A chat turn handed to the engine by the message persistence layer."""

    user_id: str
    chat_id: str
    message_id: str
    sender: str
    content: str
    timestamp: float = field(default_factory=time.time)
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.user_id = str(self.user_id)
        self.chat_id = str(self.chat_id)
        self.message_id = str(self.message_id)
        if self.sender not in SENDERS:
            raise ValueError(f"sender must be one of {SENDERS}, got {self.sender!r}")

    @property
    def record_id(self) -> str:
        return record_id(self.user_id, self.chat_id, self.message_id)


def _id_part(value: str) -> str:
    return str(value).replace("%", "%25").replace("_", "%5F")


def record_id(user_id: str, chat_id: str, message_id: str) -> str:
    """
    Stable vector id for a chat message.

    Parts are joined with ``_``; a literal ``%`` or ``_`` inside a part is
    percent-encoded so distinct ``(user, chat, message)`` triples never share
    an id. Ids made of plain alphanumerics read as ``user_chat_message``.
    """
    return "_".join(_id_part(part) for part in (user_id, chat_id, message_id))


@dataclass(slots=True)
class MemoryRecord:
    """One row in the remote collection."""

    id: str
    vector: np.ndarray
    metadata: Dict[str, Any]

    @classmethod
    def from_message(
        cls, message: ChatMessage, vector: np.ndarray, *, excerpt_chars: int
    ) -> "MemoryRecord":
        metadata: Dict[str, Any] = dict(message.extra)
        metadata.update(
            user_id=message.user_id,
            chat_id=message.chat_id,
            message_id=message.message_id,
            sender=message.sender,
            content=message.content[:excerpt_chars],
            timestamp=float(message.timestamp),
        )
        return cls(id=message.record_id, vector=vector, metadata=metadata)


class ProvisionState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    EXISTING = "existing"
    CREATING = "creating"
    POLLING = "polling"
    READY = "ready"
    FAILED = "failed"


@dataclass(slots=True)
class CollectionInfo:
    name: str
    dimension: int
    metric: str
    state: ProvisionState = ProvisionState.UNKNOWN


@dataclass(slots=True, frozen=True)
class RetrievalHit:
    id: str
    score: float
    metadata: Dict[str, Any]

    @property
    def content(self) -> str:
        return str(self.metadata.get("content") or "")

    @property
    def timestamp(self) -> float:
        return float(self.metadata.get("timestamp") or 0.0)

    @property
    def when(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


@dataclass(slots=True)
class RetrievalResult:
    """Hits ordered by descending similarity, ties by most recent first."""

    hits: List[RetrievalHit] = field(default_factory=list)

    def __iter__(self) -> Iterator[RetrievalHit]:
        return iter(self.hits)

    def __len__(self) -> int:
        return len(self.hits)

    def __bool__(self) -> bool:
        return bool(self.hits)

    @property
    def top(self) -> RetrievalHit | None:
        return self.hits[0] if self.hits else None

    def contents(self) -> List[str]:
        return [hit.content for hit in self.hits]

    @classmethod
    def empty(cls) -> "RetrievalResult":
        return cls()


def matches_filter(
    metadata: Dict[str, Any],
    flt: Dict[str, Any],
    exclude: Dict[str, Any] | None = None,
) -> bool:
    """True if every ``flt`` key equals, and every ``exclude`` key differs from, the record's value."""
    if not all(str(metadata.get(key)) == str(value) for key, value in flt.items()):
        return False
    return all(str(metadata.get(key)) != str(value) for key, value in (exclude or {}).items())


def rank_hits(hits: Sequence[RetrievalHit], top_k: int) -> List[RetrievalHit]:
    """Sort by score desc, timestamp desc, then id for a total order; cut to ``top_k``."""
    ordered = sorted(hits, key=lambda h: (-h.score, -h.timestamp, h.id))
    return ordered[: max(0, top_k)]
