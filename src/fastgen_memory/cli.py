"""Operator commands for chat memory: diagnostics, backfill, stats and deletion.

Run as ``python -m fastgen_memory <command>`` or ``fastgen-memory <command>``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from fastgen_memory.memory import ChatMessage, MemoryEngine, MemoryEngineError, get_engine

logger = logging.getLogger(__name__)

DIAGNOSTIC_USER = "diagnostic-user"
DIAGNOSTIC_TEXT = "This is a test message for embedding generation"

_MESSAGE_FIELDS = ("user_id", "chat_id", "message_id", "sender", "content", "timestamp")


def _positive_int(value: str) -> int:
    ivalue = int(value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError("value must be a positive integer")
    return ivalue


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m fastgen_memory",
        description="Operator tools for FastGen chat memory.",
    )
    subparsers = parser.add_subparsers(
        dest="command", metavar="<command>", required=True
    )

    subparsers.add_parser(
        "check",
        help="Provision the collection and run an embed/upsert/query/delete round trip.",
    )

    backfill_cmd = subparsers.add_parser(
        "backfill",
        help="Import existing chat history from a JSON Lines export.",
    )
    backfill_cmd.add_argument(
        "input",
        type=Path,
        help="JSONL file, one message per line (user_id, chat_id, message_id, sender, content[, timestamp]).",
    )
    backfill_cmd.add_argument(
        "--concurrency",
        type=_positive_int,
        default=None,
        help="Concurrent embed/upsert operations (defaults to BACKFILL_CONCURRENCY).",
    )

    subparsers.add_parser("stats", help="Print collection statistics as JSON.")

    forget_cmd = subparsers.add_parser(
        "forget",
        help="Delete all memory for a user, or for one of their chats.",
    )
    forget_cmd.add_argument("--user", required=True, help="User id whose memory is deleted.")
    forget_cmd.add_argument("--chat", default=None, help="Restrict deletion to this chat id.")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "backfill" and not args.input.is_file():
        parser.error(f"Input file {args.input} does not exist.")

    try:
        return asyncio.run(_dispatch(args, get_engine()))
    except MemoryEngineError as e:
        logger.critical("%s failed: %s", args.command, e)
        return 1


async def _dispatch(args: argparse.Namespace, engine: MemoryEngine) -> int:
    from fastgen_memory.clients.oai import close_all

    try:
        await engine.start()
        if args.command == "check":
            return await run_check(engine)
        if args.command == "backfill":
            messages = list(read_messages(args.input))
            stored, failed = await engine.backfill(messages, concurrency=args.concurrency)
            print(json.dumps({"stored": stored, "failed": failed}))
            return 0 if failed == 0 else 2
        if args.command == "stats":
            print(json.dumps(await engine.stats(), indent=2))
            return 0
        if args.command == "forget":
            if args.chat:
                deleted = await engine.forget_chat(args.user, args.chat)
            else:
                deleted = await engine.forget(args.user)
            print(json.dumps({"deleted": deleted}))
            return 0
        return 1
    finally:
        await close_all()


async def run_check(engine: MemoryEngine) -> int:
    """Embed, upsert, query and delete one throwaway record."""

    vec = await engine.synthesizer.embed(DIAGNOSTIC_TEXT)
    logger.info("Embedding generated (dim=%d)", vec.size)

    message = ChatMessage(
        user_id=DIAGNOSTIC_USER,
        chat_id="diagnostic-chat",
        message_id=uuid.uuid4().hex,
        sender="user",
        content=DIAGNOSTIC_TEXT,
        timestamp=time.time(),
    )
    if not await engine.remember(message):
        logger.error("Vector upsert failed")
        return 1

    result = await engine.recall(DIAGNOSTIC_USER, DIAGNOSTIC_TEXT, top_k=1)
    logger.info("Vector query returned %d match(es)", len(result))

    deleted = await engine.forget(DIAGNOSTIC_USER)
    logger.info("Cleaned up %d diagnostic vector(s)", deleted)

    ok = bool(result) and result.top.content == DIAGNOSTIC_TEXT
    print(json.dumps({"ok": ok, "matches": len(result), "pool": engine.synthesizer.pool.snapshot()}, indent=2))
    return 0 if ok else 1


def read_messages(path: Path) -> Iterator[ChatMessage]:
    """Yield :class:`ChatMessage` objects from a JSONL export, skipping bad lines."""

    with path.open("r", encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield parse_message(json.loads(line))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping line %d of %s: %s", lineno, path, exc)


def parse_message(data: dict[str, Any]) -> ChatMessage:
    extra = {k: v for k, v in data.items() if k not in _MESSAGE_FIELDS}
    kwargs: dict[str, Any] = {
        "user_id": data["user_id"],
        "chat_id": data["chat_id"],
        "message_id": data["message_id"],
        "sender": data["sender"],
        "content": data["content"],
        "extra": extra,
    }
    if data.get("timestamp") is not None:
        kwargs["timestamp"] = _parse_timestamp(data["timestamp"])
    return ChatMessage(**kwargs)


def _parse_timestamp(value: Any) -> float:
    """Epoch seconds or an ISO-8601 string (as exported by the chat store)."""
    try:
        return float(value)
    except ValueError:
        return datetime.fromisoformat(str(value)).timestamp()


__all__ = ["main", "build_parser", "read_messages", "parse_message", "run_check"]
