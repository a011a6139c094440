#!/usr/bin/env python3
"""Replay captured interception events through a reconciliation session.

Each line of the input file is one JSON payload as delivered by the
interception transport (navigation, chatCompletion, specificConversation,
conversationList, assistantResponse or domMessage).

Usage examples:
    # Reconstruct without saving anything, print the result
    uv run python scripts/replay.py capture.jsonl --dry-run

    # Start on a conversation page and save to the configured API
    uv run python scripts/replay.py capture.jsonl --url https://chatgpt.com/c/1234abcd

    # Only show one conversation
    uv run python scripts/replay.py capture.jsonl --dry-run --conversation 1234abcd
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from chatsync.chat.controller import ReconciliationController
from chatsync.chat.events import EventKind
from chatsync.chat.session import SessionContext
from chatsync.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
)
logger = logging.getLogger("replay")


def read_events(path: Path) -> list[dict]:
    """Load one JSON object per non-empty line, skipping bad lines."""
    events = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        if not line.strip():
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError as exc:
            logger.warning("Line %d is not valid JSON: %s", lineno, exc)
    return events


def print_conversations(controller: ReconciliationController, only: str | None) -> None:
    for conversation in controller.get_conversations():
        if only and conversation.id != only:
            continue
        messages = controller.get_conversation_messages(conversation.id)
        print(f"== {conversation.id}  {conversation.title!r}  ({len(messages)} messages)")
        for message in messages:
            first_line = message.content.split("\n", 1)[0][:80]
            tools = f" tools={','.join(message.tools)}" if message.tools else ""
            print(f"   [{message.role:9}] {message.message_id[:12]:12} {message.model:12}{tools} {first_line}")


async def replay(args: argparse.Namespace) -> int:
    events = read_events(args.path)
    context = SessionContext.create(persist=not args.dry_run)
    controller = ReconciliationController(context)
    controller.initialize(args.url)

    counts: dict[str, int] = {}

    def _count(event) -> None:
        counts[event.kind.value] = counts.get(event.kind.value, 0) + 1

    controller.subscribe(None, _count)

    accepted = sum(controller.handle_event(event) for event in events)
    await controller.drain()

    print(f"Processed {accepted}/{len(events)} events, {len(context.pending)} still pending")
    for kind in EventKind:
        print(f"  {kind.value}: {counts.get(kind.value, 0)}")
    print_conversations(controller, args.conversation)

    failures = [e for e, _ in context.reporter.captured]
    controller.cleanup()
    return 1 if failures else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay captured chat interception events")
    parser.add_argument("path", type=Path, help="JSON-lines file of captured events")
    parser.add_argument("--url", help="Page URL at session start")
    parser.add_argument("--dry-run", action="store_true", help="Do not call the remote API")
    parser.add_argument("--conversation", help="Only print this conversation id")
    args = parser.parse_args()

    if not args.path.exists():
        print(f"ERROR: {args.path} not found", file=sys.stderr)
        sys.exit(1)

    sys.exit(asyncio.run(replay(args)))


if __name__ == "__main__":
    main()
