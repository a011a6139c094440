"""Assemble an assistant reply from a server-sent-events response.

Two encodings are understood:

- Snapshot events: every ``data:`` line carries the whole message so far
  (``{"message": {...}, "conversation_id": "..."}``); the last assistant
  snapshot wins.
- Delta events: a first ``{"v": {"message": {...}}}`` followed by patches
  such as ``{"p": "/message/content/parts/0", "o": "append", "v": "..."}``,
  bare ``{"v": "..."}`` continuations of the previous path, and
  ``{"o": "patch", "v": [...]}`` batches.

The stream ends at ``data: [DONE]``. ``result()`` returns a body shaped like
a non-streaming response so the normal response rule can be applied to it.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from chatsync.chat.models import ASSISTANT
from chatsync.chat.normalizer import author_role

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
_PARTS_PREFIX = "/message/content/parts/"


class StreamAssembler:
    """Accumulates SSE chunks into the final assistant message."""

    def __init__(self) -> None:
        self._buffer = ""
        self._message: dict[str, Any] | None = None
        self._conversation_id: str | None = None
        self._last_path: str | None = None
        self._last_op: str | None = None
        self._tracking = False
        self.done = False

    # -- Input -----------------------------------------------------------------

    def feed(self, chunk: str) -> None:
        """Consume raw SSE text; lines may be split across chunks."""
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._handle_line(line.rstrip("\r"))

    def feed_lines(self, lines: Iterable[str]) -> None:
        for line in lines:
            self._handle_line(line.rstrip("\r\n"))

    def close(self) -> None:
        """Flush a trailing line that had no newline."""
        if self._buffer:
            self._handle_line(self._buffer.rstrip("\r"))
            self._buffer = ""

    def _handle_line(self, line: str) -> None:
        if not line.startswith("data:"):
            return
        data = line[len("data:") :].strip()
        if not data:
            return
        if data == DONE_SENTINEL:
            self.done = True
            return
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable SSE line: %.80s", data)
            return
        if isinstance(event, Mapping):
            self._handle_event(event)

    # -- Event handling --------------------------------------------------------

    def _handle_event(self, event: Mapping[str, Any]) -> None:
        conversation_id = event.get("conversation_id")
        if isinstance(conversation_id, str) and conversation_id:
            self._conversation_id = conversation_id

        if isinstance(event.get("message"), Mapping):
            self._take_snapshot(event["message"])
            return

        value = event.get("v")
        path = event.get("p")
        op = event.get("o")

        if isinstance(value, Mapping) and isinstance(value.get("message"), Mapping):
            inner_id = value.get("conversation_id")
            if isinstance(inner_id, str) and inner_id:
                self._conversation_id = inner_id
            self._take_snapshot(value["message"])
            return

        if op == "patch" and isinstance(value, list):
            for item in value:
                if isinstance(item, Mapping):
                    self._apply(item.get("p"), item.get("o"), item.get("v"))
            return

        self._apply(path, op, value)

    def _take_snapshot(self, message: Mapping[str, Any]) -> None:
        role = author_role(message)
        if role is not None and role != ASSISTANT:
            # Tool and system messages share the stream; only the reply matters.
            self._tracking = False
            return
        self._message = copy.deepcopy(dict(message))
        self._tracking = True
        self._last_path = None
        self._last_op = None

    def _apply(self, path: Any, op: Any, value: Any) -> None:
        if path is None:
            path, op = self._last_path, op or self._last_op
        if not isinstance(path, str) or self._message is None or not self._tracking:
            return
        self._last_path, self._last_op = path, op or "append"

        if path.startswith(_PARTS_PREFIX) and isinstance(value, str):
            try:
                index = int(path[len(_PARTS_PREFIX) :])
            except ValueError:
                return
            content = self._message.setdefault("content", {"content_type": "text", "parts": []})
            parts = content.setdefault("parts", [])
            while len(parts) <= index:
                parts.append("")
            if self._last_op == "replace":
                parts[index] = value
            else:
                parts[index] = f"{parts[index]}{value}"
        elif path == "/message/metadata" and isinstance(value, Mapping):
            self._message.setdefault("metadata", {}).update(value)

    # -- Output ----------------------------------------------------------------

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    def result(self) -> dict[str, Any] | None:
        """A non-streaming-shaped response body.

        Without a reply the body carries only the conversation id; None when
        the stream revealed neither.
        """
        body: dict[str, Any] = {}
        if self._message is not None:
            body["message"] = copy.deepcopy(self._message)
        if self._conversation_id:
            body["conversation_id"] = self._conversation_id
        return body or None


def assemble(body: str | Iterable[str]) -> dict[str, Any] | None:
    """Assemble a complete SSE body (text or lines) into a response body."""
    assembler = StreamAssembler()
    if isinstance(body, str):
        assembler.feed(body)
        assembler.close()
    else:
        assembler.feed_lines(body)
    if not assembler.done:
        logger.debug("Stream ended without %s", DONE_SENTINEL)
    return assembler.result()
