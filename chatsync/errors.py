"""Error taxonomy and the reporter that surfaces failures."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class ChatSyncError(Exception):
    """Base class for errors raised by chatsync."""


class MalformedPayloadError(ChatSyncError):
    """An intercepted payload could not be parsed into a known event."""


class PersistenceError(ChatSyncError):
    """The remote message store rejected or failed a save."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LifecycleError(ChatSyncError):
    """An operation was invoked before initialize() or after cleanup()."""


@runtime_checkable
class Notifier(Protocol):
    """Non-blocking, user-visible notification sink (toast, banner, ...)."""

    async def notify(self, message: str) -> bool:
        """Show *message*. Returns True on success."""
        ...


class ErrorReporter:
    """Logs errors and forwards persistence failures to a Notifier.

    Reconstruction failures stay silent apart from the log; only failed saves
    reach the user.
    """

    def __init__(self, notifier: Notifier | None = None) -> None:
        self._notifier = notifier
        self._tasks: set[asyncio.Task] = set()
        self.captured: deque[tuple[BaseException, str]] = deque(maxlen=100)

    def capture(self, error: BaseException, context: str = "") -> None:
        """Record *error* with a short description of where it happened."""
        self.captured.append((error, context))
        if isinstance(error, LifecycleError):
            logger.warning("%s: %s", context or "Lifecycle misuse", error)
            return
        logger.error(
            "%s: %s",
            context or type(error).__name__,
            error,
            exc_info=(type(error), error, error.__traceback__),
        )
        if isinstance(error, PersistenceError) and self._notifier is not None:
            self._notify(f"Could not save chat history: {context or error}")

    def _notify(self, message: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, notification skipped: %s", message)
            return
        task = loop.create_task(self._send(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, message: str) -> None:
        try:
            ok = await self._notifier.notify(message)
        except Exception:
            logger.exception("Notifier failed")
            return
        if not ok:
            logger.warning("Notifier declined message: %s", message)

    async def drain(self) -> None:
        """Wait for outstanding notifications."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self) -> None:
        self.captured.clear()
