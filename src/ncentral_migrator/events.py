"""Progress and log event broadcasting, plus run cancellation.

A long export or migration reports what it is doing to whoever listens (a
console printer, a UI). Events are broadcast synchronously to every
subscriber; nothing is queued, and a subscriber that raises is logged and
skipped so it can never break the run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TypeVar

from .models import LogMessage, ProgressUpdate

logger: logging.Logger = logging.getLogger(__name__)

ProgressHandler = Callable[[ProgressUpdate], None]
LogHandler = Callable[[LogMessage], None]
Unsubscribe = Callable[[], None]

_E = TypeVar("_E")

_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class EventBus:
    """Fan-out of progress updates and log messages to subscribers.

    Example:
        >>> bus = EventBus()
        >>> bus.subscribe_progress(lambda update: print(update.percent))
        >>> bus.progress("Customers", "Fetching source customers...", 10.0)
    """

    def __init__(self) -> None:
        self._progress_handlers: list[ProgressHandler] = []
        self._log_handlers: list[LogHandler] = []
        self._lock = threading.RLock()
        self._last_progress: ProgressUpdate | None = None

    @property
    def last_progress(self) -> ProgressUpdate | None:
        return self._last_progress

    def subscribe_progress(self, handler: ProgressHandler) -> Unsubscribe:
        """Register a progress handler; returns a callable removing it again."""
        return self._subscribe(self._progress_handlers, handler)

    def subscribe_log(self, handler: LogHandler) -> Unsubscribe:
        return self._subscribe(self._log_handlers, handler)

    def _subscribe(self, handlers: list[Callable[[_E], None]], handler: Callable[[_E], None]) -> Unsubscribe:
        with self._lock:
            handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish_progress(self, update: ProgressUpdate) -> None:
        self._last_progress = update
        self._dispatch(self._progress_handlers, update)

    def publish_log(self, message: LogMessage) -> None:
        self._dispatch(self._log_handlers, message)

    def _dispatch(self, handlers: list[Callable[[_E], None]], event: _E) -> None:
        with self._lock:
            targets = list(handlers)
        for handler in targets:
            try:
                handler(event)
            except Exception as e:  # noqa: BLE001 - subscriber failures must not break the run
                logger.error(f"Event subscriber {handler!r} failed: {e}", exc_info=e)

    def progress(self, phase: str, message: str, percent: float, current: int = 0, total: int = 0) -> None:
        """Broadcast a progress update; percent is clamped to 0-100."""
        percent = min(max(percent, 0.0), 100.0)
        self.publish_progress(ProgressUpdate(phase, message, percent, current, total))

    def log(self, level: str, message: str, source_logger: logging.Logger | None = None) -> None:
        """Broadcast a log message and write it to ``source_logger`` (this module's logger by default)."""
        (source_logger or logger).log(_LEVELS.get(level.lower(), logging.INFO), message)
        self.publish_log(LogMessage(level.lower(), message))


class CancelToken:
    """Process-wide cancellation flag polled by long-running phases."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
