"""Streaming - progress events and cooperative cancellation.

The correction engine never talks to a UI directly. It publishes
ProgressEvents to a ProgressChannel; a CLI, editor extension or test drains
or subscribes to the channel. Publishing is one-way: nothing a subscriber
does can change what the engine decides next.

Cancellation is cooperative. A CancellationToken is checked at every
suspension point (generation calls, diagnostic poll ticks, retry backoff
sleeps, the command confirmation prompt).
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable

from codemender.errors import CorrectionCancelledError

if TYPE_CHECKING:
    from codemender.issues import Issue

logger = logging.getLogger(__name__)


# =============================================================================
# Cancellation
# =============================================================================


class CancellationToken:
    """Thread-safe cancellation flag with an interruptible wait."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, message: str = "Operation cancelled") -> None:
        if self._event.is_set():
            raise CorrectionCancelledError(message)

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`, waking early on cancel.

        Returns True if cancellation was requested.
        """
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


# =============================================================================
# Progress Events
# =============================================================================

STAGE_PROGRESS: dict[str, int] = {
    # stage: baseline percent
    "initialization": 0,
    "generation": 20,
    "validation": 35,
    "correction": 50,
    "plan_step": 60,
    "completion": 100,
    "cancelled": 100,
}


@dataclass(frozen=True)
class ProgressEvent:
    """One observational update from the engine."""

    stage: str
    message: str
    issues: tuple[Issue, ...] = ()
    suggestions: tuple[str, ...] = ()
    progress_percent: int = 0
    diff: str | None = None
    is_error: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "stage": self.stage,
            "message": self.message,
            "issues": [i.to_dict() for i in self.issues],
            "suggestions": list(self.suggestions),
            "progress_percent": self.progress_percent,
            "diff": self.diff,
            "is_error": self.is_error,
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Bounded, thread-safe event buffer with optional subscribers.

    When the buffer is full the oldest events are dropped; the engine never
    blocks on a slow reader.
    """

    def __init__(self, maxlen: int = 200) -> None:
        self._events: deque[ProgressEvent] = deque(maxlen=maxlen)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event: ProgressEvent) -> None:
        """Buffer an event and hand it to subscribers."""
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                # Observers must never influence the correction loop.
                logger.exception("Progress subscriber failed for stage %s", event.stage)

    def emit(
        self,
        stage: str,
        message: str,
        *,
        issues: tuple[Issue, ...] | list[Issue] = (),
        suggestions: tuple[str, ...] | list[str] = (),
        progress_percent: int | None = None,
        diff: str | None = None,
        is_error: bool = False,
    ) -> None:
        """Convenience wrapper that builds and publishes a ProgressEvent."""
        if progress_percent is None:
            progress_percent = STAGE_PROGRESS.get(stage, 0)
        self.publish(
            ProgressEvent(
                stage=stage,
                message=message,
                issues=tuple(issues),
                suggestions=tuple(suggestions),
                progress_percent=max(0, min(100, progress_percent)),
                diff=diff,
                is_error=is_error,
            )
        )

    def drain(self) -> list[ProgressEvent]:
        """Remove and return all buffered events."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    def snapshot(self) -> list[ProgressEvent]:
        """Return buffered events without removing them."""
        with self._lock:
            return list(self._events)
