"""Diagnostic stabilization - waiting for a delayed signal to settle.

Linters and language servers reprocess a file asynchronously after it
changes, so the diagnostics read immediately after a write are often stale.
The stabilizer samples the provider until the reported set stops changing
for a number of consecutive checks, or a soft deadline passes.
"""

from __future__ import annotations

import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from codemender.issues import RawDiagnostic
    from codemender.protocols import DiagnosticProvider
    from codemender.streaming import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_BASE_INTERVAL = 0.1
DEFAULT_REQUIRED_STABLE_CHECKS = 3
DEFAULT_MAX_BACKOFF_CAP = 1.0
BACKOFF_FACTOR = 1.2
JITTER_RATIO = 0.2

_SEVERITY_RANK = {"error": 0, "fatal": 0, "warning": 1, "warn": 1, "info": 2, "information": 2, "hint": 3}


@dataclass(frozen=True)
class StabilizationReport:
    """What happened while waiting."""

    stable: bool
    samples: int
    elapsed_seconds: float
    timed_out: bool = False
    cancelled: bool = False
    diagnostics: tuple[RawDiagnostic, ...] = field(default_factory=tuple)


def canonical_form(diagnostics: list[RawDiagnostic]) -> str:
    """Order-independent serialization of a diagnostic set."""
    rows = sorted(
        (
            _SEVERITY_RANK.get(str(d.severity).lower(), 4),
            d.line,
            d.column,
            d.message,
        )
        for d in diagnostics
    )
    return json.dumps(rows)


class DiagnosticStabilizer:
    """Polls a DiagnosticProvider until its output settles.

    Clock, sleep and random source are injectable so tests can run on a
    simulated timeline.
    """

    def __init__(
        self,
        provider: DiagnosticProvider,
        *,
        max_backoff_cap: float = DEFAULT_MAX_BACKOFF_CAP,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._provider = provider
        self._max_backoff_cap = max_backoff_cap
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    def next_interval(self, base_interval: float, unstable_streak: int) -> float:
        """Poll interval for the given streak of consecutive changes."""
        backoff = base_interval * (BACKOFF_FACTOR ** unstable_streak)
        jitter = self._rng.uniform(0.0, JITTER_RATIO * base_interval)
        return min(backoff + jitter, base_interval + self._max_backoff_cap)

    def wait_for_stable(
        self,
        target: str,
        timeout: float = DEFAULT_TIMEOUT,
        base_interval: float = DEFAULT_BASE_INTERVAL,
        required_stable_checks: int = DEFAULT_REQUIRED_STABLE_CHECKS,
        token: CancellationToken | None = None,
    ) -> StabilizationReport:
        """Block until diagnostics for `target` stop changing.

        The timeout is soft: when it passes, the latest sample is returned
        and the report is flagged `timed_out`. Cancellation returns early
        and is not an error.
        """
        start = self._clock()
        previous: str | None = None
        latest: list[RawDiagnostic] = []
        stable_checks = 0
        unstable_streak = 0
        samples = 0

        while True:
            if token is not None and token.is_cancelled:
                return self._report(start, samples, latest, cancelled=True)

            latest = list(self._provider.get_diagnostics(target))
            samples += 1
            current = canonical_form(latest)

            if previous is not None and current == previous:
                stable_checks += 1
                unstable_streak = 0
            elif previous is not None:
                stable_checks = 0
                unstable_streak += 1
            previous = current

            if stable_checks >= required_stable_checks:
                logger.debug(
                    "Diagnostics for %s stable after %d samples", target, samples
                )
                return self._report(start, samples, latest, stable=True)

            elapsed = self._clock() - start
            if elapsed >= timeout:
                logger.debug(
                    "Diagnostics for %s did not stabilize within %.2fs (%d samples)",
                    target,
                    timeout,
                    samples,
                )
                return self._report(start, samples, latest, timed_out=True)

            interval = min(self.next_interval(base_interval, unstable_streak), timeout - elapsed)

            if self._sleep is not None:
                self._sleep(interval)
            elif token is not None:
                if token.wait(interval):
                    return self._report(start, samples, latest, cancelled=True)
            else:
                time.sleep(interval)

    def _report(
        self,
        start: float,
        samples: int,
        latest: list[RawDiagnostic],
        *,
        stable: bool = False,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> StabilizationReport:
        return StabilizationReport(
            stable=stable,
            samples=samples,
            elapsed_seconds=self._clock() - start,
            timed_out=timed_out,
            cancelled=cancelled,
            diagnostics=tuple(latest),
        )
