"""Outcome classification and oscillation detection.

Each correction iteration ends in exactly one CorrectionAttemptOutcome. The
outcome's FailureKind decides what feedback the next generation call sees:

- no FailureKind: issues went to zero, or the count dropped with nothing new
- new_errors_introduced: something appeared that was not there before
- oscillation_detected: the last two attempts left the same problems behind
  (checked before improvement)
- no_improvement: nothing got better
- parsing_failed / command_failed: the plan never reached re-validation
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

from codemender.issues import Issue, find_introduced, issue_sets_similar

MAX_FAILED_OUTPUT_CHARS = 500


class FailureKind(Enum):
    """Why a correction attempt did not finish the job."""

    NO_IMPROVEMENT = "no_improvement"
    NEW_ERRORS_INTRODUCED = "new_errors_introduced"
    OSCILLATION_DETECTED = "oscillation_detected"
    PARSING_FAILED = "parsing_failed"
    COMMAND_FAILED = "command_failed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CorrectionFeedback:
    """What the next generation call is told about the previous attempt."""

    kind: FailureKind | None
    message: str
    issues_remaining: tuple[Issue, ...] = ()
    issues_introduced: tuple[Issue, ...] = ()
    relevant_diff: str = ""
    parsing_error: str | None = None
    failed_output: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "issues_remaining": [i.to_dict() for i in self.issues_remaining],
            "issues_introduced": [i.to_dict() for i in self.issues_introduced],
            "relevant_diff": self.relevant_diff,
            "parsing_error": self.parsing_error,
            "failed_output": self.failed_output,
        }


@dataclass(frozen=True)
class CorrectionAttemptOutcome:
    """Record of one correction loop iteration."""

    iteration: int
    issues_before_count: int
    issues_after_count: int
    issues_remaining: tuple[Issue, ...]
    issues_introduced: tuple[Issue, ...]
    diff_summary: str
    failure_kind: FailureKind | None
    feedback: CorrectionFeedback
    failure_analysis: str = ""

    @property
    def success(self) -> bool:
        """Issues went to zero on this attempt."""
        return self.failure_kind is None and self.issues_after_count == 0

    @property
    def improved(self) -> bool:
        return self.failure_kind is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "issues_before_count": self.issues_before_count,
            "issues_after_count": self.issues_after_count,
            "issues_remaining": [i.to_dict() for i in self.issues_remaining],
            "issues_introduced": [i.to_dict() for i in self.issues_introduced],
            "diff_summary": self.diff_summary,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "feedback": self.feedback.to_dict(),
            "failure_analysis": self.failure_analysis,
            "success": self.success,
        }


def classify_outcome(
    issues_before: Sequence[Issue],
    issues_after: Sequence[Issue],
    oscillating: bool = False,
) -> tuple[FailureKind | None, list[Issue]]:
    """Judge one attempt by comparing issue sets.

    Returns the FailureKind (None for success or improvement) and the
    issues that were introduced by the attempt.
    """
    introduced = find_introduced(issues_before, issues_after)

    if not issues_after:
        return None, introduced
    if introduced:
        return FailureKind.NEW_ERRORS_INTRODUCED, introduced
    if oscillating:
        return FailureKind.OSCILLATION_DETECTED, introduced
    if len(issues_after) < len(issues_before):
        return None, introduced
    return FailureKind.NO_IMPROVEMENT, introduced


def detect_oscillation(history: Sequence[CorrectionAttemptOutcome]) -> bool:
    """True when the two most recent attempts failed the same way.

    Only the last two outcomes are compared; slower cycles are not looked for.
    """
    if len(history) < 2:
        return False
    last, second_last = history[-1], history[-2]
    if last.success or second_last.success:
        return False
    return issue_sets_similar(last.issues_remaining, second_last.issues_remaining)


_ANALYSIS = {
    FailureKind.NO_IMPROVEMENT: (
        "The previous correction did not reduce the number of issues. "
        "Try a different approach instead of repeating the same edit."
    ),
    FailureKind.NEW_ERRORS_INTRODUCED: (
        "The previous correction introduced new issues. "
        "Keep the fix narrower and do not touch unrelated code."
    ),
    FailureKind.OSCILLATION_DETECTED: (
        "The last attempts keep ending with the same unresolved issues. "
        "Break the pattern: change strategy rather than re-applying similar edits."
    ),
    FailureKind.PARSING_FAILED: (
        "The previous correction plan was not valid JSON for the plan schema. "
        "Return only a JSON object with 'planDescription' and 'steps'."
    ),
    FailureKind.COMMAND_FAILED: (
        "Applying the previous correction plan failed. "
        "Avoid the failing step or make it safe to run."
    ),
    FailureKind.UNKNOWN: "The previous correction failed for an unknown reason.",
}


def failure_analysis(kind: FailureKind | None) -> str:
    if kind is None:
        return "The previous correction reduced the number of issues. Continue with the remaining ones."
    return _ANALYSIS[kind]


def build_feedback(
    kind: FailureKind | None,
    issues_before: Sequence[Issue],
    issues_after: Sequence[Issue],
    introduced: Sequence[Issue] = (),
    *,
    diff_summary: str = "",
    error: str | None = None,
    raw_text: str | None = None,
) -> CorrectionFeedback:
    """Build the feedback message the next generation call sees for `kind`."""
    before_count, after_count = len(issues_before), len(issues_after)
    parsing_error = None
    failed_output = None

    if kind is None and not issues_after:
        message = f"All {before_count} issue(s) were resolved."
    elif kind is None:
        message = f"Issues reduced from {before_count} to {after_count} with no new issues."
    elif kind is FailureKind.NEW_ERRORS_INTRODUCED:
        message = (
            f"Correction introduced {len(introduced)} new issue(s); "
            f"issue count went from {before_count} to {after_count}."
        )
    elif kind is FailureKind.OSCILLATION_DETECTED:
        message = (
            f"Oscillation detected: {after_count} issue(s) remain, matching the "
            "previous attempts."
        )
    elif kind is FailureKind.PARSING_FAILED:
        message = error or "Failed to parse the correction plan."
        parsing_error = error
        failed_output = (raw_text or "")[:MAX_FAILED_OUTPUT_CHARS]
    elif kind in (FailureKind.COMMAND_FAILED, FailureKind.UNKNOWN):
        message = error or "The correction attempt failed."
    else:
        message = f"No improvement: issue count went from {before_count} to {after_count}."

    return CorrectionFeedback(
        kind=kind,
        message=message,
        issues_remaining=tuple(issues_after),
        issues_introduced=tuple(introduced),
        relevant_diff=diff_summary,
        parsing_error=parsing_error,
        failed_output=failed_output,
    )


def _outcome(
    iteration: int,
    kind: FailureKind | None,
    issues_before: Sequence[Issue],
    issues_after: Sequence[Issue],
    introduced: Sequence[Issue],
    feedback: CorrectionFeedback,
    diff_summary: str = "",
) -> CorrectionAttemptOutcome:
    return CorrectionAttemptOutcome(
        iteration=iteration,
        issues_before_count=len(issues_before),
        issues_after_count=len(issues_after),
        issues_remaining=tuple(issues_after),
        issues_introduced=tuple(introduced),
        diff_summary=diff_summary,
        failure_kind=kind,
        feedback=feedback,
        failure_analysis=failure_analysis(kind),
    )


def analyze_attempt(
    iteration: int,
    issues_before: Sequence[Issue],
    issues_after: Sequence[Issue],
    *,
    oscillating: bool = False,
    diff_summary: str = "",
) -> CorrectionAttemptOutcome:
    """Classify an attempt that reached re-validation and build its feedback."""
    kind, introduced = classify_outcome(issues_before, issues_after, oscillating)
    feedback = build_feedback(
        kind, issues_before, issues_after, introduced, diff_summary=diff_summary
    )
    return _outcome(iteration, kind, issues_before, issues_after, introduced, feedback, diff_summary)


def parsing_failed_outcome(
    iteration: int,
    issues_before: Sequence[Issue],
    error: str,
    raw_text: str,
) -> CorrectionAttemptOutcome:
    """Outcome for a plan that could not be parsed; the file was not touched."""
    kind = FailureKind.PARSING_FAILED
    feedback = build_feedback(
        kind, issues_before, issues_before, error=error, raw_text=raw_text
    )
    return _outcome(iteration, kind, issues_before, issues_before, (), feedback)


def command_failed_outcome(
    iteration: int,
    issues_before: Sequence[Issue],
    issues_after: Sequence[Issue],
    error: str,
    diff_summary: str = "",
) -> CorrectionAttemptOutcome:
    """Outcome for a plan whose execution failed (or did nothing)."""
    kind = FailureKind.COMMAND_FAILED
    introduced = find_introduced(issues_before, issues_after)
    feedback = build_feedback(
        kind, issues_before, issues_after, introduced, diff_summary=diff_summary, error=error
    )
    return _outcome(iteration, kind, issues_before, issues_after, introduced, feedback, diff_summary)


def oscillation_feedback(
    last: CorrectionAttemptOutcome,
    second_last: CorrectionAttemptOutcome,
) -> CorrectionFeedback:
    """Hint attached to the next generation call when attempts oscillate."""
    return CorrectionFeedback(
        kind=FailureKind.OSCILLATION_DETECTED,
        message=(
            f"Previous attempts ({second_last.iteration}, {last.iteration}) resulted in "
            "similar unresolved issues. Do not repeat them; try a different fix."
        ),
        issues_remaining=last.issues_remaining,
        relevant_diff=last.diff_summary,
    )


def unknown_outcome(
    iteration: int,
    issues_before: Sequence[Issue],
    error: str,
) -> CorrectionAttemptOutcome:
    """Outcome for a failure that fits no other kind, e.g. plan generation failing."""
    kind = FailureKind.UNKNOWN
    feedback = build_feedback(kind, issues_before, issues_before, error=error)
    return _outcome(iteration, kind, issues_before, issues_before, (), feedback)
