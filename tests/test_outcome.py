"""Tests for outcome classification and oscillation detection."""

from __future__ import annotations

from codemender.issues import Issue, IssueKind, Severity
from codemender.outcome import (
    FailureKind,
    analyze_attempt,
    build_feedback,
    classify_outcome,
    command_failed_outcome,
    detect_oscillation,
    parsing_failed_outcome,
    unknown_outcome,
)


def issue(name: str, line: int) -> Issue:
    return Issue(
        kind=IssueKind.SYNTAX,
        severity=Severity.ERROR,
        line=line,
        message=f"Undefined name '{name}'",
    )


A, B, C = issue("alpha", 2), issue("beta", 10), issue("gamma", 20)


class TestClassifyOutcome:
    """Tests for judging one attempt."""

    def test_all_resolved(self) -> None:
        """Should report success when nothing remains."""
        kind, introduced = classify_outcome([A, B], [])

        assert kind is None
        assert introduced == []

    def test_improvement_is_not_a_failure(self) -> None:
        """Should return no failure kind when the count drops with nothing new."""
        kind, _ = classify_outcome([A, B, C], [C])

        assert kind is None

    def test_new_errors_introduced(self) -> None:
        """Should flag regressions even when the count goes down."""
        new = issue("delta", 40)

        kind, introduced = classify_outcome([A, B, C], [new])

        assert kind is FailureKind.NEW_ERRORS_INTRODUCED
        assert introduced == [new]

    def test_no_improvement(self) -> None:
        """Should flag attempts that leave the same problems."""
        kind, _ = classify_outcome([A, B], [A, B])

        assert kind is FailureKind.NO_IMPROVEMENT

    def test_oscillation_beats_improvement(self) -> None:
        """Should report oscillation before considering a lower count."""
        kind, _ = classify_outcome([A, B], [A], oscillating=True)

        assert kind is FailureKind.OSCILLATION_DETECTED

    def test_regression_beats_oscillation(self) -> None:
        """Should report introduced issues before oscillation."""
        kind, _ = classify_outcome([A], [issue("delta", 40)], oscillating=True)

        assert kind is FailureKind.NEW_ERRORS_INTRODUCED


class TestDetectOscillation:
    """Tests for the two-attempt oscillation window."""

    def test_needs_two_attempts(self) -> None:
        """Should never oscillate with fewer than two outcomes."""
        assert not detect_oscillation([])
        assert not detect_oscillation([analyze_attempt(1, [A, B], [A, B])])

    def test_same_failures_twice(self) -> None:
        """Should detect two failed attempts leaving the same issues."""
        history = [
            analyze_attempt(1, [A, B], [A, B]),
            analyze_attempt(2, [A, B], [B, A]),
        ]

        assert detect_oscillation(history)

    def test_different_leftovers(self) -> None:
        """Should not oscillate when the remaining issues differ."""
        history = [
            analyze_attempt(1, [A, B], [A, B]),
            command_failed_outcome(2, [A, B], [A], "Step 1 failed"),
        ]

        assert not detect_oscillation(history)

    def test_success_breaks_oscillation(self) -> None:
        """Should not oscillate when either attempt succeeded."""
        history = [analyze_attempt(1, [A], [A]), analyze_attempt(2, [A], [])]

        assert not detect_oscillation(history)

    def test_only_last_two_count(self) -> None:
        """Should ignore older outcomes."""
        history = [
            analyze_attempt(1, [A], [A]),
            analyze_attempt(2, [A], [A]),
            analyze_attempt(3, [A], [issue("delta", 40)]),
        ]

        assert not detect_oscillation(history)


class TestOutcomeBuilders:
    """Tests for building outcomes and their feedback."""

    def test_analyze_attempt_counts(self) -> None:
        """Should record before and after counts and the diff."""
        outcome = analyze_attempt(2, [A, B, C], [C], diff_summary="-bad\n+good")

        assert outcome.iteration == 2
        assert outcome.issues_before_count == 3
        assert outcome.issues_after_count == 1
        assert outcome.improved
        assert not outcome.success
        assert outcome.feedback.relevant_diff == "-bad\n+good"
        assert "reduced from 3 to 1" in outcome.feedback.message

    def test_success_outcome(self) -> None:
        """Should be successful only when nothing remains."""
        outcome = analyze_attempt(1, [A], [])

        assert outcome.success
        assert outcome.feedback.kind is None

    def test_parsing_failed_truncates_output(self) -> None:
        """Should keep the raw plan text, truncated, and leave issues unchanged."""
        outcome = parsing_failed_outcome(1, [A, B], "bad json", "x" * 2000)

        assert outcome.failure_kind is FailureKind.PARSING_FAILED
        assert outcome.issues_after_count == 2
        assert outcome.feedback.parsing_error == "bad json"
        assert len(outcome.feedback.failed_output) == 500

    def test_command_failed_keeps_introduced(self) -> None:
        """Should still report issues a partially applied plan introduced."""
        new = issue("delta", 40)

        outcome = command_failed_outcome(1, [A], [A, new], "Command 'make' exited with code 2")

        assert outcome.failure_kind is FailureKind.COMMAND_FAILED
        assert outcome.issues_introduced == (new,)
        assert outcome.feedback.message.startswith("Command 'make'")

    def test_unknown_outcome(self) -> None:
        """Should carry the error message."""
        outcome = unknown_outcome(3, [A], "boom")

        assert outcome.failure_kind is FailureKind.UNKNOWN
        assert outcome.feedback.message == "boom"
        assert outcome.failure_analysis

    def test_build_feedback_for_regression(self) -> None:
        """Should mention how many issues were introduced."""
        feedback = build_feedback(
            FailureKind.NEW_ERRORS_INTRODUCED, [A], [A, B], [B]
        )

        assert "introduced 1 new issue" in feedback.message
        assert feedback.issues_introduced == (B,)

    def test_to_dict(self) -> None:
        """Should serialize kinds by value."""
        data = analyze_attempt(1, [A], [A]).to_dict()

        assert data["failure_kind"] == "no_improvement"
        assert data["feedback"]["kind"] == "no_improvement"
        assert data["success"] is False
