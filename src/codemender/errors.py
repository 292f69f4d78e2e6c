"""Exception hierarchy for codemender.

Everything that can go wrong *inside* one correction iteration is caught by
the orchestrator and folded into a CorrectionAttemptOutcome. The exceptions
that escape to callers are cancellation and genuinely exceptional workspace
conditions.
"""

from __future__ import annotations


class CodemenderError(Exception):
    """Base class for all codemender errors."""


class TransientError(CodemenderError):
    """A failure that is likely to succeed if retried after a delay.

    Raised (or subclassed) at the collaborator boundary for rate limits,
    timeouts, network trouble and temporary service unavailability.
    """


class GenerationError(CodemenderError):
    """The generation collaborator failed to produce text."""


class TransientGenerationError(GenerationError, TransientError):
    """A generation request failed for an infrastructure reason."""


class PlanParseError(CodemenderError):
    """Correction plan text could not be turned into valid steps."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class CommandFailedError(CodemenderError):
    """A run-command step exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int | None, stderr: str = "") -> None:
        detail = f": {stderr.strip()[:500]}" if stderr and stderr.strip() else ""
        super().__init__(f"Command '{command}' exited with code {exit_code}{detail}")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class StepExecutionError(CodemenderError):
    """A plan step failed non-transiently (or exhausted its transient retries)."""

    def __init__(
        self,
        step_index: int,
        description: str,
        cause: BaseException,
        affected_paths: frozenset[str] = frozenset(),
    ) -> None:
        super().__init__(f"Step {step_index + 1} failed ({description}): {cause}")
        self.step_index = step_index
        self.description = description
        self.cause = cause
        # Paths written by earlier steps of the same plan
        self.affected_paths = affected_paths


class WorkspaceUnavailableError(CodemenderError):
    """The workspace root is missing or cannot be used at all."""


class CorrectionCancelledError(CodemenderError):
    """Raised when the user cancels an in-flight request."""


class DiagnosticsError(CodemenderError):
    """The diagnostic provider could not produce a result at all."""
