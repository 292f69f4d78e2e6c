"""codemender - iterative, self-correcting code generation.

Generates or modifies a file, waits for its diagnostics to settle, and
repairs it with model-written correction plans until the diagnostics are
clean or the attempt budget runs out.
"""

from __future__ import annotations

from codemender.context import GenerationContext
from codemender.errors import (
    CodemenderError,
    CorrectionCancelledError,
    GenerationError,
    PlanParseError,
    StepExecutionError,
    TransientError,
    TransientGenerationError,
    WorkspaceUnavailableError,
)
from codemender.issues import Issue, IssueKind, RawDiagnostic, Severity, ValidationResult
from codemender.orchestrator import CorrectionOrchestrator, CorrectionResult, CorrectionStatus
from codemender.outcome import CorrectionAttemptOutcome, FailureKind
from codemender.plan import Plan, parse_plan
from codemender.stabilizer import DiagnosticStabilizer, StabilizationReport
from codemender.streaming import CancellationToken, ProgressChannel, ProgressEvent

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "CodemenderError",
    "CorrectionAttemptOutcome",
    "CorrectionCancelledError",
    "CorrectionOrchestrator",
    "CorrectionResult",
    "CorrectionStatus",
    "DiagnosticStabilizer",
    "FailureKind",
    "GenerationContext",
    "GenerationError",
    "Issue",
    "IssueKind",
    "Plan",
    "PlanParseError",
    "ProgressChannel",
    "ProgressEvent",
    "RawDiagnostic",
    "Severity",
    "StabilizationReport",
    "StepExecutionError",
    "TransientError",
    "TransientGenerationError",
    "ValidationResult",
    "WorkspaceUnavailableError",
    "parse_plan",
]
