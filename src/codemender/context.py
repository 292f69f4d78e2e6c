"""GenerationContext - the state threaded through one correction request.

The context is a frozen value. The orchestrator evolves it with the
`with_*` reducers and hands the current value to each collaborator call,
so nothing outside the loop can change what the loop remembers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from codemender.outcome import (
    CorrectionAttemptOutcome,
    CorrectionFeedback,
    detect_oscillation,
    oscillation_feedback,
)
from codemender.structure import FileStructureAnalysis

DEFAULT_HISTORY_WINDOW = 5


@dataclass(frozen=True)
class GenerationContext:
    """Everything the generator is told besides the instructions."""

    project_context: str = ""
    relevant_snippets: tuple[str, ...] = ()
    file_structure: FileStructureAnalysis | None = None
    recent_changes: str = ""
    history: tuple[CorrectionAttemptOutcome, ...] = field(default_factory=tuple)
    history_window: int = DEFAULT_HISTORY_WINDOW
    is_oscillating: bool = False
    last_outcome: CorrectionAttemptOutcome | None = None

    # -------------------------------------------------------------------------
    # Reducers
    # -------------------------------------------------------------------------

    def with_outcome(self, outcome: CorrectionAttemptOutcome) -> GenerationContext:
        """Record an attempt; the history keeps only the newest entries."""
        history = (*self.history, outcome)[-self.history_window :]
        return replace(
            self,
            history=history,
            last_outcome=outcome,
            is_oscillating=detect_oscillation(history),
        )

    def with_structure(self, analysis: FileStructureAnalysis | None) -> GenerationContext:
        return replace(self, file_structure=analysis)

    def with_recent_changes(self, text: str) -> GenerationContext:
        return replace(self, recent_changes=text)

    def cleared(self) -> GenerationContext:
        """Drop attempt history and the oscillation flag."""
        return replace(self, history=(), last_outcome=None, is_oscillating=False)

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    @property
    def feedback(self) -> list[CorrectionFeedback]:
        """Feedback for the next generation call, most specific first."""
        items: list[CorrectionFeedback] = []
        if self.last_outcome is not None:
            items.append(self.last_outcome.feedback)
        if self.is_oscillating and len(self.history) >= 2:
            items.append(oscillation_feedback(self.history[-1], self.history[-2]))
        return items

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_context": self.project_context,
            "relevant_snippets": list(self.relevant_snippets),
            "file_structure": self.file_structure.to_dict() if self.file_structure else None,
            "recent_changes": self.recent_changes,
            "history": [o.to_dict() for o in self.history],
            "is_oscillating": self.is_oscillating,
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }
