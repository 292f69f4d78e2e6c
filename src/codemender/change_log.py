"""Append-only record of the writes made while correcting files.

The most recent records are rendered back into the generation context so
the generator knows what has already been changed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from codemender.diff_utils import ChangeType, FileChange

logger = logging.getLogger(__name__)

RECENT_CHANGES_LIMIT = 3


@dataclass(frozen=True)
class ChangeRecord:
    path: str
    change_type: ChangeType
    summary: str
    diff: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_change(cls, change: FileChange) -> ChangeRecord:
        return cls(
            path=change.path,
            change_type=change.change_type,
            summary=change.summary,
            diff=change.diff_text,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "change_type": self.change_type.value,
            "summary": self.summary,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat(),
        }


class ChangeLog:
    """Records are only ever appended."""

    def __init__(self) -> None:
        self._records: list[ChangeRecord] = []

    def record(self, change: FileChange) -> ChangeRecord:
        entry = ChangeRecord.from_change(change)
        self._records.append(entry)
        logger.debug("Recorded change: %s", entry.summary)
        return entry

    def append(self, entry: ChangeRecord) -> None:
        self._records.append(entry)

    @property
    def records(self) -> tuple[ChangeRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def format_recent_changes(self, limit: int = RECENT_CHANGES_LIMIT) -> str:
        """Render the newest `limit` records for a generation prompt."""
        if not self._records:
            return ""

        lines = ["--- Recent Successful Changes ---"]
        for entry in self._records[-limit:]:
            stamp = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S")
            first_line = entry.summary.splitlines()[0] if entry.summary else ""
            lines.append(
                f"- **{entry.change_type.value.upper()}** `{entry.path}` ({stamp}): {first_line}"
            )
        lines.append("--- End Recent Successful Changes ---")
        return "\n".join(lines)
