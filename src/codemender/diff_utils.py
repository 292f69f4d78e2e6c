"""Diff utilities for correction attempts.

Every write the engine makes is diffed against what was there before. The
diff text goes into the change log and progress events; the summary line
goes into attempt outcomes so the generator can see what its last plan did.
"""

from __future__ import annotations

import difflib
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# A modification that changes the line count by more than this share of the
# original is flagged as drastic.
DRASTIC_CHANGE_RATIO = 0.8


class ChangeType(Enum):
    """What a write did to a file."""

    CREATED = "created"
    MODIFIED = "modified"


@dataclass
class Hunk:
    """A contiguous block of changes."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[str] = field(default_factory=list)
    header: str = ""        # @@ -old_start,old_count +new_start,new_count @@

    def to_dict(self) -> dict[str, Any]:
        return {
            "old_start": self.old_start,
            "old_count": self.old_count,
            "new_start": self.new_start,
            "new_count": self.new_count,
            "lines": self.lines,
            "header": self.header,
        }


@dataclass
class FileChange:
    """One file write with its diff."""

    path: str
    change_type: ChangeType
    old_content: str | None = None     # None when the file was created
    new_content: str = ""
    hunks: list[Hunk] = field(default_factory=list)
    diff_text: str = ""
    old_sha256: str | None = None
    new_sha256: str | None = None
    additions: int = 0
    deletions: int = 0

    @property
    def unchanged(self) -> bool:
        return self.old_content is not None and self.old_content == self.new_content

    @property
    def summary(self) -> str:
        """One-line description, e.g. "modified src/app.py (+3 -1)"."""
        if self.unchanged:
            return f"{self.path}: no changes"
        return f"{self.change_type.value} {self.path} (+{self.additions} -{self.deletions})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "change_type": self.change_type.value,
            "hunks": [h.to_dict() for h in self.hunks],
            "diff_text": self.diff_text,
            "old_sha256": self.old_sha256,
            "new_sha256": self.new_sha256,
            "additions": self.additions,
            "deletions": self.deletions,
        }


def _sha256(content: str | None) -> str | None:
    if content is None:
        return None
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def _parse_range(text: str) -> tuple[int, int]:
    if "," in text:
        start, count = text.split(",", 1)
        return int(start), int(count)
    return int(text), 1


def _parse_hunks(diff_lines: list[str]) -> list[Hunk]:
    """Split unified diff output into hunks."""
    hunks: list[Hunk] = []
    current: Hunk | None = None

    for line in diff_lines:
        if line.startswith("@@"):
            if current is not None:
                hunks.append(current)
            old_range, new_range = "1,0", "1,0"
            for part in line.split("@@")[1].split():
                if part.startswith("-"):
                    old_range = part[1:]
                elif part.startswith("+"):
                    new_range = part[1:]
            old_start, old_count = _parse_range(old_range)
            new_start, new_count = _parse_range(new_range)
            current = Hunk(old_start, old_count, new_start, new_count, header=line.rstrip("\n"))
        elif current is not None and not line.startswith(("---", "+++")):
            current.lines.append(line)

    if current is not None:
        hunks.append(current)
    return hunks


def generate_diff(
    path: str,
    old_content: str | None,
    new_content: str,
    context_lines: int = 3,
) -> FileChange:
    """Diff `old_content` (None for a new file) against `new_content`."""
    change_type = ChangeType.CREATED if old_content is None else ChangeType.MODIFIED

    diff_lines = list(
        difflib.unified_diff(
            (old_content or "").splitlines(keepends=True),
            new_content.splitlines(keepends=True),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
            n=context_lines,
        )
    )

    return FileChange(
        path=path,
        change_type=change_type,
        old_content=old_content,
        new_content=new_content,
        hunks=_parse_hunks(diff_lines),
        diff_text="".join(diff_lines),
        old_sha256=_sha256(old_content),
        new_sha256=_sha256(new_content),
        additions=sum(1 for l in diff_lines if l.startswith("+") and not l.startswith("+++")),
        deletions=sum(1 for l in diff_lines if l.startswith("-") and not l.startswith("---")),
    )


# =============================================================================
# Modification sanity check
# =============================================================================


@dataclass(frozen=True)
class DiffAnalysis:
    """Whether a whole-file modification looks proportionate."""

    is_reasonable: bool
    change_ratio: float
    issues: tuple[str, ...] = ()


def _import_lines(lines: list[str]) -> int:
    return sum(1 for line in lines if line.strip().startswith(("import ", "from ")))


def analyze_diff(original: str, modified: str) -> DiffAnalysis:
    """Flag modifications that rewrite far more than a targeted fix should."""
    original_lines = original.split("\n")
    modified_lines = modified.split("\n")

    if not original:
        change_ratio = 1.0 if modified else 0.0
    else:
        change_ratio = abs(len(modified_lines) - len(original_lines)) / len(original_lines)

    issues: list[str] = []
    if change_ratio > DRASTIC_CHANGE_RATIO:
        issues.append("Modification seems too drastic - consider a more targeted approach")
    if _import_lines(original_lines) > 0 and _import_lines(modified_lines) == 0:
        issues.append("All imports were removed - this may be incorrect")

    return DiffAnalysis(
        is_reasonable=not issues,
        change_ratio=change_ratio,
        issues=tuple(issues),
    )
