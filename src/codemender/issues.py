"""Issue classification - normalizing raw diagnostics into Issues.

Raw diagnostics come from whatever linter or compiler the diagnostic
provider wraps. This module is the single boundary where they become
engine-level Issues: severity is mapped, a kind is chosen by the first
matching rule, and line numbers are converted to the engine's 1-indexed
convention exactly once.

Issues are compared across validation passes by structural similarity
(kind, severity, same or adjacent line, fuzzy message), never by identity.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Sequence


class IssueKind(Enum):
    """Normalized category of an issue."""

    SYNTAX = "syntax"
    UNUSED_IMPORT = "unused_import"
    BEST_PRACTICE = "best_practice"
    SECURITY = "security"
    FORMAT_ERROR = "format_error"
    OTHER = "other"


class Severity(Enum):
    """Issue severity, most severe first."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


# Ordering used when presenting issues to the generator.
KIND_ORDER: tuple[IssueKind, ...] = (
    IssueKind.FORMAT_ERROR,
    IssueKind.SYNTAX,
    IssueKind.UNUSED_IMPORT,
    IssueKind.SECURITY,
    IssueKind.BEST_PRACTICE,
    IssueKind.OTHER,
)
SEVERITY_ORDER: tuple[Severity, ...] = (Severity.ERROR, Severity.WARNING, Severity.INFO)

# Fuzzy message match threshold for structural similarity.
MESSAGE_SIMILARITY_THRESHOLD = 0.85
# Lines may drift by this much and still count as the same issue.
LINE_TOLERANCE = 1


@dataclass(frozen=True)
class RawDiagnostic:
    """A diagnostic as reported by the provider, before normalization."""

    message: str
    severity: str               # error, warning, info/information, hint
    line: int                   # As reported; see line_base
    column: int = 0
    line_base: int = 0          # 0 if the provider counts lines from zero
    code: Any = None            # str, int, or {"value": ...}
    source: str | None = None


@dataclass(frozen=True)
class Issue:
    """One normalized problem found in a file."""

    kind: IssueKind
    severity: Severity
    line: int                   # 1-indexed
    message: str
    code: str | None = None
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "line": self.line,
            "message": self.message,
            "code": self.code,
            "source": self.source,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Immutable snapshot of validating one candidate content."""

    valid: bool
    content: str
    issues: tuple[Issue, ...] = ()
    suggestions: tuple[str, ...] = field(default_factory=tuple)

    @property
    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.severity is Severity.ERROR)


_SEVERITY_MAP = {
    "error": Severity.ERROR,
    "fatal": Severity.ERROR,
    "warning": Severity.WARNING,
    "warn": Severity.WARNING,
    "info": Severity.INFO,
    "information": Severity.INFO,
    "hint": Severity.INFO,
}

_SYNTAX_HINTS = ("syntax", "compil", "lint")


def _map_severity(raw: str) -> Severity:
    return _SEVERITY_MAP.get(str(raw).strip().lower(), Severity.INFO)


def _unwrap_code(code: Any) -> str | None:
    if code is None:
        return None
    if isinstance(code, dict):
        value = code.get("value")
        return None if value is None else str(value)
    return str(code)


def classify(raw: RawDiagnostic) -> Issue:
    """Map a raw diagnostic to an Issue.

    Kind is chosen by the first matching rule:
    unused import -> error/warning or syntax/compile/lint wording -> security
    -> best practice -> other.
    """
    severity = _map_severity(raw.severity)
    message_lower = raw.message.lower()

    if "unused import" in message_lower or "imported but unused" in message_lower:
        kind = IssueKind.UNUSED_IMPORT
    elif severity in (Severity.ERROR, Severity.WARNING) or any(
        hint in message_lower for hint in _SYNTAX_HINTS
    ):
        kind = IssueKind.SYNTAX
    elif "security" in message_lower:
        kind = IssueKind.SECURITY
    elif "best practice" in message_lower:
        kind = IssueKind.BEST_PRACTICE
    else:
        kind = IssueKind.OTHER

    line = raw.line + (1 - raw.line_base)

    return Issue(
        kind=kind,
        severity=severity,
        line=max(1, line),
        message=raw.message,
        code=_unwrap_code(raw.code),
        source=raw.source,
    )


def validate(content: str, diagnostics: Iterable[RawDiagnostic]) -> ValidationResult:
    """Build a ValidationResult for content from its raw diagnostics."""
    issues = tuple(classify(d) for d in diagnostics)
    has_error = any(i.severity is Severity.ERROR for i in issues)

    if issues:
        suggestions = ("Consider addressing the identified issues for better code quality.",)
    else:
        suggestions = ("Code appears to be well-structured.",)

    return ValidationResult(
        valid=not has_error,
        content=content,
        issues=issues,
        suggestions=suggestions,
    )


# =============================================================================
# Structural similarity
# =============================================================================


def _normalize_message(message: str) -> str:
    return " ".join(message.lower().split())


def messages_similar(a: str, b: str) -> bool:
    """Fuzzy message comparison tolerant of small wording drift."""
    norm_a, norm_b = _normalize_message(a), _normalize_message(b)
    if norm_a == norm_b:
        return True
    return difflib.SequenceMatcher(None, norm_a, norm_b).ratio() >= MESSAGE_SIMILARITY_THRESHOLD


def issues_match(a: Issue, b: Issue) -> bool:
    """Two issues are structurally the same problem."""
    return (
        a.kind is b.kind
        and a.severity is b.severity
        and abs(a.line - b.line) <= LINE_TOLERANCE
        and messages_similar(a.message, b.message)
    )


def find_introduced(before: Sequence[Issue], after: Sequence[Issue]) -> list[Issue]:
    """Issues in `after` with no structural counterpart in `before`.

    Each issue in `before` can only account for one issue in `after`, so a
    duplicated problem counts as introduced.
    """
    unmatched = list(before)
    introduced: list[Issue] = []
    for issue in after:
        for idx, candidate in enumerate(unmatched):
            if issues_match(issue, candidate):
                del unmatched[idx]
                break
        else:
            introduced.append(issue)
    return introduced


def issue_sets_similar(a: Sequence[Issue], b: Sequence[Issue]) -> bool:
    """True when both sequences describe the same problems."""
    if len(a) != len(b):
        return False
    return not find_introduced(a, b)


# =============================================================================
# Ordering and grouping
# =============================================================================

_MISSING_NAME_PATTERNS = (
    re.compile(r"Cannot find name '([^']*)'"),
    re.compile(r"undefined name '([^']*)'", re.IGNORECASE),
    re.compile(r"name '([^']*)' is not defined"),
)


def sort_issues(issues: Iterable[Issue]) -> list[Issue]:
    """Order issues by kind priority, then severity, then line."""
    return sorted(
        issues,
        key=lambda i: (KIND_ORDER.index(i.kind), SEVERITY_ORDER.index(i.severity), i.line),
    )


def _missing_name(message: str) -> str | None:
    for pattern in _MISSING_NAME_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1)
    return None


def group_key(issue: Issue) -> str:
    """Heading used to group issues that share a fix strategy."""
    base = f"TYPE: {issue.kind.value.upper()} / SEVERITY: {issue.severity.value.upper()}"
    if issue.kind is IssueKind.SYNTAX:
        name = _missing_name(issue.message)
        if name is not None:
            return f"{base} / ISSUE: Missing Identifier '{name}'"
    if issue.code:
        return f"{base} / CODE: {issue.code}"
    return base


def group_and_prioritize(issues: Iterable[Issue]) -> dict[str, list[Issue]]:
    """Group issues by fix strategy, most urgent group first."""
    grouped: dict[str, list[Issue]] = {}
    for issue in sort_issues(issues):
        grouped.setdefault(group_key(issue), []).append(issue)
    return grouped
