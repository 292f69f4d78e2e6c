"""Line-based structural analysis of a source file.

Deliberately shallow: it is fed to the generator as orientation, not used
for any decision in the correction loop, so a regex pass that works across
Python and C-family languages is enough.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

_IMPORT_RE = re.compile(r"^(import\s|from\s+\S+\s+import\s|#include\s|using\s|require\(|use\s)")
_EXPORT_RE = re.compile(r"^(export\s|module\.exports|__all__\s*=)")
_FUNCTION_RE = re.compile(
    r"^((async\s+)?def\s+\w+|(export\s+)?(async\s+)?function\b|func\s+\w+|fn\s+\w+)"
    r"|=>"
)
_CLASS_RE = re.compile(r"^((export\s+)?(abstract\s+)?class\s+\w+|struct\s+\w+|interface\s+\w+)")
_VARIABLE_RE = re.compile(r"^((const|let|var)\s+\w+|[A-Za-z_]\w*\s*(:[^=]+)?=(?!=))")
_COMMENT_RE = re.compile(r"^(#|//|/\*|\*|\"\"\"|''')")


@dataclass(frozen=True)
class StructureEntry:
    line: int
    content: str


@dataclass(frozen=True)
class FileStructureAnalysis:
    """Where imports, definitions and comments sit in a file."""

    imports: tuple[StructureEntry, ...] = field(default_factory=tuple)
    exports: tuple[StructureEntry, ...] = field(default_factory=tuple)
    functions: tuple[StructureEntry, ...] = field(default_factory=tuple)
    classes: tuple[StructureEntry, ...] = field(default_factory=tuple)
    variables: tuple[StructureEntry, ...] = field(default_factory=tuple)
    comments: tuple[StructureEntry, ...] = field(default_factory=tuple)

    @property
    def summary(self) -> str:
        return (
            f"{len(self.functions)} functions, {len(self.classes)} classes, "
            f"{len(self.imports)} imports"
        )

    def to_dict(self) -> dict[str, Any]:
        def rows(entries: tuple[StructureEntry, ...]) -> list[dict[str, Any]]:
            return [{"line": e.line, "content": e.content} for e in entries]

        return {
            "imports": rows(self.imports),
            "exports": rows(self.exports),
            "functions": rows(self.functions),
            "classes": rows(self.classes),
            "variables": rows(self.variables),
            "comments": rows(self.comments),
        }


def analyze_structure(content: str) -> FileStructureAnalysis:
    """Scan `content` line by line; each line lands in at most one bucket."""
    buckets: dict[str, list[StructureEntry]] = {
        "imports": [],
        "exports": [],
        "functions": [],
        "classes": [],
        "variables": [],
        "comments": [],
    }

    for number, raw in enumerate(content.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        entry = StructureEntry(line=number, content=line)

        if _COMMENT_RE.match(line):
            buckets["comments"].append(entry)
        elif _IMPORT_RE.match(line):
            buckets["imports"].append(entry)
        elif _CLASS_RE.match(line):
            buckets["classes"].append(entry)
        elif _FUNCTION_RE.search(line):
            buckets["functions"].append(entry)
        elif _EXPORT_RE.match(line):
            buckets["exports"].append(entry)
        elif not raw[:1].isspace() and _VARIABLE_RE.match(line):
            # Only top-level (unindented) assignments count as variables
            buckets["variables"].append(entry)

    return FileStructureAnalysis(**{name: tuple(entries) for name, entries in buckets.items()})


def format_structure(analysis: FileStructureAnalysis | None) -> str:
    """Render an analysis as a short block for a generation prompt."""
    if analysis is None:
        return ""

    lines = ["**File Structure Analysis:**"]
    if analysis.imports:
        lines.append(f"- Imports: {len(analysis.imports)} lines")
    if analysis.exports:
        lines.append(f"- Exports: {len(analysis.exports)} lines")
    if analysis.functions:
        lines.append(f"- Functions: {len(analysis.functions)} functions")
    if analysis.classes:
        lines.append(f"- Classes: {len(analysis.classes)} classes")
    if analysis.variables:
        lines.append(f"- Variables: {len(analysis.variables)} variables")
    if analysis.comments:
        lines.append(f"- Comments: {len(analysis.comments)} lines")
    lines.append(
        "Analyze this structure to understand the file's organization and apply "
        "changes consistently."
    )
    return "\n".join(lines)
