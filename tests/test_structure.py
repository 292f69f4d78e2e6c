"""Tests for line-based structure analysis."""

from __future__ import annotations

from codemender.structure import analyze_structure, format_structure

PYTHON_SOURCE = """\
# Settings loader
import os
from pathlib import Path

__all__ = ["load"]
DEFAULT_NAME: str = "app"


class Loader:
    cache = {}

    def load(self):
        value = os.environ.get("X")
        return value


async def fetch():
    pass
"""


class TestAnalyzeStructure:
    def test_python_buckets(self) -> None:
        """Should sort each line into the right bucket with its line number."""
        analysis = analyze_structure(PYTHON_SOURCE)

        assert [e.line for e in analysis.comments] == [1]
        assert [e.content for e in analysis.imports] == ["import os", "from pathlib import Path"]
        assert [e.line for e in analysis.classes] == [9]
        assert [e.line for e in analysis.functions] == [12, 17]
        assert [e.content for e in analysis.exports] == ['__all__ = ["load"]']

    def test_only_top_level_assignments_are_variables(self) -> None:
        """Should ignore indented assignments."""
        analysis = analyze_structure(PYTHON_SOURCE)

        assert [e.content for e in analysis.variables] == ['DEFAULT_NAME: str = "app"']

    def test_c_family(self) -> None:
        """Should recognize JavaScript-style declarations."""
        source = (
            "import { x } from './x';\n"
            "export function run() {}\n"
            "const handler = () => 1;\n"
            "export class Widget {}\n"
            "// note\n"
        )

        analysis = analyze_structure(source)

        assert len(analysis.imports) == 1
        assert len(analysis.classes) == 1
        assert len(analysis.comments) == 1
        assert [e.line for e in analysis.functions] == [2, 3]

    def test_summary(self) -> None:
        """Should count functions, classes and imports."""
        assert analyze_structure(PYTHON_SOURCE).summary == "2 functions, 1 classes, 2 imports"


class TestFormatStructure:
    def test_none_renders_nothing(self) -> None:
        """Should contribute nothing without an analysis."""
        assert format_structure(None) == ""

    def test_counts_are_listed(self) -> None:
        """Should list the non-empty buckets."""
        text = format_structure(analyze_structure(PYTHON_SOURCE))

        assert text.startswith("**File Structure Analysis:**")
        assert "- Imports: 2 lines" in text
        assert "- Functions: 2 functions" in text
        assert "Exports" in text
