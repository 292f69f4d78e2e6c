"""Tests for the linter-backed diagnostic provider."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from codemender.errors import DiagnosticsError
from codemender.diagnostics import LinterDiagnostics, parse_ruff_json, parse_text_output
from codemender.issues import IssueKind, Severity, classify


class TestParseRuffJson:
    """Tests for ruff's JSON output."""

    def test_rows(self) -> None:
        """Should map codes to severities and keep 1-based locations."""
        output = json.dumps(
            [
                {"code": "F401", "message": "`os` imported but unused", "location": {"row": 1, "column": 8}},
                {"code": "F821", "message": "Undefined name `helper`", "location": {"row": 4, "column": 5}},
                {"code": None, "message": "SyntaxError: Expected ':'", "location": {"row": 7, "column": 1}},
            ]
        )

        diagnostics = parse_ruff_json(output)

        assert [d.severity for d in diagnostics] == ["warning", "error", "error"]
        assert diagnostics[1].line == 4
        assert diagnostics[1].column == 5
        assert all(d.line_base == 1 and d.source == "ruff" for d in diagnostics)

    def test_empty(self) -> None:
        """Should treat empty output as no findings."""
        assert parse_ruff_json("") == []
        assert parse_ruff_json("[]") == []

    def test_classified_unused_import(self) -> None:
        """Should feed the classifier the code it needs."""
        output = json.dumps(
            [{"code": "F401", "message": "`os` imported but unused", "location": {"row": 1}}]
        )

        issue = classify(parse_ruff_json(output)[0])

        assert issue.kind is IssueKind.UNUSED_IMPORT
        assert issue.severity is Severity.WARNING


class TestParseTextOutput:
    """Tests for `path:line[:col]: message` output."""

    def test_mypy_style(self) -> None:
        """Should read an explicit severity."""
        [diag] = parse_text_output('app.py:3:5: error: Name "x" is not defined  [name-defined]')

        assert diag.severity == "error"
        assert diag.line == 3
        assert diag.column == 5
        assert diag.message.startswith('Name "x"')

    def test_flake8_style(self) -> None:
        """Should split a leading code off the message."""
        [diag] = parse_text_output("app.py:2:1: F401 'os' imported but unused", source="flake8")

        assert diag.code == "F401"
        assert diag.message == "'os' imported but unused"
        assert diag.severity == "warning"
        assert diag.source == "flake8"

    def test_notes_and_noise(self) -> None:
        """Should map notes to info and skip summary lines."""
        output = "app.py:7: note: See the docs\nFound 1 error in 1 file\n\n"

        [diag] = parse_text_output(output)

        assert diag.severity == "info"
        assert diag.column == 0


class TestLinterDiagnostics:
    """Tests for running the lint command."""

    def test_text_output(self, project_dir: Path) -> None:
        """Should run the command in the root with the target substituted."""
        provider = LinterDiagnostics(project_dir, command="echo {path}:2:1: F821 undefined name y")

        [diag] = provider.get_diagnostics("app.py")

        assert diag.line == 2
        assert diag.code == "F821"
        assert diag.severity == "error"
        assert diag.source == "echo"

    def test_json_output(self, project_dir: Path) -> None:
        """Should detect JSON output."""
        provider = LinterDiagnostics(project_dir, command="echo '[]'")

        assert provider.get_diagnostics("app.py") == []

    def test_target_is_quoted(self, project_dir: Path) -> None:
        """Should shell-quote the target path."""
        provider = LinterDiagnostics(project_dir, command="echo {path}")

        assert "'my file.py'" in provider._command_for("my file.py")

    def test_lint_failure(self, project_dir: Path) -> None:
        """Should raise DiagnosticsError when the linter itself fails."""
        provider = LinterDiagnostics(project_dir, command="sh -c 'echo broken >&2; exit 2'")

        with pytest.raises(DiagnosticsError, match="broken"):
            provider.get_diagnostics("app.py")

    def test_bad_json(self, project_dir: Path) -> None:
        """Should raise DiagnosticsError for unreadable JSON."""
        provider = LinterDiagnostics(project_dir, command="echo '[not json'")

        with pytest.raises(DiagnosticsError):
            provider.get_diagnostics("app.py")
