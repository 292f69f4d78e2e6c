"""Linter-backed diagnostic provider.

Runs a configurable lint command for one file and turns its output into
RawDiagnostics. Two output shapes are understood:

- ruff's JSON (`--output-format=json`): a list of objects with `code`,
  `message` and a 1-based `location`
- the common `path:line[:col]: [severity:] message` text format used by
  flake8, pyflakes, mypy, eslint's unix formatter and most compilers
"""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any

from codemender.errors import DiagnosticsError
from codemender.issues import RawDiagnostic

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "ruff check --output-format=json --no-cache {path}"
DEFAULT_TIMEOUT = 60

_TEXT_LINE_RE = re.compile(
    r"^(?P<file>[^:\n]+):(?P<line>\d+):(?:(?P<col>\d+):)?\s*"
    r"(?:(?P<sev>error|warning|note|info|hint):)?\s*(?P<msg>.+)$",
    re.IGNORECASE,
)
_LEADING_CODE_RE = re.compile(r"^(?P<code>[A-Z]+\d+)\s+(?P<msg>.+)$")


def _severity_for(code: str | None, message: str) -> str:
    """Lint findings are warnings unless the file does not even parse."""
    if code in (None, "E999") or "syntax" in message.lower():
        return "error"
    if code.startswith(("F8", "E9")):
        # Undefined names and runtime errors break the program
        return "error"
    return "warning"


def parse_ruff_json(output: str) -> list[RawDiagnostic]:
    rows: list[dict[str, Any]] = json.loads(output or "[]")
    diagnostics = []
    for row in rows:
        location = row.get("location") or {}
        code = row.get("code")
        message = row.get("message", "")
        diagnostics.append(
            RawDiagnostic(
                message=message,
                severity=_severity_for(code, message),
                line=int(location.get("row", 1)),
                column=int(location.get("column", 0)),
                line_base=1,
                code=code,
                source="ruff",
            )
        )
    return diagnostics


def parse_text_output(output: str, source: str | None = None) -> list[RawDiagnostic]:
    diagnostics = []
    for line in output.splitlines():
        match = _TEXT_LINE_RE.match(line.strip())
        if not match:
            continue
        message = match.group("msg").strip()
        code = None
        code_match = _LEADING_CODE_RE.match(message)
        if code_match:
            code, message = code_match.group("code"), code_match.group("msg")

        severity = match.group("sev")
        if severity is None:
            severity = _severity_for(code, message) if code else "warning"
        elif severity.lower() == "note":
            severity = "info"

        diagnostics.append(
            RawDiagnostic(
                message=message,
                severity=severity.lower(),
                line=int(match.group("line")),
                column=int(match.group("col") or 0),
                line_base=1,
                code=code,
                source=source,
            )
        )
    return diagnostics


class LinterDiagnostics:
    """DiagnosticProvider that shells out to a linter."""

    def __init__(
        self,
        root: str | Path,
        command: str = DEFAULT_COMMAND,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        self.root = Path(root)
        self.command = command
        self.timeout = timeout

    def _command_for(self, target: str) -> str:
        return self.command.format(path=shlex.quote(target))

    def get_diagnostics(self, target: str) -> list[RawDiagnostic]:
        command = self._command_for(target)
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise DiagnosticsError(f"Diagnostics command timed out: {command}") from e

        output = result.stdout.strip()
        if result.returncode > 1 and not output:
            raise DiagnosticsError(
                f"Diagnostics command failed with code {result.returncode}: "
                f"{result.stderr.strip()[:500]}"
            )

        source = shlex.split(self.command)[0] if self.command.strip() else None
        if output.startswith("["):
            try:
                return parse_ruff_json(output)
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                raise DiagnosticsError(f"Could not parse diagnostics JSON: {e}") from e
        return parse_text_output(output, source=source)
