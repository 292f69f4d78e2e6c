"""Local filesystem workspace and subprocess command runner.

LocalWorkspace resolves every path against the workspace root and refuses
paths that escape it. An optional in-memory buffer overlay stands in for
unsaved editor buffers; edits applied to an open buffer stay in the buffer
until `save_buffers` is called.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from codemender.errors import WorkspaceUnavailableError
from codemender.protocols import CommandResult

if TYPE_CHECKING:
    from codemender.streaming import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 120
MAX_OUTPUT_CHARS = 10_000


class LocalWorkspace:
    """Workspace rooted at a directory on disk."""

    def __init__(self, root: str | Path, buffers: dict[str, str] | None = None) -> None:
        self._root = Path(root).resolve()
        self._buffers: dict[str, str] = dict(buffers or {})

    @property
    def root(self) -> str:
        return str(self._root)

    def _resolve(self, path: str) -> Path:
        if not self._root.is_dir():
            raise WorkspaceUnavailableError(f"Workspace root does not exist: {self._root}")
        resolved = (self._root / path).resolve()
        if resolved != self._root and self._root not in resolved.parents:
            raise PermissionError(f"Path escapes workspace root: {path}")
        return resolved

    def relative(self, path: str | Path) -> str:
        """Workspace-relative form of an absolute or relative path."""
        resolved = (self._root / path).resolve()
        return resolved.relative_to(self._root).as_posix()

    def exists(self, path: str) -> bool:
        return path in self._buffers or self._resolve(path).exists()

    def create_directory(self, path: str) -> None:
        self._resolve(path).mkdir(parents=True, exist_ok=True)
        logger.debug("Created directory %s", path)

    def read_file(self, path: str) -> str:
        """Read from disk; raises FileNotFoundError for missing files."""
        return self._resolve(path).read_text(encoding="utf-8")

    def read_buffer(self, path: str) -> str | None:
        return self._buffers.get(path)

    def open_buffer(self, path: str) -> str:
        """Load a file into the buffer overlay (as an editor opening it would)."""
        content = self.read_file(path)
        self._buffers[path] = content
        return content

    def write_file(self, path: str, content: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        if path in self._buffers:
            self._buffers[path] = content
        logger.debug("Wrote %d chars to %s", len(content), path)

    def apply_edit(self, path: str, new_content: str) -> None:
        """Replace the whole document, in the open buffer if there is one."""
        if path in self._buffers:
            self._buffers[path] = new_content
            return
        self.write_file(path, new_content)

    def save_buffers(self) -> list[str]:
        """Flush buffered edits to disk."""
        saved = []
        for path, content in self._buffers.items():
            target = self._resolve(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            saved.append(path)
        return saved


class SubprocessCommandRunner:
    """Runs shell commands with captured output and a timeout."""

    def __init__(self, timeout: int = DEFAULT_COMMAND_TIMEOUT) -> None:
        self.timeout = timeout

    def run(
        self,
        command_line: str,
        cwd: str,
        token: CancellationToken | None = None,
    ) -> CommandResult:
        if token is not None:
            token.raise_if_cancelled("Cancelled before running command")
        if not Path(cwd).is_dir():
            raise WorkspaceUnavailableError(f"Working directory does not exist: {cwd}")

        logger.info("Running command in %s: %s", cwd, command_line)
        try:
            result = subprocess.run(
                command_line,
                shell=True,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                stdout="",
                stderr=f"Command timed out after {self.timeout}s",
                exit_code=None,
            )

        return CommandResult(
            stdout=(result.stdout or "")[:MAX_OUTPUT_CHARS],
            stderr=(result.stderr or "")[:MAX_OUTPUT_CHARS],
            exit_code=result.returncode,
        )
