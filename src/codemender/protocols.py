"""Collaborator protocols for the correction engine.

The engine depends only on these capability interfaces. Concrete
implementations live in `codemender.workspace`, `codemender.diagnostics`
and `codemender.providers`; tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from codemender.context import GenerationContext
    from codemender.issues import RawDiagnostic
    from codemender.streaming import CancellationToken

ChunkCallback = Callable[[str], None]
Confirmer = Callable[[str], bool]


@dataclass(frozen=True)
class CommandResult:
    """Captured result of running a shell command."""

    stdout: str
    stderr: str
    exit_code: int | None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class GenerationClient(Protocol):
    """Produces text from instructions.

    Implementations raise TransientGenerationError for rate limits, timeouts
    and unavailability, and GenerationError for everything else.
    """

    def generate(
        self,
        instructions: str,
        context: GenerationContext | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Generate file content."""
        ...

    def generate_plan(
        self,
        instructions: str,
        context: GenerationContext | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Generate raw, possibly malformed, correction plan text."""
        ...


@runtime_checkable
class DiagnosticProvider(Protocol):
    """Cheap, synchronous access to the current diagnostics of a file."""

    def get_diagnostics(self, target: str) -> list[RawDiagnostic]:
        ...


@runtime_checkable
class Workspace(Protocol):
    """File operations relative to a workspace root.

    `read_file` raises FileNotFoundError for missing files so callers can
    tell "create" from "modify".
    """

    @property
    def root(self) -> str:
        ...

    def exists(self, path: str) -> bool:
        ...

    def create_directory(self, path: str) -> None:
        ...

    def read_file(self, path: str) -> str:
        ...

    def read_buffer(self, path: str) -> str | None:
        """Content of an open, possibly unsaved, editor buffer (None if not open)."""
        ...

    def write_file(self, path: str, content: str) -> None:
        ...

    def apply_edit(self, path: str, new_content: str) -> None:
        """Replace the whole document content."""
        ...


@runtime_checkable
class CommandRunner(Protocol):
    """Runs a command line in a working directory."""

    def run(
        self,
        command_line: str,
        cwd: str,
        token: CancellationToken | None = None,
    ) -> CommandResult:
        ...
