from __future__ import annotations

import json
import random
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from codemender.change_log import ChangeLog
from codemender.context import GenerationContext
from codemender.errors import WorkspaceUnavailableError
from codemender.issues import RawDiagnostic
from codemender.orchestrator import CorrectionOrchestrator
from codemender.plan_executor import PlanExecutor
from codemender.protocols import CommandResult
from codemender.stabilizer import DiagnosticStabilizer
from codemender.streaming import CancellationToken, ProgressChannel

# Lines containing this marker are reported by FakeLinter
BUG = "BUG"


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Simulated monotonic clock; sleeping advances it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# =============================================================================
# Workspace
# =============================================================================


class InMemoryWorkspace:
    """Workspace over dicts; optional open buffers shadow files."""

    def __init__(self, files: dict[str, str] | None = None, root: str = "/workspace") -> None:
        self.files: dict[str, str] = dict(files or {})
        self.buffers: dict[str, str] = {}
        self.directories: set[str] = set()
        self._root = root
        self.writes: list[tuple[str, str]] = []

    @property
    def root(self) -> str:
        return self._root

    def exists(self, path: str) -> bool:
        return path in self.files or path in self.directories or path in self.buffers

    def create_directory(self, path: str) -> None:
        if not self._root:
            raise WorkspaceUnavailableError("no root")
        self.directories.add(path)

    def read_file(self, path: str) -> str:
        try:
            return self.files[path]
        except KeyError:
            raise FileNotFoundError(path) from None

    def read_buffer(self, path: str) -> str | None:
        return self.buffers.get(path)

    def write_file(self, path: str, content: str) -> None:
        self.files[path] = content
        if path in self.buffers:
            self.buffers[path] = content
        self.writes.append((path, content))

    def apply_edit(self, path: str, new_content: str) -> None:
        if path in self.buffers:
            self.buffers[path] = new_content
            self.writes.append((path, new_content))
            return
        self.write_file(path, new_content)

    def current(self, path: str) -> str:
        return self.buffers.get(path, self.files.get(path, ""))


# =============================================================================
# Diagnostics
# =============================================================================


class FakeLinter:
    """Reports one error for every line of the target containing BUG."""

    def __init__(self, workspace: InMemoryWorkspace) -> None:
        self.workspace = workspace
        self.calls = 0

    def get_diagnostics(self, target: str) -> list[RawDiagnostic]:
        self.calls += 1
        diagnostics = []
        for number, line in enumerate(self.workspace.current(target).splitlines(), start=1):
            if BUG in line:
                diagnostics.append(
                    RawDiagnostic(
                        message=f"Undefined name '{line.strip()}'",
                        severity="error",
                        line=number,
                        line_base=1,
                        code="F821",
                        source="fake",
                    )
                )
        return diagnostics


class ScriptedDiagnostics:
    """Returns each scripted sample in turn, then repeats the last one."""

    def __init__(self, samples: list[list[RawDiagnostic]]) -> None:
        self.samples = list(samples)
        self.calls = 0

    def get_diagnostics(self, target: str) -> list[RawDiagnostic]:
        index = min(self.calls, len(self.samples) - 1)
        self.calls += 1
        return list(self.samples[index])


# =============================================================================
# Generation
# =============================================================================

Response = str | Exception | Callable[[str, GenerationContext | None], str]


class FakeGenerator:
    """Scripted GenerationClient that records what it was asked."""

    def __init__(
        self,
        contents: list[Response] | None = None,
        plans: list[Response] | None = None,
    ) -> None:
        self.contents = list(contents or [])
        self.plans = list(plans or [])
        self.generate_calls: list[tuple[str, GenerationContext | None]] = []
        self.plan_calls: list[tuple[str, GenerationContext | None]] = []

    def generate(self, instructions, context=None, on_chunk=None) -> str:
        self.generate_calls.append((instructions, context))
        return self._next(self.contents, instructions, context, "content")

    def generate_plan(self, instructions, context=None, on_chunk=None) -> str:
        self.plan_calls.append((instructions, context))
        return self._next(self.plans, instructions, context, "plan")

    @staticmethod
    def _next(queue: list[Response], instructions: str, context: Any, what: str) -> str:
        if not queue:
            raise AssertionError(f"FakeGenerator ran out of scripted {what} responses")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(instructions, context)
        return response


class FakeRunner:
    def __init__(self, results: list[CommandResult] | None = None) -> None:
        self.results = list(results or [CommandResult("ok\n", "", 0)])
        self.calls: list[tuple[str, str]] = []

    def run(self, command_line: str, cwd: str, token: CancellationToken | None = None) -> CommandResult:
        self.calls.append((command_line, cwd))
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


def plan_json(*steps: dict[str, Any], description: str = "Fix the reported issues") -> str:
    """Serialize steps as a plan, numbering them from 1."""
    numbered = [{"step": i, **step} for i, step in enumerate(steps, start=1)]
    return json.dumps({"planDescription": description, "steps": numbered})


def modify_step(path: str = "app.py", prompt: str = "Fix the issues") -> dict[str, Any]:
    return {
        "action": "modify_file",
        "description": f"Fix {path}",
        "path": path,
        "modification_prompt": prompt,
    }


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workspace() -> InMemoryWorkspace:
    return InMemoryWorkspace()


@pytest.fixture
def linter(workspace: InMemoryWorkspace) -> FakeLinter:
    return FakeLinter(workspace)


@pytest.fixture
def channel() -> ProgressChannel:
    return ProgressChannel()


@pytest.fixture
def make_executor(workspace: InMemoryWorkspace, channel: ProgressChannel, clock: FakeClock):
    """Factory for a PlanExecutor over the in-memory workspace."""

    def factory(
        generator: FakeGenerator | None = None,
        runner: FakeRunner | None = None,
        confirmer: Callable[[str], bool] | None = lambda _prompt: True,
        **kwargs: Any,
    ) -> PlanExecutor:
        return PlanExecutor(
            workspace,
            generator or FakeGenerator(),
            runner or FakeRunner(),
            confirmer=confirmer,
            channel=channel,
            change_log=kwargs.pop("change_log", ChangeLog()),
            sleep=clock.sleep,
            **kwargs,
        )

    return factory


@pytest.fixture
def make_orchestrator(
    workspace: InMemoryWorkspace,
    linter: FakeLinter,
    channel: ProgressChannel,
    clock: FakeClock,
):
    """Factory for an orchestrator on a simulated timeline."""

    def factory(
        generator: FakeGenerator,
        runner: FakeRunner | None = None,
        max_iterations: int = 5,
        diagnostics: Any = None,
        **kwargs: Any,
    ) -> CorrectionOrchestrator:
        change_log = ChangeLog()
        runner = runner or FakeRunner()
        executor = PlanExecutor(
            workspace,
            generator,
            runner,
            confirmer=lambda _prompt: True,
            channel=channel,
            change_log=change_log,
            sleep=clock.sleep,
        )
        stabilizer = DiagnosticStabilizer(
            diagnostics or linter,
            clock=clock,
            sleep=clock.sleep,
            rng=random.Random(0),
        )
        return CorrectionOrchestrator(
            generator,
            diagnostics or linter,
            workspace,
            runner,
            channel=channel,
            change_log=change_log,
            stabilizer=stabilizer,
            executor=executor,
            max_iterations=max_iterations,
            stabilization_timeout=2.0,
            base_interval=0.05,
            required_stable_checks=2,
            **kwargs,
        )

    return factory


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root
