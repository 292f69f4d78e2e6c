"""Tests for PlanExecutor - ordered step execution with transient retry."""

from __future__ import annotations

import pytest

from codemender.errors import (
    CommandFailedError,
    CorrectionCancelledError,
    GenerationError,
    StepExecutionError,
    TransientGenerationError,
    WorkspaceUnavailableError,
)
from codemender.plan import CreateDirectoryStep, CreateFileStep, ModifyFileStep, RunCommandStep
from codemender.plan_executor import describe_step, is_transient
from codemender.protocols import CommandResult
from codemender.streaming import CancellationToken

from tests.conftest import FakeClock, FakeGenerator, FakeRunner, InMemoryWorkspace


def modify(path: str = "app.py", prompt: str = "fix it", step: int = 1) -> ModifyFileStep:
    return ModifyFileStep(step=step, path=path, modification_prompt=prompt)


class TestIsTransient:
    """Tests for transient failure classification."""

    def test_typed_errors(self) -> None:
        """Should trust typed markers first."""
        assert is_transient(TransientGenerationError("anything"))
        assert is_transient(TimeoutError())
        assert is_transient(ConnectionResetError())

    def test_hierarchy_errors_are_not_guessed(self) -> None:
        """Should not string-match errors that chose not to be transient."""
        assert not is_transient(GenerationError("rate limit reached"))

    def test_untyped_message_fallback(self) -> None:
        """Should fall back to message patterns for foreign errors."""
        assert is_transient(RuntimeError("Service Unavailable, try later"))
        assert is_transient(ValueError("Quota exceeded for model"))
        assert not is_transient(RuntimeError("file not found"))


class TestDescribeStep:
    def test_plan_description_wins(self) -> None:
        """Should prefer the plan's own wording."""
        step = CreateDirectoryStep(step=1, path="pkg", description="Make the package")

        assert describe_step(step) == "Make the package"

    def test_fallbacks(self) -> None:
        """Should describe each action when the plan gave no description."""
        assert describe_step(CreateDirectoryStep(path="pkg")) == "Creating directory: `pkg`"
        assert describe_step(CreateFileStep(path="a.py", content="x")).endswith(
            "(with predefined content)"
        )
        assert describe_step(RunCommandStep(command="make")) == "Running command: `make`"


class TestExecuteFileSteps:
    """Tests for directory and file steps."""

    def test_steps_run_in_order(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should apply steps strictly in declared order and report paths."""
        generator = FakeGenerator(contents=["generated = True\n"])
        executor = make_executor(generator)

        affected = executor.execute(
            [
                CreateDirectoryStep(step=1, path="pkg"),
                CreateFileStep(step=2, path="pkg/a.py", content="a = 1\n"),
                CreateFileStep(step=3, path="pkg/b.py", generate_prompt="write b"),
            ]
        )

        assert affected == {"pkg", "pkg/a.py", "pkg/b.py"}
        assert [path for path, _ in workspace.writes] == ["pkg/a.py", "pkg/b.py"]
        assert workspace.files["pkg/b.py"] == "generated = True\n"

    def test_create_directory_is_idempotent(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should skip directories that already exist."""
        workspace.directories.add("pkg")

        assert make_executor().execute([CreateDirectoryStep(step=1, path="pkg")]) == set()

    def test_created_directory_is_logged(self, make_executor) -> None:
        """Should record a new directory as a created change."""
        executor = make_executor()

        executor.execute([CreateDirectoryStep(step=1, path="pkg")])

        record = executor.change_log.records[0]
        assert record.path == "pkg"
        assert record.change_type.value == "created"
        assert "**CREATED** `pkg`" in executor.change_log.format_recent_changes()

    def test_literal_content_is_written_verbatim(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should keep code fences that belong to the file itself."""
        readme = "# Usage\n\n```bash\npip install x\n```\n\nDone.\n"

        make_executor().execute([CreateFileStep(path="README.md", content=readme)])

        assert workspace.files["README.md"] == readme

    def test_generated_content_is_unfenced(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should strip markdown fences around generated files."""
        generator = FakeGenerator(contents=["```python\nx = 1\n```"])

        make_executor(generator).execute([CreateFileStep(path="a.py", generate_prompt="x")])

        assert workspace.files["a.py"] == "x = 1\n"

    def test_identical_content_is_a_noop(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should not write or log a byte-identical file."""
        workspace.files["a.py"] = "x = 1\n"
        executor = make_executor()

        affected = executor.execute([CreateFileStep(path="a.py", content="x = 1\n")])

        assert affected == set()
        assert workspace.writes == []
        assert len(executor.change_log) == 0

    def test_overwrite_is_logged_as_modified(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should diff against the existing file."""
        workspace.files["a.py"] = "x = 1\n"
        executor = make_executor()

        executor.execute([CreateFileStep(path="a.py", content="x = 2\n")])

        record = executor.change_log.records[0]
        assert record.change_type.value == "modified"
        assert "+x = 2" in record.diff

    def test_modify_prefers_open_buffer(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should send the unsaved buffer, not the file on disk, and edit the buffer."""
        workspace.files["app.py"] = "on disk\n"
        workspace.buffers["app.py"] = "import os\nunsaved = 1\n"
        generator = FakeGenerator(contents=["import os\nunsaved = 2\n"])

        make_executor(generator).execute([modify()])

        prompt, _ = generator.generate_calls[0]
        assert "unsaved = 1" in prompt
        assert workspace.buffers["app.py"] == "import os\nunsaved = 2\n"
        assert workspace.files["app.py"] == "on disk\n"

    def test_unchanged_modification_is_a_noop(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should report nothing when the generator returns the same text."""
        workspace.files["app.py"] = "x = 1\n"
        generator = FakeGenerator(contents=["x = 1\n"])

        assert make_executor(generator).execute([modify()]) == set()

    def test_modify_missing_file_fails(self, make_executor) -> None:
        """Should fail the step when the file does not exist."""
        with pytest.raises(StepExecutionError) as excinfo:
            make_executor(FakeGenerator(contents=["x"])).execute([modify("missing.py")])

        assert isinstance(excinfo.value.cause, FileNotFoundError)

    def test_drastic_modification_warns(self, make_executor, workspace: InMemoryWorkspace, channel) -> None:
        """Should still apply a suspicious rewrite but emit a warning event."""
        workspace.files["app.py"] = "import os\n" + "x = 1\n" * 20
        generator = FakeGenerator(contents=["y = 2\n"])

        make_executor(generator).execute([modify()])

        warnings = [e for e in channel.drain() if e.is_error]
        assert any("imports were removed" in e.message for e in warnings)
        assert workspace.files["app.py"] == "y = 2\n"


class TestExecuteCommands:
    """Tests for run_command steps."""

    def test_confirmed_command_runs_in_root(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should run with the workspace root as working directory."""
        runner = FakeRunner()

        make_executor(runner=runner).execute([RunCommandStep(command="ruff check .")])

        assert runner.calls == [("ruff check .", workspace.root)]

    def test_declined_command_is_skipped(self, make_executor, channel) -> None:
        """Should treat a declined confirmation as a successful skip."""
        runner = FakeRunner()
        executor = make_executor(runner=runner, confirmer=lambda _prompt: False)

        assert executor.execute([RunCommandStep(command="make")]) == set()
        assert runner.calls == []
        assert any("Skipped command" in e.message for e in channel.drain())

    def test_no_confirmer_never_runs(self, make_executor) -> None:
        """Should never run commands without a way to ask."""
        runner = FakeRunner()

        make_executor(runner=runner, confirmer=None).execute([RunCommandStep(command="make")])

        assert runner.calls == []

    def test_output_is_surfaced(self, make_executor, channel) -> None:
        """Should publish stdout and stderr even on success."""
        runner = FakeRunner([CommandResult("all good", "a warning", 0)])

        make_executor(runner=runner).execute([RunCommandStep(command="make")])

        messages = [e.message for e in channel.drain()]
        assert any("all good" in m for m in messages)
        assert any("a warning" in m for m in messages)

    def test_nonzero_exit_fails_the_step(self, make_executor) -> None:
        """Should raise StepExecutionError wrapping CommandFailedError."""
        runner = FakeRunner([CommandResult("", "boom", 2)])

        with pytest.raises(StepExecutionError) as excinfo:
            make_executor(runner=runner).execute(
                [
                    CreateFileStep(step=1, path="a.py", content="x\n"),
                    RunCommandStep(step=2, command="make"),
                ]
            )

        error = excinfo.value
        assert error.step_index == 1
        assert isinstance(error.cause, CommandFailedError)
        assert error.cause.exit_code == 2
        assert error.affected_paths == frozenset({"a.py"})
        assert str(error).startswith("Step 2 failed")


class TestTransientRetry:
    """Tests for the per-step retry policy."""

    def test_transient_failure_is_retried(self, make_executor, workspace: InMemoryWorkspace, clock: FakeClock) -> None:
        """Should retry the same step after 10 + 5 * attempt seconds."""
        generator = FakeGenerator(
            contents=[
                TransientGenerationError("429 rate limited"),
                TransientGenerationError("503"),
                "x = 1\n",
            ]
        )

        affected = make_executor(generator).execute([CreateFileStep(path="a.py", generate_prompt="x")])

        assert affected == {"a.py"}
        assert len(generator.generate_calls) == 3
        assert sum(clock.sleeps) == pytest.approx(15 + 20)

    def test_retries_are_bounded(self, make_executor, clock: FakeClock) -> None:
        """Should give up after three retries with a StepExecutionError."""
        generator = FakeGenerator(contents=[TransientGenerationError("overloaded")])

        with pytest.raises(StepExecutionError):
            make_executor(generator).execute([CreateFileStep(path="a.py", generate_prompt="x")])

        assert len(generator.generate_calls) == 4
        assert sum(clock.sleeps) == pytest.approx(15 + 20 + 25)

    def test_non_transient_failure_is_immediate(self, make_executor, clock: FakeClock) -> None:
        """Should not retry ordinary failures."""
        generator = FakeGenerator(contents=[GenerationError("model refused")])

        with pytest.raises(StepExecutionError):
            make_executor(generator).execute([CreateFileStep(path="a.py", generate_prompt="x")])

        assert len(generator.generate_calls) == 1
        assert clock.sleeps == []

    def test_configurable_delays(self, make_executor, clock: FakeClock) -> None:
        """Should honor configured delays."""
        generator = FakeGenerator(contents=[TimeoutError("slow"), "x\n"])
        executor = make_executor(generator, retry_base_delay=1.0, retry_step_delay=0.5)

        executor.execute([CreateFileStep(path="a.py", generate_prompt="x")])

        assert sum(clock.sleeps) == pytest.approx(1.5)


class TestHardErrorsAndCancellation:
    """Tests for errors that must never be wrapped."""

    def test_cancelled_before_first_step(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should not run anything once cancelled."""
        token = CancellationToken()
        token.cancel()

        with pytest.raises(CorrectionCancelledError):
            make_executor().execute([CreateFileStep(path="a.py", content="x")], token=token)

        assert workspace.writes == []

    def test_cancel_during_backoff(self, make_executor, clock: FakeClock) -> None:
        """Should stop waiting as soon as the token is cancelled."""
        token = CancellationToken()

        def fail_and_cancel(instructions, context):
            token.cancel()
            raise TransientGenerationError("rate limit")

        generator = FakeGenerator(contents=[fail_and_cancel])

        with pytest.raises(CorrectionCancelledError):
            make_executor(generator).execute(
                [CreateFileStep(path="a.py", generate_prompt="x")], token=token
            )

        assert len(generator.generate_calls) == 1
        assert sum(clock.sleeps) < 15

    def test_workspace_errors_propagate_unwrapped(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should let WorkspaceUnavailableError escape as-is."""
        workspace._root = ""

        with pytest.raises(WorkspaceUnavailableError):
            make_executor().execute([CreateDirectoryStep(path="pkg")])

    def test_permission_error_propagates(self, make_executor, workspace: InMemoryWorkspace) -> None:
        """Should let PermissionError escape as-is."""

        def deny(path: str, content: str) -> None:
            raise PermissionError(path)

        workspace.write_file = deny  # type: ignore[method-assign]

        with pytest.raises(PermissionError):
            make_executor().execute([CreateFileStep(path="a.py", content="x")])
