"""Plan executor - applies correction plan steps against the workspace.

Steps run strictly in declared order. A step that fails for a transient
reason (rate limit, timeout, network) is retried after a growing delay; any
other failure stops the plan with a StepExecutionError naming the step.
Shell commands run only after explicit confirmation.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Iterable

from codemender.change_log import ChangeLog, ChangeRecord
from codemender.diff_utils import ChangeType, analyze_diff, generate_diff
from codemender.errors import (
    CodemenderError,
    CommandFailedError,
    CorrectionCancelledError,
    StepExecutionError,
    TransientError,
    WorkspaceUnavailableError,
)
from codemender.plan import (
    CreateDirectoryStep,
    CreateFileStep,
    ModifyFileStep,
    PlanStep,
    RunCommandStep,
)
from codemender.prompts import (
    build_generation_prompt,
    build_modification_prompt,
    strip_code_fences,
)
from codemender.streaming import ProgressChannel

if TYPE_CHECKING:
    from codemender.context import GenerationContext
    from codemender.protocols import CommandRunner, Confirmer, GenerationClient, Workspace
    from codemender.streaming import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRANSIENT_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 10.0
DEFAULT_RETRY_STEP_DELAY = 5.0

# Fallback for errors raised without a typed transient marker
TRANSIENT_MESSAGE_PATTERNS = (
    "quota exceeded",
    "rate limit",
    "network",
    "service unavailable",
    "timeout",
    "overloaded",
)

# Never retried, never wrapped
_HARD_ERRORS = (CorrectionCancelledError, WorkspaceUnavailableError, PermissionError)

_OUTPUT_PREVIEW_CHARS = 2000
_WAIT_SLICE = 0.25


def is_transient(exc: BaseException) -> bool:
    """Decide whether a step failure is worth retrying.

    Typed errors decide on their own; message matching only applies to
    errors outside the codemender hierarchy.
    """
    if isinstance(exc, (TransientError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, CodemenderError):
        return False
    message = str(exc).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGE_PATTERNS)


def describe_step(step: PlanStep) -> str:
    """Human-readable description; the plan's own wording wins."""
    if step.description and step.description.strip():
        return step.description.strip()
    if isinstance(step, CreateDirectoryStep):
        return f"Creating directory: `{step.path}`"
    if isinstance(step, CreateFileStep):
        if step.generate_prompt is None:
            return f"Creating file: `{step.path}` (with predefined content)"
        return f"Creating file: `{step.path}`"
    if isinstance(step, ModifyFileStep):
        return f"Modifying file: `{step.path}`"
    if isinstance(step, RunCommandStep):
        return f"Running command: `{step.command}`"
    return f"Executing action: {step.action.replace('_', ' ')}"


class PlanExecutor:
    """Executes plan steps with per-step transient retry.

    Returns the set of workspace-relative paths that were written.
    """

    def __init__(
        self,
        workspace: Workspace,
        generator: GenerationClient,
        runner: CommandRunner,
        *,
        confirmer: Confirmer | None = None,
        channel: ProgressChannel | None = None,
        change_log: ChangeLog | None = None,
        max_transient_retries: int = DEFAULT_MAX_TRANSIENT_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        retry_step_delay: float = DEFAULT_RETRY_STEP_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.workspace = workspace
        self.generator = generator
        self.runner = runner
        self.confirmer = confirmer
        self.channel = channel or ProgressChannel()
        self.change_log = change_log if change_log is not None else ChangeLog()
        self.max_transient_retries = max_transient_retries
        self.retry_base_delay = retry_base_delay
        self.retry_step_delay = retry_step_delay
        self._sleep = sleep

    def retry_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (1-based)."""
        return self.retry_base_delay + self.retry_step_delay * attempt

    def execute(
        self,
        steps: Iterable[PlanStep],
        workspace_root: str | None = None,
        token: CancellationToken | None = None,
        context: GenerationContext | None = None,
    ) -> set[str]:
        """Run every step in order.

        Raises:
            StepExecutionError: a step failed non-transiently, or ran out of
                transient retries.
            CorrectionCancelledError: cancellation was requested.
            WorkspaceUnavailableError, PermissionError: propagated unwrapped.
        """
        root = workspace_root or self.workspace.root
        if not root:
            raise WorkspaceUnavailableError("No workspace root is available")

        ordered = list(steps)
        total = len(ordered)
        affected: set[str] = set()

        for index, step in enumerate(ordered):
            attempt = 0
            while True:
                if token is not None:
                    token.raise_if_cancelled("Plan execution cancelled")

                label = self._label(step, index, total, attempt)
                self._progress(index, total, label)
                logger.info("%s", label)

                try:
                    affected |= self._dispatch(step, root, token, context)
                    break
                except _HARD_ERRORS:
                    raise
                except Exception as exc:
                    if is_transient(exc) and attempt < self.max_transient_retries:
                        attempt += 1
                        delay = self.retry_delay(attempt)
                        logger.warning(
                            "Step %d/%d failed transiently, retrying in %.1fs: %s",
                            index + 1,
                            total,
                            delay,
                            exc,
                        )
                        self._progress(
                            index,
                            total,
                            f"FAILED (transient, auto-retrying): {exc}",
                            is_error=True,
                        )
                        self.wait(delay, token)
                        continue

                    logger.error("Step %d/%d failed: %s", index + 1, total, exc)
                    self._progress(index, total, f"FAILED: {exc}", is_error=True)
                    raise StepExecutionError(
                        index, describe_step(step), exc, frozenset(affected)
                    ) from exc

        return affected

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _label(self, step: PlanStep, index: int, total: int, attempt: int) -> str:
        suffix = f" (Auto-retry {attempt}/{self.max_transient_retries})" if attempt else ""
        return f"Step {index + 1}/{total}: {describe_step(step)}{suffix}"

    def _progress(
        self,
        index: int,
        total: int,
        message: str,
        *,
        diff: str | None = None,
        is_error: bool = False,
    ) -> None:
        percent = 60 + int(30 * index / max(total, 1))
        self.channel.emit(
            "plan_step", message, progress_percent=percent, diff=diff, is_error=is_error
        )

    def wait(self, seconds: float, token: CancellationToken | None = None) -> None:
        """Sleep out a retry backoff in short slices, stopping on cancel."""
        remaining = seconds
        while remaining > 0:
            if token is not None:
                token.raise_if_cancelled("Cancelled during retry backoff")
            chunk = min(_WAIT_SLICE, remaining)
            self._sleep(chunk)
            remaining -= chunk
        if token is not None:
            token.raise_if_cancelled("Cancelled during retry backoff")

    def _dispatch(
        self,
        step: PlanStep,
        root: str,
        token: CancellationToken | None,
        context: GenerationContext | None,
    ) -> set[str]:
        if isinstance(step, CreateDirectoryStep):
            return self._create_directory(step)
        if isinstance(step, CreateFileStep):
            return self._create_file(step, token, context)
        if isinstance(step, ModifyFileStep):
            return self._modify_file(step, token, context)
        if isinstance(step, RunCommandStep):
            self._run_command(step, root, token)
            return set()
        raise ValueError(f"Unknown step action: {step.action}")

    def _read_current(self, path: str) -> str:
        """Prefer an open editor buffer over the file on disk."""
        buffered = self.workspace.read_buffer(path)
        if buffered is not None:
            return buffered
        return self.workspace.read_file(path)

    def _create_directory(self, step: CreateDirectoryStep) -> set[str]:
        if self.workspace.exists(step.path):
            logger.debug("Directory %s already exists", step.path)
            return set()
        self.workspace.create_directory(step.path)
        summary = f"created directory {step.path}"
        self.change_log.append(ChangeRecord(step.path, ChangeType.CREATED, summary))
        self.channel.emit("plan_step", f"Created directory `{step.path}`")
        return {step.path}

    def _create_file(
        self,
        step: CreateFileStep,
        token: CancellationToken | None,
        context: GenerationContext | None,
    ) -> set[str]:
        if step.generate_prompt is not None:
            if token is not None:
                token.raise_if_cancelled()
            raw = self.generator.generate(
                build_generation_prompt(step.path, step.generate_prompt, context), context
            )
            content = strip_code_fences(raw)
        else:
            content = step.content or ""

        try:
            existing: str | None = self._read_current(step.path)
        except FileNotFoundError:
            existing = None

        if existing == content:
            logger.debug("File %s already has the requested content", step.path)
            return set()

        self.workspace.write_file(step.path, content)
        change = generate_diff(step.path, existing, content)
        self.change_log.record(change)
        self.channel.emit("plan_step", change.summary, diff=change.diff_text)
        return {step.path}

    def _modify_file(
        self,
        step: ModifyFileStep,
        token: CancellationToken | None,
        context: GenerationContext | None,
    ) -> set[str]:
        current = self._read_current(step.path)

        if token is not None:
            token.raise_if_cancelled()
        raw = self.generator.generate(
            build_modification_prompt(step.path, step.modification_prompt, current, context),
            context,
        )
        modified = strip_code_fences(raw)

        if modified == current:
            logger.debug("Modification of %s produced no changes", step.path)
            return set()

        analysis = analyze_diff(current, modified)
        if not analysis.is_reasonable:
            logger.warning("Suspicious modification of %s: %s", step.path, "; ".join(analysis.issues))
            self.channel.emit(
                "plan_step",
                f"Warning for `{step.path}`: {'; '.join(analysis.issues)}",
                is_error=True,
            )

        self.workspace.apply_edit(step.path, modified)
        change = generate_diff(step.path, current, modified)
        self.change_log.record(change)
        self.channel.emit("plan_step", change.summary, diff=change.diff_text)
        return {step.path}

    def _run_command(
        self,
        step: RunCommandStep,
        root: str,
        token: CancellationToken | None,
    ) -> None:
        prompt = f"Run command `{step.command}` in {root}?"
        confirmed = self.confirmer(prompt) if self.confirmer is not None else False
        if token is not None:
            token.raise_if_cancelled("Plan execution cancelled at command confirmation")

        if not confirmed:
            logger.info("Command skipped by user: %s", step.command)
            self.channel.emit("plan_step", f"Skipped command `{step.command}`")
            return

        result = self.runner.run(step.command, root, token)
        if result.stdout:
            self.channel.emit("plan_step", f"stdout:\n{result.stdout[:_OUTPUT_PREVIEW_CHARS]}")
        if result.stderr:
            self.channel.emit(
                "plan_step",
                f"stderr:\n{result.stderr[:_OUTPUT_PREVIEW_CHARS]}",
                is_error=not result.ok,
            )
        if not result.ok:
            raise CommandFailedError(step.command, result.exit_code, result.stderr)
