"""Correction orchestrator - the self-correcting generation loop.

State machine:

    INIT -> GENERATE_INITIAL -> VALIDATE_INITIAL -> DONE
                                                 -> CORRECTION_LOOP
    CORRECTION_LOOP, per iteration:
        PLAN_GENERATE -> PLAN_EXECUTE -> REVALIDATE -> CLASSIFY -> DONE | next

Every iteration ends in exactly one CorrectionAttemptOutcome that is folded
into the GenerationContext the next iteration sees. The loop ends with
SUCCESS (zero issues), PARTIAL (budget exhausted) or CANCELLED. Failing to
fix a file is never an exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from codemender.change_log import ChangeLog
from codemender.context import GenerationContext
from codemender.diff_utils import generate_diff
from codemender.errors import (
    CorrectionCancelledError,
    GenerationError,
    PlanParseError,
    StepExecutionError,
)
from codemender.issues import Issue, IssueKind, Severity, ValidationResult, validate
from codemender.outcome import (
    CorrectionAttemptOutcome,
    analyze_attempt,
    command_failed_outcome,
    parsing_failed_outcome,
    unknown_outcome,
)
from codemender.plan import CreateFileStep, ModifyFileStep, Plan, RunCommandStep, parse_plan
from codemender.plan_executor import PlanExecutor, is_transient
from codemender.prompts import build_correction_plan_prompt
from codemender.stabilizer import (
    DEFAULT_BASE_INTERVAL,
    DEFAULT_REQUIRED_STABLE_CHECKS,
    DEFAULT_TIMEOUT,
    DiagnosticStabilizer,
)
from codemender.streaming import CancellationToken, ProgressChannel
from codemender.structure import analyze_structure

if TYPE_CHECKING:
    from codemender.config import Config
    from codemender.protocols import (
        CommandRunner,
        Confirmer,
        DiagnosticProvider,
        GenerationClient,
        Workspace,
    )

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 5
MAX_DIFF_CHARS = 3000
CANCELLED_MESSAGE = "Operation cancelled"


class LoopState(Enum):
    INIT = "init"
    GENERATE_INITIAL = "generate_initial"
    VALIDATE_INITIAL = "validate_initial"
    CORRECTION_LOOP = "correction_loop"
    PLAN_GENERATE = "plan_generate"
    PLAN_EXECUTE = "plan_execute"
    REVALIDATE = "revalidate"
    CLASSIFY = "classify"
    DONE = "done"


class CorrectionStatus(Enum):
    """How a request ended."""

    SUCCESS = "success"        # Zero issues
    PARTIAL = "partial"        # Budget exhausted with issues remaining
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CorrectionResult:
    """Final content of a request and how it got there."""

    status: CorrectionStatus
    content: str
    issues: tuple[Issue, ...] = ()
    iterations: int = 0
    outcomes: tuple[CorrectionAttemptOutcome, ...] = ()
    affected_paths: frozenset[str] = field(default_factory=frozenset)
    suggestions: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.status is CorrectionStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "content": self.content,
            "issues": [i.to_dict() for i in self.issues],
            "iterations": self.iterations,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "affected_paths": sorted(self.affected_paths),
            "suggestions": list(self.suggestions),
        }


def _cancelled_issue() -> Issue:
    return Issue(kind=IssueKind.OTHER, severity=Severity.INFO, line=1, message=CANCELLED_MESSAGE)


@dataclass
class _Run:
    """Mutable bookkeeping for one request."""

    path: str
    token: CancellationToken
    context: GenerationContext
    last_valid: ValidationResult
    outcomes: list[CorrectionAttemptOutcome] = field(default_factory=list)
    affected: set[str] = field(default_factory=set)
    iterations: int = 0

    def record(self, outcome: CorrectionAttemptOutcome) -> None:
        self.outcomes.append(outcome)
        self.context = self.context.with_outcome(outcome)


class CorrectionOrchestrator:
    """Generates or modifies a file, then repairs it until diagnostics are clean.

    One orchestrator can serve many requests; each request gets its own
    GenerationContext and result.
    """

    def __init__(
        self,
        generator: GenerationClient,
        diagnostics: DiagnosticProvider,
        workspace: Workspace,
        runner: CommandRunner,
        *,
        confirmer: Confirmer | None = None,
        channel: ProgressChannel | None = None,
        change_log: ChangeLog | None = None,
        plan_parser: Callable[[str], Plan] = parse_plan,
        stabilizer: DiagnosticStabilizer | None = None,
        executor: PlanExecutor | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        history_window: int = 5,
        stabilization_timeout: float = DEFAULT_TIMEOUT,
        base_interval: float = DEFAULT_BASE_INTERVAL,
        required_stable_checks: int = DEFAULT_REQUIRED_STABLE_CHECKS,
    ) -> None:
        self.generator = generator
        self.workspace = workspace
        self.channel = channel or ProgressChannel()
        self.change_log = change_log if change_log is not None else ChangeLog()
        self.plan_parser = plan_parser
        self.stabilizer = stabilizer or DiagnosticStabilizer(diagnostics)
        self.executor = executor or PlanExecutor(
            workspace,
            generator,
            runner,
            confirmer=confirmer,
            channel=self.channel,
            change_log=self.change_log,
        )
        self.max_iterations = max_iterations
        self.history_window = history_window
        self.stabilization_timeout = stabilization_timeout
        self.base_interval = base_interval
        self.required_stable_checks = required_stable_checks
        self.state = LoopState.INIT

    @classmethod
    def from_config(
        cls,
        config: Config,
        generator: GenerationClient,
        diagnostics: DiagnosticProvider,
        workspace: Workspace,
        runner: CommandRunner,
        *,
        confirmer: Confirmer | None = None,
        channel: ProgressChannel | None = None,
    ) -> CorrectionOrchestrator:
        """Build an orchestrator with every bound taken from configuration."""
        channel = channel or ProgressChannel()
        change_log = ChangeLog()
        executor = PlanExecutor(
            workspace,
            generator,
            runner,
            confirmer=confirmer,
            channel=channel,
            change_log=change_log,
            max_transient_retries=config.executor.max_transient_retries,
            retry_base_delay=config.executor.retry_base_delay,
            retry_step_delay=config.executor.retry_step_delay,
        )
        return cls(
            generator,
            diagnostics,
            workspace,
            runner,
            channel=channel,
            change_log=change_log,
            stabilizer=DiagnosticStabilizer(
                diagnostics, max_backoff_cap=config.stabilization.max_backoff_cap
            ),
            executor=executor,
            max_iterations=config.correction.max_iterations,
            history_window=config.correction.history_window,
            stabilization_timeout=config.stabilization.timeout,
            base_interval=config.stabilization.base_interval,
            required_stable_checks=config.stabilization.required_stable_checks,
        )

    # =========================================================================
    # Public operations
    # =========================================================================

    def generate_file(
        self,
        path: str,
        instructions: str,
        context: GenerationContext | None = None,
        token: CancellationToken | None = None,
    ) -> CorrectionResult:
        """Generate a new file from instructions, then correct it."""
        step = CreateFileStep(
            step=1, path=path, generate_prompt=instructions, description=f"Generating `{path}`"
        )
        return self._run(path, context, token, initial=step)

    def modify_file(
        self,
        path: str,
        instructions: str,
        context: GenerationContext | None = None,
        token: CancellationToken | None = None,
    ) -> CorrectionResult:
        """Rewrite an existing file according to instructions, then correct it."""
        step = ModifyFileStep(
            step=1, path=path, modification_prompt=instructions, description=f"Modifying `{path}`"
        )
        return self._run(path, context, token, initial=step)

    def correct_file(
        self,
        path: str,
        context: GenerationContext | None = None,
        token: CancellationToken | None = None,
    ) -> CorrectionResult:
        """Correct a file as it currently is."""
        return self._run(path, context, token, initial=None)

    # =========================================================================
    # State machine
    # =========================================================================

    def _enter(self, state: LoopState) -> None:
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def _run(
        self,
        path: str,
        context: GenerationContext | None,
        token: CancellationToken | None,
        initial: CreateFileStep | ModifyFileStep | None,
    ) -> CorrectionResult:
        self._enter(LoopState.INIT)
        token = token or CancellationToken()
        base = context or GenerationContext()
        run = _Run(
            path=path,
            token=token,
            context=replace(base, history_window=self.history_window).cleared(),
            last_valid=ValidationResult(valid=True, content=self._read(path)),
        )
        self.channel.emit("initialization", f"Starting work on `{path}`")

        if initial is not None:
            self._enter(LoopState.GENERATE_INITIAL)
            self.channel.emit("generation", describe_initial(initial))
            try:
                run.affected |= self.executor.execute([initial], token=token, context=run.context)
            except CorrectionCancelledError:
                return self._finish_cancelled(run)

        self._enter(LoopState.VALIDATE_INITIAL)
        validation, cancelled = self._validate(path, token)
        if cancelled:
            return self._finish_cancelled(run)
        run.last_valid = validation
        self._emit_validation(validation)

        if not validation.issues:
            return self._finish(run, CorrectionStatus.SUCCESS)

        self._enter(LoopState.CORRECTION_LOOP)
        return self._correction_loop(run)

    def _correction_loop(self, run: _Run) -> CorrectionResult:
        issues_before = list(run.last_valid.issues)

        for iteration in range(1, self.max_iterations + 1):
            if run.token.is_cancelled:
                return self._finish_cancelled(run)
            run.iterations = iteration

            # Refresh what the generator sees about the file
            run.context = run.context.with_structure(
                analyze_structure(run.last_valid.content)
            ).with_recent_changes(self.change_log.format_recent_changes())
            oscillating = run.context.is_oscillating
            if oscillating:
                logger.info("Oscillation detected before attempt %d on %s", iteration, run.path)

            self.channel.emit(
                "correction",
                f"Correction attempt {iteration}/{self.max_iterations}: "
                f"{len(issues_before)} issue(s) remaining",
                issues=issues_before,
                progress_percent=50 + int(40 * (iteration - 1) / self.max_iterations),
            )

            # PLAN_GENERATE
            self._enter(LoopState.PLAN_GENERATE)
            try:
                raw_plan = self._request_plan(run, issues_before)
            except CorrectionCancelledError:
                return self._finish_cancelled(run)
            except GenerationError as exc:
                logger.warning(
                    "Plan generation failed on attempt %d: %s", iteration, exc, extra={"iteration": iteration}
                )
                run.record(unknown_outcome(iteration, issues_before, str(exc)))
                continue

            try:
                plan = self.plan_parser(raw_plan)
            except PlanParseError as exc:
                logger.warning("Correction plan rejected on attempt %d: %s", iteration, exc)
                self.channel.emit("correction", f"Plan could not be parsed: {exc}", is_error=True)
                run.record(
                    parsing_failed_outcome(iteration, issues_before, str(exc), exc.raw_text or raw_plan)
                )
                continue

            if not plan.steps:
                run.record(
                    command_failed_outcome(
                        iteration,
                        issues_before,
                        issues_before,
                        "Correction plan contained no steps (no_improvement): nothing was changed.",
                    )
                )
                continue

            # PLAN_EXECUTE
            self._enter(LoopState.PLAN_EXECUTE)
            content_before = run.last_valid.content
            step_error: StepExecutionError | None = None
            written: set[str] = set()
            try:
                written = self.executor.execute(plan.steps, token=run.token, context=run.context)
                run.affected |= written
            except CorrectionCancelledError:
                return self._finish_cancelled(run)
            except StepExecutionError as exc:
                step_error = exc
                run.affected |= exc.affected_paths

            # Commands can change diagnostics without touching the file
            ran_commands = any(isinstance(step, RunCommandStep) for step in plan.steps)
            if (
                step_error is None
                and not written
                and not ran_commands
                and self._read(run.path) == content_before
            ):
                run.record(
                    command_failed_outcome(
                        iteration,
                        issues_before,
                        issues_before,
                        "Correction plan ran but changed nothing (no_improvement): "
                        "every step was a no-op.",
                    )
                )
                continue

            # REVALIDATE
            self._enter(LoopState.REVALIDATE)
            if step_error is not None and self._read(run.path) == content_before:
                # Nothing reached the file; the previous validation still holds
                validation = run.last_valid
            else:
                validation, cancelled = self._validate(run.path, run.token)
                if cancelled:
                    return self._finish_cancelled(run)
            issues_after = list(validation.issues)
            diff = self._diff_text(run.path, content_before, validation.content)

            # CLASSIFY
            self._enter(LoopState.CLASSIFY)
            if step_error is not None:
                outcome = command_failed_outcome(
                    iteration, issues_before, issues_after, str(step_error), diff
                )
            else:
                outcome = analyze_attempt(
                    iteration,
                    issues_before,
                    issues_after,
                    oscillating=oscillating,
                    diff_summary=diff,
                )
            run.record(outcome)
            run.last_valid = validation
            self._emit_validation(validation)
            logger.info(
                "Attempt %d on %s: %d -> %d issue(s) (%s)",
                iteration,
                run.path,
                outcome.issues_before_count,
                outcome.issues_after_count,
                outcome.failure_kind.value if outcome.failure_kind else "improved",
                extra={"iteration": iteration, "stage": "correction"},
            )

            if not issues_after:
                return self._finish(run, CorrectionStatus.SUCCESS)
            issues_before = issues_after

        return self._finish(run, CorrectionStatus.PARTIAL)

    # =========================================================================
    # Steps
    # =========================================================================

    def _request_plan(self, run: _Run, issues: list[Issue]) -> str:
        """Ask the generator for a correction plan, retrying transient failures."""
        prompt = build_correction_plan_prompt(
            run.path, run.last_valid.content, issues, run.context
        )
        attempt = 0
        while True:
            run.token.raise_if_cancelled("Cancelled before plan generation")
            try:
                return self.generator.generate_plan(prompt, run.context)
            except GenerationError as exc:
                if not is_transient(exc) or attempt >= self.executor.max_transient_retries:
                    raise
                attempt += 1
                delay = self.executor.retry_delay(attempt)
                logger.warning("Plan generation failed transiently, retrying in %.1fs: %s", delay, exc)
                self.executor.wait(delay, run.token)

    def _read(self, path: str) -> str:
        buffered = self.workspace.read_buffer(path)
        if buffered is not None:
            return buffered
        try:
            return self.workspace.read_file(path)
        except FileNotFoundError:
            return ""

    def _validate(self, path: str, token: CancellationToken) -> tuple[ValidationResult, bool]:
        """Wait for diagnostics to settle, then classify them against current content."""
        self.channel.emit("validation", f"Waiting for diagnostics on `{path}`")
        report = self.stabilizer.wait_for_stable(
            path,
            timeout=self.stabilization_timeout,
            base_interval=self.base_interval,
            required_stable_checks=self.required_stable_checks,
            token=token,
        )
        if report.timed_out:
            logger.info(
                "Diagnostics for %s did not settle in %.1fs; using latest sample",
                path,
                self.stabilization_timeout,
            )
        content = self._read(path)
        return validate(content, report.diagnostics), report.cancelled

    def _diff_text(self, path: str, before: str, after: str) -> str:
        if before == after:
            return ""
        text = generate_diff(path, before, after).diff_text
        if len(text) > MAX_DIFF_CHARS:
            return text[:MAX_DIFF_CHARS] + "\n... (diff truncated)"
        return text

    def _emit_validation(self, validation: ValidationResult) -> None:
        self.channel.emit(
            "validation",
            f"{len(validation.issues)} issue(s) found",
            issues=validation.issues,
            suggestions=validation.suggestions,
        )

    # =========================================================================
    # Terminal states
    # =========================================================================

    def _finish(self, run: _Run, status: CorrectionStatus) -> CorrectionResult:
        self._enter(LoopState.DONE)
        if status is CorrectionStatus.SUCCESS:
            # Stale oscillation signals must not leak into a later request
            run.context = run.context.cleared()
            message = f"`{run.path}` has no remaining issues"
        else:
            message = (
                f"Stopped after {run.iterations} attempt(s); "
                f"{len(run.last_valid.issues)} issue(s) remain in `{run.path}`"
            )
        logger.info("%s", message)
        self.channel.emit(
            "completion",
            message,
            issues=run.last_valid.issues,
            suggestions=run.last_valid.suggestions,
            is_error=status is not CorrectionStatus.SUCCESS,
        )
        return CorrectionResult(
            status=status,
            content=run.last_valid.content,
            issues=run.last_valid.issues,
            iterations=run.iterations,
            outcomes=tuple(run.outcomes),
            affected_paths=frozenset(run.affected),
            suggestions=run.last_valid.suggestions,
        )

    def _finish_cancelled(self, run: _Run) -> CorrectionResult:
        self._enter(LoopState.DONE)
        logger.info("Request for %s cancelled", run.path)
        self.channel.emit("cancelled", CANCELLED_MESSAGE, is_error=True)
        return CorrectionResult(
            status=CorrectionStatus.CANCELLED,
            content=run.last_valid.content,
            issues=(*run.last_valid.issues, _cancelled_issue()),
            iterations=run.iterations,
            outcomes=tuple(run.outcomes),
            affected_paths=frozenset(run.affected),
            suggestions=run.last_valid.suggestions,
        )


def describe_initial(step: CreateFileStep | ModifyFileStep) -> str:
    if isinstance(step, CreateFileStep):
        return f"Generating `{step.path}`"
    return f"Modifying `{step.path}`"
