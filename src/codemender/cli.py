"""codemender Command Line Interface.

Usage:
    codemender generate PATH -i TEXT   Generate a new file, then fix its diagnostics
    codemender modify PATH -i TEXT     Rewrite a file, then fix its diagnostics
    codemender fix PATH                Fix the diagnostics of an existing file
    codemender config show             Show the effective configuration
    codemender auth set-key PROVIDER   Store a provider API key in the keyring
"""

from __future__ import annotations

import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Annotated, Callable

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table
from typer import Argument, Option

from codemender.config import Config, get_config
from codemender.diagnostics import LinterDiagnostics
from codemender.errors import CodemenderError
from codemender.logging_config import LogContext, setup_logging
from codemender.orchestrator import CorrectionOrchestrator, CorrectionResult, CorrectionStatus
from codemender.paths import paths
from codemender.providers import get_provider
from codemender.providers.secrets import delete_api_key, store_api_key
from codemender.streaming import CancellationToken, ProgressChannel, ProgressEvent
from codemender.workspace import LocalWorkspace, SubprocessCommandRunner

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="codemender",
    help="codemender - generate code and repair it until diagnostics are clean",
    add_completion=True,
    no_args_is_help=True,
)

config_app = typer.Typer(help="Configuration management")
auth_app = typer.Typer(help="Provider API keys")

app.add_typer(config_app, name="config")
app.add_typer(auth_app, name="auth")

console = Console()

EXIT_CODES = {
    CorrectionStatus.SUCCESS: 0,
    CorrectionStatus.PARTIAL: 1,
    CorrectionStatus.CANCELLED: 130,
}

RootOption = Annotated[
    Path,
    Option("--root", "-r", help="Workspace root", file_okay=False, resolve_path=True),
]
JsonOption = Annotated[bool, Option("--json", "-j", help="JSON output")]
YesOption = Annotated[
    bool, Option("--yes", "-y", help="Run plan commands without asking")
]


def _get_version() -> str:
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("codemender")
    except PackageNotFoundError:
        return "0.0.0"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"codemender version {_get_version()}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        Option("--version", "-V", callback=version_callback, is_eager=True, help="Show version"),
    ] = False,
    verbose: Annotated[
        bool,
        Option("--verbose", "-v", help="Enable verbose output"),
    ] = False,
) -> None:
    """codemender - generate code and repair it until diagnostics are clean."""
    if verbose:
        os.environ["CODEMENDER_LOG_LEVEL"] = "DEBUG"
    config = get_config()
    setup_logging(
        level=os.environ.get("CODEMENDER_LOG_LEVEL", config.general.log_level),
        format=config.general.log_format,  # type: ignore[arg-type]
        max_bytes=config.general.log_max_bytes,
        backup_count=config.general.log_backup_count,
    )


# =============================================================================
# Progress rendering
# =============================================================================

_STAGE_STYLES = {
    "initialization": "dim",
    "generation": "cyan",
    "validation": "blue",
    "correction": "magenta",
    "plan_step": "white",
    "completion": "green",
    "cancelled": "yellow",
}


def render_event(event: ProgressEvent, show_diffs: bool = False) -> None:
    style = "red" if event.is_error else _STAGE_STYLES.get(event.stage, "white")
    console.print(
        f"[dim]{event.progress_percent:>3}%[/dim] [{style}]{event.stage}[/{style}] "
        f"{event.message}",
        highlight=False,
    )
    if show_diffs and event.diff:
        console.print(Syntax(event.diff, "diff", theme="ansi_dark"))


def render_result(result: CorrectionResult, path: str) -> None:
    style = {
        CorrectionStatus.SUCCESS: "green",
        CorrectionStatus.PARTIAL: "yellow",
        CorrectionStatus.CANCELLED: "yellow",
    }[result.status]
    console.print(
        f"\n[bold {style}]{result.status.value.upper()}[/bold {style}] "
        f"{path}: {len(result.issues)} issue(s) after {result.iterations} correction attempt(s)"
    )

    if result.issues:
        table = Table(show_header=True)
        table.add_column("Line", justify="right")
        table.add_column("Severity")
        table.add_column("Kind", style="cyan")
        table.add_column("Message")
        for issue in result.issues:
            table.add_row(str(issue.line), issue.severity.value, issue.kind.value, issue.message)
        console.print(table)

    for suggestion in result.suggestions:
        console.print(f"[dim]- {suggestion}[/dim]")


# =============================================================================
# Request plumbing
# =============================================================================


def _confirm(prompt: str) -> bool:
    return typer.confirm(prompt, default=False)


def _build_orchestrator(
    config: Config,
    root: Path,
    channel: ProgressChannel,
    assume_yes: bool,
) -> tuple[CorrectionOrchestrator, LocalWorkspace]:
    workspace = LocalWorkspace(root)
    orchestrator = CorrectionOrchestrator.from_config(
        config,
        generator=get_provider(config.provider),
        diagnostics=LinterDiagnostics(root, command=config.diagnostics.command),
        workspace=workspace,
        runner=SubprocessCommandRunner(timeout=config.executor.command_timeout),
        confirmer=(lambda _prompt: True) if assume_yes else _confirm,
        channel=channel,
    )
    return orchestrator, workspace


def _run_request(
    operation: str,
    path: Path,
    root: Path,
    json_output: bool,
    assume_yes: bool,
    call: Callable[[CorrectionOrchestrator, str, CancellationToken], CorrectionResult],
) -> None:
    """Run one request in a worker thread so Ctrl+C can cancel it cleanly."""
    config = get_config()
    channel = ProgressChannel()
    if not json_output:
        show_diffs = logging.getLogger().isEnabledFor(logging.DEBUG)
        channel.subscribe(lambda event: render_event(event, show_diffs))

    try:
        orchestrator, workspace = _build_orchestrator(config, root, channel, assume_yes)
        target = workspace.relative(path)
    except (CodemenderError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2) from e

    token = CancellationToken()
    with LogContext(operation=operation, target=target):
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="codemender") as pool:
            future = pool.submit(call, orchestrator, target, token)
            try:
                try:
                    result = future.result()
                except KeyboardInterrupt:
                    console.print("\n[yellow]Cancelling...[/yellow]")
                    token.cancel()
                    result = future.result()
            except CodemenderError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(2) from e

    if json_output:
        console.print_json(json.dumps(result.to_dict()))
    else:
        render_result(result, target)
    raise typer.Exit(EXIT_CODES[result.status])


# =============================================================================
# Commands
# =============================================================================


@app.command()
def generate(
    path: Annotated[Path, Argument(help="File to create")],
    instructions: Annotated[str, Option("--instructions", "-i", help="What the file should contain")],
    root: RootOption = Path("."),
    json_output: JsonOption = False,
    yes: YesOption = False,
) -> None:
    """Generate a new file, then correct it until diagnostics are clean."""
    _run_request(
        "generate",
        path,
        root,
        json_output,
        yes,
        lambda orch, target, token: orch.generate_file(target, instructions, token=token),
    )


@app.command()
def modify(
    path: Annotated[Path, Argument(help="File to rewrite, relative to the root")],
    instructions: Annotated[str, Option("--instructions", "-i", help="What to change")],
    root: RootOption = Path("."),
    json_output: JsonOption = False,
    yes: YesOption = False,
) -> None:
    """Modify an existing file, then correct it until diagnostics are clean."""
    _run_request(
        "modify",
        path,
        root,
        json_output,
        yes,
        lambda orch, target, token: orch.modify_file(target, instructions, token=token),
    )


@app.command()
def fix(
    path: Annotated[Path, Argument(help="File to repair, relative to the root")],
    root: RootOption = Path("."),
    json_output: JsonOption = False,
    yes: YesOption = False,
) -> None:
    """Correct an existing file until diagnostics are clean."""
    _run_request(
        "fix",
        path,
        root,
        json_output,
        yes,
        lambda orch, target, token: orch.correct_file(target, token=token),
    )


# =============================================================================
# Config Commands
# =============================================================================


@config_app.command("show")
def config_show(json_output: JsonOption = False) -> None:
    """Show current configuration."""
    config_data = get_config().to_dict()

    if json_output:
        console.print_json(json.dumps(config_data))
        return

    table = Table(title="codemender Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    for section, values in config_data.items():
        for key, value in values.items():
            table.add_row(
                f"{section}.{key}", str(value) if value is not None else "[dim]not set[/dim]"
            )

    console.print(table)


@config_app.command("path")
def config_path() -> None:
    """Show configuration file path."""
    console.print(str(paths.config_file))


# =============================================================================
# Auth Commands
# =============================================================================


@auth_app.command("set-key")
def auth_set_key(
    provider: Annotated[str, Argument(help="Provider name, e.g. anthropic")],
) -> None:
    """Store an API key in the system keyring."""
    api_key = typer.prompt(f"{provider} API key", hide_input=True)
    try:
        store_api_key(provider, api_key.strip())
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e
    console.print(f"[green]Stored API key for {provider}[/green]")


@auth_app.command("delete-key")
def auth_delete_key(
    provider: Annotated[str, Argument(help="Provider name")],
) -> None:
    """Remove a stored API key."""
    if delete_api_key(provider):
        console.print(f"[green]Deleted API key for {provider}[/green]")
    else:
        console.print(f"[yellow]No stored API key for {provider}[/yellow]")


if __name__ == "__main__":
    app()
