"""CLI for specloop.

Provides the command-line interface for running the build loop against the
active spec and for inspecting specs, runs, and costs.
"""

import asyncio
import logging
import sys
from collections import defaultdict
from datetime import datetime
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from specloop.agent import ClaudeCodeAgent
from specloop.archiver import archive_spec
from specloop.budget import calculate_budget, format_budget_summary
from specloop.config import EXIT_ERROR, SpecLoopConfig
from specloop.emitter import HeadlessEmitter, RunReporter
from specloop.errors import SpecLoopError
from specloop.events import AgentEvent, format_tool_call
from specloop.locator import ProjectPaths, locate_active_spec
from specloop.lock import SpecLoopLock
from specloop.logging_config import configure_logging
from specloop.models import IterationResult, RunResult, Spec, Task, TaskStatus
from specloop.progress import evaluate
from specloop.runner import run_loop
from specloop.spec_parser import load_spec
from specloop.state import RunState
from specloop.state_machine import IterationStateMachine, ToolGroup
from specloop.telemetry import create_metrics, setup_telemetry

console = Console()
logger = logging.getLogger(__name__)

MODEL_CHOICES = ["haiku", "sonnet", "opus"]

STATUS_COLORS = {
    TaskStatus.PENDING: "white",
    TaskStatus.IN_PROGRESS: "yellow",
    TaskStatus.PASSED: "green",
    TaskStatus.FAILED: "red",
}

ITERATION_COLORS = {"completed": "green", "failed": "red", "timeout": "yellow"}

OUTCOME_COLORS = {
    "complete": "green",
    "stuck": "yellow",
    "max_iterations": "cyan",
    "error": "red",
}


@click.group()
@click.version_option(package_name="specloop")
@click.option(
    "-C",
    "--project-dir",
    default=".",
    type=click.Path(file_okay=False, path_type=Path),
    help="Project root containing .specloop/ (default: current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, project_dir: Path, verbose: bool) -> None:
    """specloop - Drive a coding agent through a task spec until it is done."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["root"] = project_dir


class ConsoleReporter(RunReporter):
    """Prints run progress to the rich console.

    Tool calls are printed as coalesced groups once a group closes, so a
    burst of reads shows as one "Reading N files" line.
    """

    def __init__(self) -> None:
        self._machine: IterationStateMachine | None = None
        self._groups_printed = 0

    def run_started(self, spec: Spec, spec_path: Path, model: str | None) -> None:
        progress = evaluate(spec)
        console.print(f"[bold]Spec:[/bold] {spec.title} ({spec_path.name})")
        console.print(
            f"  {progress.counts.resolved}/{progress.counts.total} tasks resolved "
            f"({progress.percentage}%)"
        )

    def iteration_started(self, iteration: int, total: int, tasks: list[Task]) -> None:
        ids = ", ".join(f"{t.id} [{t.size.value}]" for t in tasks)
        console.print(f"\n[bold]Iteration {iteration}/{total}:[/bold] {ids}")
        self._machine = None
        self._groups_printed = 0

    def agent_event(self, event: AgentEvent, machine: IterationStateMachine) -> None:
        self._machine = machine
        # The newest group can still grow until another category starts
        closed = len(machine.tool_groups) if machine.is_done else len(machine.tool_groups) - 1
        self._print_groups(closed)

    def _print_groups(self, upto: int) -> None:
        if self._machine is None:
            return
        for group in self._machine.tool_groups[self._groups_printed : upto]:
            console.print(f"           {_format_group(group)}")
        self._groups_printed = max(self._groups_printed, upto)

    def task_passed(self, task: Task) -> None:
        console.print(f"  [green]✓[/green] {task.id}: {task.title}")

    def learning_created(self, task_id: str, path: Path) -> None:
        console.print(f"  [cyan]Learning capture requested for {task_id}:[/cyan] {path}")

    def iteration_finished(self, result: IterationResult) -> None:
        if self._machine is not None:
            self._print_groups(len(self._machine.tool_groups))
        color = ITERATION_COLORS[result.status]
        tokens = result.input_tokens + result.output_tokens
        console.print(
            f"Iteration {result.iteration}: "
            f"[bold {color}]{result.status.upper()}[/bold {color}] "
            f"({_format_duration(result.duration_ms / 1000)}, "
            f"{tokens / 1000:.1f}k tokens, "
            f"${result.cost_usd:.2f})"
        )
        if result.commit_hash:
            console.print(f"  Commit {result.commit_hash[:7]}: {result.commit_message}")
        if result.error:
            console.print(f"  [red]Error:[/red] {result.error}")
        context = result.failure_context or {}
        if context.get("last_tool_name"):
            console.print(f"  Last tool: {context['last_tool_name']} {context.get('last_tool_input') or ''}")
        for line in context.get("recent_activity", []):
            console.print(f"    {line}")

    def warning(self, kind: str, message: str) -> None:
        console.print(f"[yellow]Warning:[/yellow] {message}")

    def run_finished(self, result: RunResult, iterations_without_progress: int = 0) -> None:
        _print_run_summary(result)


@cli.command()
@click.option("-n", "--iterations", type=int, default=None, help="Number of iterations to run")
@click.option("--all", "run_all", is_flag=True, help="Run until complete (up to 100 iterations)")
@click.option("-b", "--budget", type=int, default=None, help="Point budget per iteration (S=1, M=2, L=4)")
@click.option("--greedy", is_flag=True, help="Hand every task that fits the budget to the agent")
@click.option("--headless", is_flag=True, help="Emit JSON-lines events instead of console output")
@click.option(
    "-m",
    "--model",
    type=click.Choice(MODEL_CHOICES),
    default=None,
    help="Claude model for the agent (default: Claude's default)",
)
@click.option("--idle-timeout", type=float, default=None, help="Kill the agent after this many idle seconds")
@click.option("--stuck-threshold", type=int, default=None, help="Iterations without progress before stopping")
@click.pass_context
def run(
    ctx: click.Context,
    iterations: int | None,
    run_all: bool,
    budget: int | None,
    greedy: bool,
    headless: bool,
    model: str | None,
    idle_timeout: float | None,
    stuck_threshold: int | None,
) -> None:
    """Run the loop against the active spec.

    Exit codes: 0 all tasks resolved, 1 stuck, 2 iteration limit reached,
    3 fatal error.
    """
    if iterations is not None and run_all:
        raise click.UsageError("--iterations and --all are mutually exclusive")

    config = SpecLoopConfig.from_env()
    if iterations is not None:
        config.max_iterations = iterations
        config.max_all_iterations = max(config.max_all_iterations, iterations)
    if budget is not None:
        config.budget = budget
    if model is not None:
        config.model = model
    if idle_timeout is not None:
        config.idle_timeout_seconds = idle_timeout
    if stuck_threshold is not None:
        config.stuck_threshold = stuck_threshold

    reporter: RunReporter = HeadlessEmitter() if headless else ConsoleReporter()
    exit_code = asyncio.run(_run(ctx.obj["root"], config, greedy, run_all, reporter, headless))
    sys.exit(exit_code)


async def _run(
    root: Path,
    config: SpecLoopConfig,
    greedy: bool,
    run_all: bool,
    reporter: RunReporter,
    headless: bool,
) -> int:
    """Internal async implementation of the run command."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    agent = ClaudeCodeAgent(
        command=config.agent_command,
        model=config.model,
        allowed_tools=config.allowed_tools,
    )
    paths = ProjectPaths.for_root(root)

    try:
        # Fail on a missing spec before the lock creates .specloop/
        locate_active_spec(paths.root)
        with SpecLoopLock(paths.state_dir):
            result = await run_loop(
                paths.root,
                agent,
                config=config,
                greedy=greedy,
                run_all=run_all,
                reporter=reporter,
                tracer=tracer,
            )
    except SpecLoopError as e:
        if headless:
            _emit_fatal(reporter, e.message)
        else:
            _print_error(e)
        return EXIT_ERROR
    except Exception as e:
        logger.exception(f"Run aborted: {e}")
        if headless:
            _emit_fatal(reporter, f"{type(e).__name__}: {e}")
        else:
            console.print(f"[red]Error:[/red] {type(e).__name__}: {e}")
        return EXIT_ERROR

    return result.exit_code


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show task status of the active spec."""
    spec_path, spec = _load_active(ctx.obj["root"])
    progress = evaluate(spec)

    table = Table(title=f"{spec.title} ({spec_path.name})")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Size", justify="center")
    table.add_column("Status")

    for task in spec.tasks:
        color = STATUS_COLORS[task.status]
        table.add_row(task.id, task.title, task.size.value, f"[{color}]{task.status.value}[/{color}]")

    console.print(table)
    counts = progress.counts
    console.print(
        f"Progress: {counts.resolved}/{counts.total} resolved ({progress.percentage}%) - "
        f"{counts.passed} passed, {counts.failed} failed, "
        f"{counts.in_progress} in progress, {counts.pending} pending"
    )
    console.print(f"Points: {spec.completed_points}/{spec.total_points} completed")
    if progress.completed:
        console.print("[green]All tasks resolved.[/green] Run 'specloop archive' to archive the spec.")


@cli.command(name="next")
@click.option("-b", "--budget", type=int, default=None, help="Point budget (S=1, M=2, L=4)")
@click.option("--conservative", is_flag=True, help="Stop after the first M or L task")
@click.pass_context
def next_tasks(ctx: click.Context, budget: int | None, conservative: bool) -> None:
    """Show which tasks the next iteration would pick."""
    _, spec = _load_active(ctx.obj["root"])
    budget = budget if budget is not None else SpecLoopConfig.from_env().budget

    result = calculate_budget(spec, budget, resume_in_progress=True, conservative=conservative)
    console.print(format_budget_summary(result))


@cli.command()
@click.pass_context
def archive(ctx: click.Context) -> None:
    """Archive the active spec once every task is resolved."""
    root = ctx.obj["root"]
    try:
        spec_path = locate_active_spec(root)
        archived = archive_spec(spec_path, root)
    except SpecLoopError as e:
        _print_error(e)
        sys.exit(1)

    console.print(f"[green]Archived[/green] {spec_path.name} -> {archived}")


@cli.command()
@click.option("--spec", "spec_filter", default=None, help="Filter by spec name")
@click.option("--limit", "-n", default=10, help="Number of runs to show")
@click.pass_context
def history(ctx: click.Context, spec_filter: str | None, limit: int) -> None:
    """Show history of runs."""
    runs = RunState.list_runs(ProjectPaths.for_root(ctx.obj["root"]).state_dir)
    if spec_filter:
        runs = [run for run in runs if spec_filter in run.spec_name]
    runs = runs[:limit]

    if not runs:
        console.print("[yellow]No runs found[/yellow]")
        return

    table = Table(title="Run History")
    table.add_column("Started")
    table.add_column("Spec")
    table.add_column("Iterations", justify="right")
    table.add_column("Outcome")
    table.add_column("Duration", justify="right")
    table.add_column("Cost", justify="right")

    for run in runs:
        outcome = run.outcome or "interrupted"
        color = OUTCOME_COLORS.get(outcome, "white")
        table.add_row(
            run.started_at.strftime("%Y-%m-%d %H:%M"),
            run.spec_name,
            str(len(run.iterations)),
            f"[{color}]{outcome}[/{color}]",
            _format_duration(run.total_duration_ms / 1000),
            f"${run.total_cost_usd:.2f}",
        )

    console.print(table)


@cli.command()
@click.option("--since", default=None, help="Show costs since date (YYYY-MM-DD)")
@click.option("--by-spec/--total", default=True, help="Break down by spec")
@click.pass_context
def costs(ctx: click.Context, since: str | None, by_spec: bool) -> None:
    """Show cost summary."""
    try:
        since_date = datetime.fromisoformat(since) if since else datetime.min
    except ValueError:
        raise click.BadParameter(f"Invalid date: {since}", param_hint="--since")

    runs = [
        run
        for run in RunState.list_runs(ProjectPaths.for_root(ctx.obj["root"]).state_dir)
        if run.started_at >= since_date
    ]

    if not runs:
        console.print("[yellow]No matching runs found[/yellow]")
        return

    costs_by_spec: dict[str, float] = defaultdict(float)
    tokens_by_spec: dict[str, int] = defaultdict(int)
    for run in runs:
        costs_by_spec[run.spec_name] += run.total_cost_usd
        tokens_by_spec[run.spec_name] += run.total_input_tokens + run.total_output_tokens
    total_cost = sum(costs_by_spec.values())

    if by_spec:
        table = Table(title="Costs by Spec")
        table.add_column("Spec")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")

        for spec_name, cost in sorted(costs_by_spec.items()):
            table.add_row(spec_name, f"{tokens_by_spec[spec_name] / 1000:.1f}k", f"${cost:.2f}")

        table.add_row("[bold]Total[/bold]", "", f"[bold]${total_cost:.2f}[/bold]")
        console.print(table)
    else:
        console.print(f"Total cost: ${total_cost:.2f}")


def _load_active(root: Path) -> tuple[Path, Spec]:
    try:
        spec_path = locate_active_spec(root)
        return spec_path, load_spec(spec_path)
    except SpecLoopError as e:
        _print_error(e)
        sys.exit(1)


def _emit_fatal(reporter: RunReporter, reason: str) -> None:
    reporter.run_finished(
        RunResult(
            outcome="error",
            exit_code=EXIT_ERROR,
            iterations=0,
            total_cost_usd=0.0,
            total_duration_ms=0,
            reason=reason,
        )
    )


def _print_error(error: SpecLoopError) -> None:
    console.print(f"[red]Error:[/red] {error.message}")
    if error.suggestion:
        console.print(f"[dim]{error.suggestion}[/dim]")


def _print_run_summary(result: RunResult) -> None:
    color = OUTCOME_COLORS[result.outcome]
    label = result.outcome.replace("_", " ").upper()

    console.print(f"\n[bold {color}]{label}[/bold {color}]: {result.reason}")
    console.print(f"  Iterations: {result.iterations}")
    console.print(f"  Tasks: {result.tasks_passed} passed, {result.tasks_failed} failed")
    console.print(f"  Duration: {_format_duration(result.total_duration_ms / 1000)}")
    console.print(f"  Cost: ${result.total_cost_usd:.2f}")
    if result.archived_path:
        console.print(f"  Archived to {result.archived_path}")


def _format_group(group: ToolGroup) -> str:
    if group.count == 1:
        tool = group.tools[0]
        line = format_tool_call(tool.name, tool.input)
    else:
        line = f"→ {group.summary()}"
    errors = sum(1 for tool in group.tools if tool.is_error)
    if errors:
        line += f" [red]({errors} failed)[/red]"
    return line


def _format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}m {secs}s"


def main() -> None:
    """Main entry point for the specloop CLI."""
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
