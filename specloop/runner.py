"""Iteration orchestrator.

Drives the loop: locate and parse the active spec, select tasks under the
budget, run one agent session per iteration, and stop when the spec is
complete, the run is stuck, or the iteration limit is reached. Iterations
run strictly one after another; the spec document and the status history
are written only from here while a run is in progress.
"""

import asyncio
import logging
import re
import time
from pathlib import Path

from opentelemetry import trace

from specloop import telemetry
from specloop.agent import Agent
from specloop.archiver import archive_spec
from specloop.budget import calculate_budget
from specloop.config import (
    EXIT_COMPLETE,
    EXIT_MAX_ITERATIONS,
    EXIT_STUCK,
    SpecLoopConfig,
)
from specloop.emitter import RunReporter
from specloop.errors import AgentError
from specloop.events import EventResequencer
from specloop.learnings import (
    create_learning,
    format_learnings_for_prompt,
    generate_learning_from_failure,
    learning_capture_instructions,
    search_learnings,
)
from specloop.locator import ProjectPaths, locate_active_spec
from specloop.loop_detector import LoopDetector, LoopDetectorConfig
from specloop.models import IterationResult, RunResult, Spec, Task, TaskStatus
from specloop.progress import evaluate, status_fingerprint
from specloop.prompts import build_task_context
from specloop.spec_parser import load_spec, update_task_status
from specloop.state import RunState
from specloop.state_machine import IterationStateMachine
from specloop.status_history import StatusHistoryStore

logger = logging.getLogger(__name__)

TODO_STUB_PATTERNS = [
    re.compile(r"//\s*(?:TODO|FIXME):", re.I),
    re.compile(r"#\s*(?:TODO|FIXME):", re.I),
    re.compile(r"throw new Error\(['\"]Not implemented", re.I),
    re.compile(r"raise NotImplementedError"),
]
TODO_STUB_SUFFIXES = {".py", ".ts", ".tsx", ".js", ".jsx"}


async def run_iteration(
    agent: Agent,
    prompt: str,
    cwd: Path,
    iteration: int,
    total_iterations: int,
    task_ids: list[str],
    config: SpecLoopConfig,
    reporter: RunReporter | None = None,
    tracer: trace.Tracer | None = None,
) -> IterationResult:
    """Run one agent session and reduce its events to an IterationResult.

    Agent failures never escape: a session that cannot start, errors out,
    or stays silent longer than the idle timeout yields a failed or timeout
    result so the loop can continue.
    """
    reporter = reporter or RunReporter()
    tracer = tracer or trace.get_tracer("specloop")

    machine = IterationStateMachine(
        iteration=iteration,
        total_iterations=total_iterations,
        activity_log_size=config.activity_log_size,
        task_text_limit=config.task_text_limit,
    )
    resequencer = EventResequencer()
    started = time.monotonic()
    timed_out = False
    error: str | None = None

    with tracer.start_as_current_span("specloop.iteration") as span:
        span.set_attribute("iteration.number", iteration)
        span.set_attribute("iteration.tasks", ",".join(task_ids))

        try:
            session = await agent.start(prompt, cwd)
        except AgentError as e:
            logger.error(f"Iteration {iteration}: {e.message}")
            error = e.message
        else:
            try:
                while not machine.is_done:
                    event = await asyncio.wait_for(
                        session.next_event(), timeout=config.idle_timeout_seconds
                    )
                    if event is None:
                        break
                    for ordered in resequencer.push(event):
                        machine.apply(ordered)
                        reporter.agent_event(ordered, machine)
                for ordered in resequencer.flush():
                    machine.apply(ordered)
                    reporter.agent_event(ordered, machine)
            except asyncio.TimeoutError:
                timed_out = True
                error = f"No agent activity for {config.idle_timeout_seconds:g}s"
                logger.warning(f"Iteration {iteration}: {error}; killing agent")
            except AgentError as e:
                error = e.message
                logger.error(f"Iteration {iteration}: {e.message}")
            finally:
                await session.kill()

        wall_ms = int((time.monotonic() - started) * 1000)
        outcome = machine.result

        if timed_out:
            status = "timeout"
        elif outcome is not None and outcome.success:
            status = "completed"
        else:
            status = "failed"
            if error is None:
                error = (
                    (outcome.error if outcome else None)
                    or (machine.errors[-1] if machine.errors else None)
                    or "Agent stream ended without a result"
                )

        usage = outcome.usage if outcome else None
        result = IterationResult(
            iteration=iteration,
            status=status,
            duration_ms=(outcome.duration_ms if outcome and outcome.duration_ms else wall_ms),
            task_ids=list(task_ids),
            cost_usd=(outcome.cost_usd or 0.0) if outcome else 0.0,
            input_tokens=usage.input_tokens if usage else 0,
            output_tokens=usage.output_tokens if usage else 0,
            stats=machine.stats.to_dict(),
            commit_hash=machine.last_commit.hash if machine.last_commit else None,
            commit_message=machine.last_commit.message if machine.last_commit else None,
            files_written=machine.written_files(),
            error=error if status != "completed" else None,
            failure_context=machine.failure_context() if status != "completed" else None,
        )

        span.set_attribute("iteration.status", status)
        span.set_attribute("claude.cost_usd", result.cost_usd)
        span.set_attribute("claude.tokens", result.input_tokens + result.output_tokens)

    _record_iteration_metrics(result)
    return result


async def run_loop(
    root_dir: str | Path,
    agent: Agent,
    config: SpecLoopConfig | None = None,
    greedy: bool = False,
    run_all: bool = False,
    reporter: RunReporter | None = None,
    tracer: trace.Tracer | None = None,
) -> RunResult:
    """Run iterations until the spec is complete, stuck, or out of iterations.

    Args:
        root_dir: Project root containing .specloop/
        agent: Starts coding agent sessions
        config: Loop configuration (uses from_env() if None)
        greedy: Hand every selected task to the agent instead of the first
        run_all: Use max_all_iterations as the limit instead of max_iterations
        reporter: Receives progress callbacks
        tracer: OpenTelemetry tracer (uses the global tracer if None)

    Returns:
        RunResult whose exit_code distinguishes complete, stuck and
        iteration-limit outcomes

    Raises:
        SpecLoopError: Structural problems (no or ambiguous active spec,
            malformed spec) are raised immediately
    """
    config = config or SpecLoopConfig.from_env()
    reporter = reporter or RunReporter()
    tracer = tracer or trace.get_tracer("specloop")

    paths = ProjectPaths.for_root(root_dir)
    spec_path = locate_active_spec(paths.root)
    spec = load_spec(spec_path)

    limit = config.max_all_iterations if run_all else config.max_iterations
    state = RunState.new(spec_path.name)
    detector = LoopDetector(
        LoopDetectorConfig(
            max_task_attempts=config.max_task_attempts,
            stuck_threshold=config.stuck_threshold,
        ),
        state,
    )
    history = StatusHistoryStore(paths.status_history_path).load()
    run_started = time.monotonic()
    iteration = 0

    reporter.run_started(spec, spec_path, config.model)
    logger.info(f"Starting run on {spec_path.name} (limit {limit}, budget {config.budget})")

    def finish(outcome, exit_code, reason, final_spec, archived=None) -> RunResult:
        progress = evaluate(final_spec)
        result = RunResult(
            outcome=outcome,
            exit_code=exit_code,
            iterations=iteration,
            total_cost_usd=state.total_cost_usd,
            total_duration_ms=int((time.monotonic() - run_started) * 1000),
            reason=reason,
            archived_path=str(archived) if archived else None,
            tasks_passed=progress.counts.passed,
            tasks_failed=progress.counts.failed,
        )
        state.finish(outcome, reason)
        state.save(paths.state_dir)
        reporter.run_finished(result, detector.iterations_without_progress)
        logger.info(f"Run finished: {outcome} ({reason})")
        return result

    with tracer.start_as_current_span("specloop.run") as run_span:
        run_span.set_attribute("spec.name", spec_path.name)
        run_span.set_attribute("run.limit", limit)
        run_span.set_attribute("run.greedy", greedy)

        detector.observe(status_fingerprint(spec))

        while True:
            spec = load_spec(spec_path)

            if evaluate(spec).completed:
                archived = archive_spec(spec_path, paths.root)
                run_span.set_attribute("run.outcome", "complete")
                return finish("complete", EXIT_COMPLETE, "All tasks resolved", spec, archived)

            if iteration >= limit:
                run_span.set_attribute("run.outcome", "max_iterations")
                return finish(
                    "max_iterations",
                    EXIT_MAX_ITERATIONS,
                    f"Reached iteration limit ({limit})",
                    spec,
                )

            capture = _capture_learnings(spec, history, paths, state, reporter)
            _record_statuses(history, spec)

            budget = calculate_budget(spec, config.budget, resume_in_progress=True)
            for warning in budget.warnings:
                reporter.warning("dependency", warning)

            if not budget.selected:
                _record_stuck_metric()
                run_span.set_attribute("run.outcome", "stuck")
                return finish(
                    "stuck",
                    EXIT_STUCK,
                    f"No progress possible: no unresolved task fits budget {config.budget}",
                    spec,
                )

            iteration += 1
            assigned = budget.selected if greedy else budget.selected[:1]
            before = {task.id: task.status for task in spec.tasks}

            prompt = build_task_context(
                spec,
                spec_path.relative_to(paths.root),
                assigned,
                greedy=greedy,
                learnings=_relevant_learnings(paths, assigned[0]),
                capture_instructions=capture,
            )

            reporter.iteration_started(iteration, limit, assigned)
            result = await run_iteration(
                agent,
                prompt,
                paths.root,
                iteration,
                limit,
                [task.id for task in assigned],
                config,
                reporter=reporter,
                tracer=tracer,
            )

            spec = load_spec(spec_path)
            if result.status != "completed":
                spec = _handle_failed_iteration(spec_path, spec, assigned, result, detector, reporter)

            # Transitions stay pending in the history until a later pass captures them
            _record_statuses(history, spec, keep_transitions=True)

            newly_passed = [
                task
                for task in spec.tasks
                if task.status == TaskStatus.PASSED and before.get(task.id) != TaskStatus.PASSED
            ]
            for task in newly_passed:
                reporter.task_passed(task)
                _record_task_metric("passed")
            if newly_passed:
                stubs = find_todo_stubs(paths.root, result.files_written)
                if stubs:
                    reporter.warning(
                        "todo_stub",
                        f"Completed tasks contain TODO/FIXME stubs: {', '.join(stubs)}",
                    )

            state.add_iteration(result)
            state.save(paths.state_dir)
            reporter.iteration_finished(result)

            detector.observe(status_fingerprint(spec))
            stuck, reason = detector.is_stuck()
            if stuck:
                _record_stuck_metric()
                run_span.set_attribute("run.outcome", "stuck")
                return finish("stuck", EXIT_STUCK, reason, spec)


def _handle_failed_iteration(
    spec_path: Path,
    spec: Spec,
    assigned: list[Task],
    result: IterationResult,
    detector: LoopDetector,
    reporter: RunReporter,
) -> Spec:
    """Count a failed iteration against each assigned, unresolved task.

    Tasks that reach max attempts are marked failed in the spec.
    """
    for assigned_task in assigned:
        task = spec.get_task(assigned_task.id)
        if task is None or task.is_resolved:
            continue

        detector.record_task_failure(task.id, result.error or result.status)
        should_stop, reason = detector.should_stop_task(task.id)
        if should_stop:
            logger.warning(f"{reason} Marking {task.id} failed.")
            reporter.warning("task_failed", reason)
            spec = update_task_status(spec_path, task.id, TaskStatus.FAILED)
            _record_task_metric("failed")

    return spec


def _capture_learnings(
    spec: Spec,
    history: StatusHistoryStore,
    paths: ProjectPaths,
    state: RunState,
    reporter: RunReporter,
) -> list[str]:
    """Create stub learnings for failed->passed tasks and return instructions."""
    instructions = []
    for task_id in history.detect_failed_to_passed(spec.tasks):
        task = spec.get_task(task_id)
        if task is None:
            continue

        errors = state.task_errors.get(task_id) or []
        learning = generate_learning_from_failure(
            task.id, task.title, error_message=errors[-1] if errors else None
        )
        try:
            path = create_learning(learning, paths.learnings_dir)
        except OSError as e:
            logger.warning(f"Could not write learning stub for {task_id}: {e}")
            continue
        instructions.append(
            learning_capture_instructions(task.id, task.title, path.relative_to(paths.root))
        )
        reporter.learning_created(task.id, path)
        _record_learning_metric(learning.category or "patterns")

    return instructions


def _record_statuses(history: StatusHistoryStore, spec: Spec, keep_transitions: bool = False) -> None:
    try:
        history.record_statuses(spec.tasks, keep_transitions=keep_transitions)
    except OSError as e:
        logger.warning(f"Could not record task statuses in {history.path}: {e}")


def find_todo_stubs(root: Path, files: list[str]) -> list[str]:
    """Return the given source files that still contain TODO/FIXME stubs.

    Paths are resolved against root; unreadable or missing files are skipped.
    """
    stubs = []
    for name in files:
        path = root / name
        if path.suffix not in TODO_STUB_SUFFIXES or not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        if any(pattern.search(content) for pattern in TODO_STUB_PATTERNS):
            stubs.append(name)
    return stubs


def _relevant_learnings(paths: ProjectPaths, task: Task) -> str:
    found = search_learnings(paths.learnings_dir, task.title, " ".join(task.deliverables))
    return format_learnings_for_prompt(found)


def _record_iteration_metrics(result: IterationResult) -> None:
    """Record metrics if counters are initialized.

    Safely handles the case where create_metrics() hasn't been called.
    """
    try:
        telemetry.iterations_counter.add(1, {"status": result.status})
        telemetry.tokens_counter.add(result.input_tokens + result.output_tokens)
        telemetry.cost_counter.add(result.cost_usd)
        telemetry.iteration_duration.record(result.duration_ms / 1000)
    except (AttributeError, NameError):
        # Counters not initialized - telemetry disabled
        pass


def _record_task_metric(status: str) -> None:
    try:
        telemetry.tasks_counter.add(1, {"status": status})
    except (AttributeError, NameError):
        pass


def _record_learning_metric(category: str) -> None:
    try:
        telemetry.learnings_counter.add(1, {"category": category})
    except (AttributeError, NameError):
        pass


def _record_stuck_metric() -> None:
    try:
        telemetry.stuck_counter.add(1)
    except (AttributeError, NameError):
        pass
