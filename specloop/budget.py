"""Budget calculator for per-iteration task selection.

Selects tasks in declaration order with greedy first-fit: a task is taken if
it still fits in the remaining budget, otherwise it is skipped and the next
one is considered. Tasks are never reordered to pack the budget better, so
the next task in document order always wins over a later, smaller one.
"""

from dataclasses import dataclass, field

from specloop.models import Spec, Task, TaskSize, TaskStatus


@dataclass
class BudgetResult:
    """Outcome of a budget calculation.

    Attributes:
        selected: Selected tasks, in selection order (views into the spec)
        total_points: Sum of the selected tasks' size points
        remaining_budget: Budget left after selection
        skipped: Unresolved tasks that were not selected
        warnings: Human-readable reasons for dependency skips
    """

    selected: list[Task]
    total_points: int
    remaining_budget: int
    skipped: list[Task] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def select_tasks(spec: Spec, budget_points: int) -> list[Task]:
    """Select pending tasks that fit within budget_points.

    Args:
        spec: The parsed spec
        budget_points: Point budget (S=1, M=2, L=4)

    Returns:
        Selected pending tasks in declaration order. Empty when no pending
        task fits; callers must not read that as completion.
    """
    return calculate_budget(spec, budget_points).selected


def calculate_budget(
    spec: Spec,
    budget_points: int,
    resume_in_progress: bool = False,
    conservative: bool = False,
) -> BudgetResult:
    """Select tasks for an iteration and report what was left out.

    Args:
        spec: The parsed spec
        budget_points: Point budget for the iteration
        resume_in_progress: Consider tasks left in_progress by an interrupted
            iteration before any pending task
        conservative: Stop after the first M or L task is selected

    Returns:
        BudgetResult with selected and skipped tasks
    """
    selected: list[Task] = []
    skipped: list[Task] = []
    warnings: list[str] = []
    remaining = budget_points

    candidates = [t for t in spec.tasks if t.status == TaskStatus.PENDING]
    if resume_in_progress:
        in_progress = [t for t in spec.tasks if t.status == TaskStatus.IN_PROGRESS]
        candidates = in_progress + candidates

    stopped = False
    for task in candidates:
        if stopped:
            skipped.append(task)
            continue

        blocked_reason = _blocking_dependency(task, spec)
        if blocked_reason:
            skipped.append(task)
            warnings.append(blocked_reason)
            continue

        if task.size_points > remaining:
            skipped.append(task)
            continue

        selected.append(task)
        remaining -= task.size_points

        if conservative and task.size in (TaskSize.M, TaskSize.L):
            stopped = True

    return BudgetResult(
        selected=selected,
        total_points=sum(t.size_points for t in selected),
        remaining_budget=remaining,
        skipped=skipped,
        warnings=warnings,
    )


def _blocking_dependency(task: Task, spec: Spec) -> str | None:
    """Return a reason if any dependency of task is not yet passed."""
    for dep_id in task.depends_on:
        dep = spec.get_task(dep_id)
        if dep is None:
            return f"{task.id} depends on unknown task {dep_id}"
        if dep.status != TaskStatus.PASSED:
            return f"{task.id} blocked: depends on {dep_id} ({dep.status.value})"
    return None


def format_budget_summary(result: BudgetResult) -> str:
    """Format a budget result for display."""
    lines: list[str] = []

    if not result.selected:
        lines.append("No tasks selected within budget.")
    else:
        lines.append(
            f"Selected {len(result.selected)} task(s) ({result.total_points} points):"
        )
        for task in result.selected:
            marker = "~" if task.status == TaskStatus.IN_PROGRESS else "-"
            lines.append(f"  {marker} {task.id}: {task.title} [{task.size.value}]")

    if result.remaining_budget > 0 and result.skipped:
        lines.append(f"Remaining budget: {result.remaining_budget} points")

    for warning in result.warnings:
        lines.append(f"Warning: {warning}")

    return "\n".join(lines)
