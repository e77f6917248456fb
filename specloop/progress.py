"""Progress and completion evaluation for specs.

Pure functions with no side effects; safe to call from any thread.
"""

from dataclasses import dataclass

from specloop.models import Spec, TaskStatus


@dataclass(frozen=True)
class StatusCounts:
    pending: int = 0
    in_progress: int = 0
    passed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.passed + self.failed

    @property
    def resolved(self) -> int:
        return self.passed + self.failed


@dataclass(frozen=True)
class Progress:
    """Completion status of a spec.

    Attributes:
        completed: True iff no task is pending or in progress
        counts: Number of tasks per status
        percentage: Rounded share of resolved (passed or failed) tasks
    """

    completed: bool
    counts: StatusCounts
    percentage: int


def evaluate(spec: Spec) -> Progress:
    """Derive completion status from task states."""
    counts = StatusCounts(
        pending=_count(spec, TaskStatus.PENDING),
        in_progress=_count(spec, TaskStatus.IN_PROGRESS),
        passed=_count(spec, TaskStatus.PASSED),
        failed=_count(spec, TaskStatus.FAILED),
    )
    completed = counts.pending == 0 and counts.in_progress == 0
    percentage = round(counts.resolved / counts.total * 100) if counts.total else 100

    return Progress(completed=completed, counts=counts, percentage=percentage)


def is_complete(spec: Spec) -> bool:
    return evaluate(spec).completed


def status_fingerprint(spec: Spec) -> tuple[tuple[str, str], ...]:
    """Return a hashable (task id, status) snapshot for change detection."""
    return tuple((task.id, task.status.value) for task in spec.tasks)


def _count(spec: Spec, status: TaskStatus) -> int:
    return sum(1 for task in spec.tasks if task.status == status)
