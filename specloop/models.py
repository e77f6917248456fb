"""Data models for specloop.

Defines the spec data model (tasks and specs) plus the result records
produced by the runner. Results are JSON serializable via
dataclasses.asdict() for run-state persistence.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"


class TaskSize(str, Enum):
    S = "S"
    M = "M"
    L = "L"

    @property
    def points(self) -> int:
        return SIZE_POINTS[self]


SIZE_POINTS: dict[TaskSize, int] = {
    TaskSize.S: 1,
    TaskSize.M: 2,
    TaskSize.L: 4,
}

RESOLVED_STATUSES = frozenset({TaskStatus.PASSED, TaskStatus.FAILED})
UNRESOLVED_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


@dataclass
class Task:
    """A single unit of spec-declared work.

    Tasks are identified by monotonically numbered ids (T001, T002, ...)
    and carry a size used for budgeting.
    """

    id: str
    title: str
    status: TaskStatus
    size: TaskSize
    deliverables: list[str] = field(default_factory=list)
    verify: str | None = None
    notes: str | None = None
    depends_on: list[str] = field(default_factory=list)

    @property
    def size_points(self) -> int:
        return self.size.points

    @property
    def is_resolved(self) -> bool:
        """Passed and failed tasks are both terminal."""
        return self.status in RESOLVED_STATUSES


@dataclass
class Spec:
    """An ordered collection of tasks plus the metadata around them.

    Task order is declaration order and is never changed by specloop.
    """

    title: str
    tasks: list[Task] = field(default_factory=list)
    goal: str = ""
    context: str | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    notes: str | None = None
    completed_at: datetime | None = None

    @property
    def total_points(self) -> int:
        return sum(t.size_points for t in self.tasks)

    @property
    def completed_points(self) -> int:
        return sum(t.size_points for t in self.tasks if t.status == TaskStatus.PASSED)

    @property
    def pending_points(self) -> int:
        return sum(
            t.size_points for t in self.tasks if t.status in UNRESOLVED_STATUSES
        )

    def get_task(self, task_id: str) -> Task | None:
        """Return the task with the given id, or None."""
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


@dataclass
class TaskStatusEntry:
    """One record in the status history store."""

    task_id: str
    status: TaskStatus
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {
            "taskId": self.task_id,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskStatusEntry":
        return cls(
            task_id=data["taskId"],
            status=TaskStatus(data["status"]),
            timestamp=data["timestamp"],
        )


IterationStatus = Literal["completed", "failed", "timeout"]


@dataclass
class IterationResult:
    """Result of a single agent iteration.

    Status values:
        completed: The agent session finished and reported success
        failed: The agent reported an error or could not be run
        timeout: No agent activity within the idle timeout; session killed
    """

    iteration: int
    status: IterationStatus
    duration_ms: int
    task_ids: list[str] = field(default_factory=list)
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    stats: dict[str, int] = field(default_factory=dict)
    commit_hash: str | None = None
    commit_message: str | None = None
    files_written: list[str] = field(default_factory=list)
    # If failed/timeout - error details
    error: str | None = None
    failure_context: dict[str, Any] | None = None


RunOutcome = Literal["complete", "stuck", "max_iterations", "error"]


@dataclass
class RunResult:
    """Result of a whole run of the loop.

    Outcome values map one-to-one onto CLI exit codes.
    """

    outcome: RunOutcome
    exit_code: int
    iterations: int
    total_cost_usd: float
    total_duration_ms: int
    reason: str = ""
    archived_path: str | None = None
    tasks_passed: int = 0
    tasks_failed: int = 0
