"""Task status history.

Keeps the last observed status of every task in a small JSON file so the
orchestrator can notice tasks that moved from failed to passed between
iterations. The file is not part of version-controlled project state.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from specloop.models import Task, TaskStatus, TaskStatusEntry
from specloop.spec_parser import atomic_write_text

logger = logging.getLogger(__name__)


class StatusHistoryStore:
    """Per-task status snapshot store.

    Lifecycle is load -> mutate -> persist, scoped to one orchestrator call.
    A missing or corrupt file is an empty history; reading it never raises.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.entries: dict[str, TaskStatusEntry] = {}

    def load(self) -> "StatusHistoryStore":
        """Read the store from disk, replacing any in-memory entries."""
        self.entries = {}
        if not self.path.exists():
            return self

        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            for item in data:
                entry = TaskStatusEntry.from_dict(item)
                self.entries[entry.task_id] = entry
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning(f"Ignoring unreadable status history at {self.path}: {e}")
            self.entries = {}

        return self

    def persist(self) -> None:
        data = [entry.to_dict() for entry in self.entries.values()]
        atomic_write_text(self.path, json.dumps(data, indent=2) + "\n")

    def get(self, task_id: str) -> TaskStatusEntry | None:
        return self.entries.get(task_id)

    def record_statuses(
        self,
        tasks: Iterable[Task],
        now: datetime | None = None,
        keep_transitions: bool = False,
    ) -> None:
        """Upsert the current status of each task and persist the store.

        With keep_transitions, tasks that moved from failed to passed keep
        their failed entry so a later detect_failed_to_passed() still sees
        them.
        """
        timestamp = (now or datetime.now(timezone.utc)).isoformat()
        for task in tasks:
            if keep_transitions and _failed_to_passed(self.entries.get(task.id), task):
                continue
            self.entries[task.id] = TaskStatusEntry(
                task_id=task.id,
                status=task.status,
                timestamp=timestamp,
            )
        self.persist()

    def detect_failed_to_passed(self, tasks: Iterable[Task]) -> list[str]:
        """Return ids of tasks recorded as failed that are now passed.

        Call before record_statuses(); once the new statuses are recorded the
        same transition is not reported again.
        """
        return [task.id for task in tasks if _failed_to_passed(self.entries.get(task.id), task)]

    def clear(self) -> None:
        self.entries = {}
        if self.path.exists():
            self.persist()


def _failed_to_passed(previous: TaskStatusEntry | None, task: Task) -> bool:
    return (
        previous is not None
        and previous.status == TaskStatus.FAILED
        and task.status == TaskStatus.PASSED
    )
