"""Loop detection for preventing runaway execution.

Tracks failed attempts per task, computing error similarity, and detects
runs that stop making progress: no task status change across several
consecutive iterations.
"""

from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Hashable

from specloop.state import RunState


@dataclass
class LoopDetectorConfig:
    """Configuration for loop detection thresholds.

    Attributes:
        max_task_attempts: Failed iterations on a task before it is marked failed
        stuck_threshold: Consecutive iterations without a status change
            before the run is considered stuck
    """

    max_task_attempts: int = 3
    stuck_threshold: int = 3


class LoopDetector:
    """Detects repeated task failures and stalled runs.

    Attempt counts live in RunState so they are persisted alongside the
    iteration records.
    """

    def __init__(self, config: LoopDetectorConfig, state: RunState):
        self.config = config
        self.state = state
        self.iterations_without_progress = 0
        self._last_fingerprint: Hashable | None = None

    def record_task_failure(self, task_id: str, error: str) -> None:
        """Record a failed iteration against a task.

        Args:
            task_id: ID of the task that was being worked on
            error: Error message from the failure
        """
        if task_id not in self.state.task_attempt_counts:
            self.state.task_attempt_counts[task_id] = 0
            self.state.task_errors[task_id] = []

        self.state.task_attempt_counts[task_id] += 1
        self.state.task_errors[task_id].append(error)

    def should_stop_task(self, task_id: str) -> tuple[bool, str]:
        """Check if we should stop retrying this task.

        Returns:
            Tuple of (should_stop, reason_message)
        """
        attempts = self.state.task_attempt_counts.get(task_id, 0)

        if attempts >= self.config.max_task_attempts:
            errors = self.state.task_errors.get(task_id, [])
            similarity = self._compute_error_similarity(errors)

            return True, (
                f"Task {task_id} failed {attempts} times. "
                f"Error similarity: {similarity:.0%}."
            )

        return False, ""

    def observe(self, fingerprint: Hashable) -> None:
        """Record the task status snapshot taken after an iteration.

        The first observation is the baseline. Any difference from the
        previous snapshot resets the no-progress counter.
        """
        if self._last_fingerprint is not None and fingerprint == self._last_fingerprint:
            self.iterations_without_progress += 1
        else:
            self.iterations_without_progress = 0
        self._last_fingerprint = fingerprint

    def is_stuck(self) -> tuple[bool, str]:
        """Check whether the run has stopped making progress.

        Returns:
            Tuple of (stuck, reason_message)
        """
        if self.iterations_without_progress >= self.config.stuck_threshold:
            return True, (
                f"No task status changed in {self.iterations_without_progress} "
                "consecutive iterations"
            )
        return False, ""

    def _compute_error_similarity(self, errors: list[str]) -> float:
        """Average SequenceMatcher ratio between consecutive errors (0.0 if < 2)."""
        if len(errors) < 2:
            return 0.0

        similarities = []
        for i in range(1, len(errors)):
            ratio = SequenceMatcher(None, errors[i - 1], errors[i]).ratio()
            similarities.append(ratio)

        return sum(similarities) / len(similarities)
