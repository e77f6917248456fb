"""Run progress reporting.

RunReporter defines the hooks the orchestrator calls while a run
progresses; the base implementation does nothing. HeadlessEmitter writes
one JSON object per line to stdout for machine consumption (CI, wrappers).
"""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from specloop.events import AgentEvent, ToolStart, get_tool_category
from specloop.models import IterationResult, RunResult, Spec, Task
from specloop.state_machine import IterationStateMachine

_TOOL_EVENT_TYPES = {"read": "read", "write": "write", "command": "bash"}


class RunReporter:
    """No-op reporter; subclasses override the hooks they care about."""

    def run_started(self, spec: Spec, spec_path: Path, model: str | None) -> None:
        pass

    def iteration_started(self, iteration: int, total: int, tasks: list[Task]) -> None:
        pass

    def agent_event(self, event: AgentEvent, machine: IterationStateMachine) -> None:
        pass

    def task_passed(self, task: Task) -> None:
        pass

    def learning_created(self, task_id: str, path: Path) -> None:
        pass

    def iteration_finished(self, result: IterationResult) -> None:
        pass

    def warning(self, kind: str, message: str) -> None:
        pass

    def run_finished(self, result: RunResult, iterations_without_progress: int = 0) -> None:
        pass


class HeadlessEmitter(RunReporter):
    """Emits run progress as JSON lines.

    Event shapes:
        {"event": "started", "spec", "tasks", "model", "timestamp"}
        {"event": "iteration", "n", "phase"}
        {"event": "tool", "type": "read"|"write"|"bash", "path"}
        {"event": "commit", "hash", "message"}
        {"event": "task_complete", "id", "text"}
        {"event": "learning", "id", "path"}
        {"event": "iteration_done", "n", "status", "duration_ms", "cost_usd", "stats"}
        {"event": "warning", "type", "message"}
        {"event": "complete" | "stuck" | "max_iterations" | "failed", ...}
    """

    def __init__(self, stream: IO[str] | None = None) -> None:
        self.stream = stream or sys.stdout
        self._last_commit: str | None = None

    def emit(self, event: str, **fields: Any) -> None:
        payload = {"event": event, **{k: v for k, v in fields.items() if v is not None}}
        self.stream.write(json.dumps(payload) + "\n")
        self.stream.flush()

    def run_started(self, spec: Spec, spec_path: Path, model: str | None) -> None:
        self.emit(
            "started",
            spec=spec_path.name,
            tasks=len(spec.tasks),
            model=model,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    def iteration_started(self, iteration: int, total: int, tasks: list[Task]) -> None:
        self._last_commit = None
        self.emit("iteration", n=iteration, phase="started", tasks=[t.id for t in tasks])

    def agent_event(self, event: AgentEvent, machine: IterationStateMachine) -> None:
        if isinstance(event, ToolStart):
            tool_type = _TOOL_EVENT_TYPES.get(get_tool_category(event.name))
            if tool_type:
                path = (
                    event.input.get("file_path")
                    or event.input.get("pattern")
                    or event.input.get("command")
                )
                self.emit("tool", type=tool_type, path=path)

        commit = machine.last_commit
        if commit is not None and commit.hash != self._last_commit:
            self._last_commit = commit.hash
            self.emit("commit", hash=commit.hash, message=commit.message)

    def task_passed(self, task: Task) -> None:
        self.emit("task_complete", id=task.id, text=task.title)

    def learning_created(self, task_id: str, path: Path) -> None:
        self.emit("learning", id=task_id, path=str(path))

    def iteration_finished(self, result: IterationResult) -> None:
        self.emit(
            "iteration_done",
            n=result.iteration,
            status=result.status,
            duration_ms=result.duration_ms,
            cost_usd=result.cost_usd,
            stats=result.stats,
            error=result.error,
        )

    def warning(self, kind: str, message: str) -> None:
        self.emit("warning", type=kind, message=message)

    def run_finished(self, result: RunResult, iterations_without_progress: int = 0) -> None:
        if result.outcome == "complete":
            self.emit(
                "complete",
                tasks_done=result.tasks_passed,
                tasks_failed=result.tasks_failed,
                total_duration_ms=result.total_duration_ms,
                archived=result.archived_path,
            )
        elif result.outcome == "stuck":
            self.emit(
                "stuck",
                reason=result.reason,
                iterations_without_progress=iterations_without_progress,
            )
        elif result.outcome == "max_iterations":
            self.emit("max_iterations", iterations=result.iterations, reason=result.reason)
        else:
            self.emit("failed", error=result.reason)
