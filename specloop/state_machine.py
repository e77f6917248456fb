"""Iteration state machine.

A synchronous reducer over the agent event stream of one iteration. It
performs no I/O and never times out on its own; the orchestrator owns idle
timeouts and feeds events here as they arrive.

Phases move ``idle -> reading | editing | running | thinking -> done``.
Completed tools are coalesced into groups of consecutive same-category calls
so a burst of N reads shows up as one "Reading N files" entry while every
call is still kept for audit.
"""

import logging
import re
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from itertools import count
from typing import Any, Callable, Literal

from specloop.events import (
    CATEGORY_VERBS,
    AgentEvent,
    Complete,
    ErrorEvent,
    Message,
    Thinking,
    ToolCategory,
    ToolEnd,
    ToolStart,
    get_tool_category,
    get_tool_display_name,
)

logger = logging.getLogger(__name__)

COMMIT_PATTERN = re.compile(r"^\[[\w/.-]+\s+([a-f0-9]{7,40})\]\s+(.+)$", re.M)

DEFAULT_ACTIVITY_LOG_SIZE = 50
DEFAULT_TASK_TEXT_LIMIT = 100
FAILURE_OUTPUT_LIMIT = 500
RECENT_ACTIVITY_COUNT = 5


class Phase(str, Enum):
    IDLE = "idle"
    READING = "reading"
    EDITING = "editing"
    RUNNING = "running"
    THINKING = "thinking"
    DONE = "done"


_CATEGORY_PHASES: dict[str, Phase] = {
    "read": Phase.READING,
    "write": Phase.EDITING,
    "command": Phase.RUNNING,
    "meta": Phase.THINKING,
}


@dataclass
class ActiveTool:
    id: str
    name: str
    category: ToolCategory
    started_at: float
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletedTool:
    id: str
    name: str
    category: ToolCategory
    duration_ms: int
    is_error: bool = False
    input: dict[str, Any] = field(default_factory=dict)
    output: str = ""
    synthetic: bool = False


@dataclass
class ToolGroup:
    """A run of consecutive completed tools sharing one category."""

    category: ToolCategory
    tools: list[CompletedTool] = field(default_factory=list)
    total_duration_ms: int = 0

    @property
    def count(self) -> int:
        return len(self.tools)

    def summary(self) -> str:
        verb = CATEGORY_VERBS[self.category]
        if self.count == 1:
            tool = self.tools[0]
            return f"{verb} {get_tool_display_name(tool.name, tool.input)}"
        noun = {"read": "files", "write": "files", "command": "commands"}.get(
            self.category, "operations"
        )
        return f"{verb} {self.count} {noun}"


@dataclass
class Stats:
    tools_started: int = 0
    tools_completed: int = 0
    tools_errored: int = 0
    reads: int = 0
    writes: int = 0
    commands: int = 0
    meta_ops: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


ActivityType = Literal["thought", "tool_start", "tool_complete", "commit", "error"]


@dataclass
class ActivityItem:
    type: ActivityType
    timestamp: float
    text: str = ""
    tool_id: str | None = None
    tool_name: str | None = None
    display_name: str | None = None
    duration_ms: int | None = None
    is_error: bool = False

    def describe(self) -> str:
        """One-line rendering used in failure reports."""
        if self.type == "thought":
            return f"thought: {self.text[:100]}"
        if self.type == "tool_start":
            return f"> {self.display_name}"
        if self.type == "tool_complete":
            mark = "x" if self.is_error else "ok"
            seconds = (self.duration_ms or 0) / 1000
            return f"{mark} {self.display_name} ({seconds:.1f}s)"
        if self.type == "commit":
            return f"commit {self.text}"
        return f"error: {self.text}"


@dataclass
class LastCommit:
    hash: str
    message: str


def parse_commit_output(output: str) -> LastCommit | None:
    """Find a commit signature like ``[main 1a2b3c4] message`` in output."""
    match = COMMIT_PATTERN.search(output)
    if not match:
        return None
    return LastCommit(hash=match.group(1), message=match.group(2).strip())


def format_tool_input(tool_input: dict[str, Any]) -> str:
    """Render the most relevant field of a tool input for failure reports."""
    if tool_input.get("command"):
        return f"command: {str(tool_input['command'])[:200]}"
    if tool_input.get("file_path"):
        return f"file: {tool_input['file_path']}"
    if tool_input.get("pattern"):
        return f"pattern: {tool_input['pattern']}"
    if tool_input.get("prompt"):
        return f"prompt: {str(tool_input['prompt'])[:100]}"
    return str(tool_input)[:200]


class IterationStateMachine:
    """Reducer over one iteration's agent events.

    Usage:
        machine = IterationStateMachine(iteration=1, total_iterations=5)
        for event in events:
            machine.apply(event)
        if machine.is_done:
            print(machine.result)
    """

    def __init__(
        self,
        iteration: int = 1,
        total_iterations: int = 1,
        clock: Callable[[], float] = time.monotonic,
        activity_log_size: int = DEFAULT_ACTIVITY_LOG_SIZE,
        task_text_limit: int = DEFAULT_TASK_TEXT_LIMIT,
    ) -> None:
        self.iteration = iteration
        self.total_iterations = total_iterations
        self._clock = clock
        self._activity_log_size = activity_log_size
        self._task_text_limit = task_text_limit
        self._synthetic_ids = count(1)

        self.phase = Phase.IDLE
        self.started_at = clock()
        self.task_text: str | None = None
        self.active_tools: dict[str, ActiveTool] = {}
        self.completed_tools: list[CompletedTool] = []
        self.tool_groups: list[ToolGroup] = []
        self.stats = Stats()
        self.activity_log: list[ActivityItem] = []
        self.last_commit: LastCommit | None = None
        self.errors: list[str] = []
        self.result: Complete | None = None

    @property
    def is_done(self) -> bool:
        return self.phase == Phase.DONE

    @property
    def elapsed_ms(self) -> int:
        return int((self._clock() - self.started_at) * 1000)

    def apply(self, event: AgentEvent) -> None:
        """Apply one event. Events after completion are ignored."""
        if self.is_done:
            logger.debug(f"Ignoring {type(event).__name__} after completion")
            return

        if isinstance(event, ToolStart):
            self._on_tool_start(event)
        elif isinstance(event, ToolEnd):
            self._on_tool_end(event)
        elif isinstance(event, (Thinking, Message)):
            self._on_text(event.text)
        elif isinstance(event, ErrorEvent):
            self._on_error(event)
        elif isinstance(event, Complete):
            self.result = event
            self.phase = Phase.DONE
        else:
            logger.warning(f"Unknown event type: {type(event).__name__}")

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _on_text(self, text: str) -> None:
        trimmed = text.strip()
        if self.task_text is None and trimmed:
            self.task_text = trimmed[: self._task_text_limit]
        if trimmed:
            self._log(ActivityItem(type="thought", timestamp=self._clock(), text=trimmed))
        self.phase = Phase.THINKING

    def _on_error(self, event: ErrorEvent) -> None:
        self.errors.append(event.message)
        self._log(ActivityItem(type="error", timestamp=self._clock(), text=event.message))

    def _on_tool_start(self, event: ToolStart) -> None:
        category = get_tool_category(event.name)
        tool_id = event.tool_id or f"anon-{next(self._synthetic_ids)}"
        tool = ActiveTool(
            id=tool_id,
            name=event.name,
            category=category,
            started_at=self._clock(),
            input=event.input or {},
        )
        self.active_tools[tool_id] = tool
        self.stats.tools_started += 1
        self.phase = _CATEGORY_PHASES[category]

        self._log(
            ActivityItem(
                type="tool_start",
                timestamp=tool.started_at,
                tool_id=tool_id,
                tool_name=event.name,
                display_name=get_tool_display_name(event.name, tool.input),
            )
        )

    def _on_tool_end(self, event: ToolEnd) -> None:
        now = self._clock()
        active = self._match_active(event)

        if active is None:
            logger.debug(f"Unmatched tool end for {event.name}; recording synthetic completion")
            completed = CompletedTool(
                id=event.tool_id or f"anon-{next(self._synthetic_ids)}",
                name=event.name,
                category=get_tool_category(event.name),
                duration_ms=0,
                is_error=event.error,
                output=event.output,
                synthetic=True,
            )
        else:
            del self.active_tools[active.id]
            completed = CompletedTool(
                id=active.id,
                name=active.name,
                category=active.category,
                duration_ms=max(0, int((now - active.started_at) * 1000)),
                is_error=event.error,
                input=active.input,
                output=event.output,
            )

        self.completed_tools.append(completed)
        self._count_completion(completed)
        self._add_to_groups(completed)
        self._update_phase_after_tool_end()

        self._log(
            ActivityItem(
                type="tool_complete",
                timestamp=now,
                tool_id=completed.id,
                tool_name=completed.name,
                display_name=get_tool_display_name(completed.name, completed.input),
                duration_ms=completed.duration_ms,
                is_error=completed.is_error,
            )
        )

        if completed.category == "command" and not completed.is_error:
            commit = parse_commit_output(completed.output)
            if commit:
                self.last_commit = commit
                self._log(
                    ActivityItem(
                        type="commit",
                        timestamp=now,
                        text=f"{commit.hash[:7]} {commit.message}",
                    )
                )

    def _match_active(self, event: ToolEnd) -> ActiveTool | None:
        if event.tool_id and event.tool_id in self.active_tools:
            return self.active_tools[event.tool_id]
        # Nearest unmatched start of the same name
        for tool in reversed(list(self.active_tools.values())):
            if tool.name == event.name:
                return tool
        return None

    def _count_completion(self, tool: CompletedTool) -> None:
        self.stats.tools_completed += 1
        if tool.is_error:
            self.stats.tools_errored += 1
        if tool.category == "read":
            self.stats.reads += 1
        elif tool.category == "write":
            self.stats.writes += 1
        elif tool.category == "command":
            self.stats.commands += 1
        else:
            self.stats.meta_ops += 1

    def _add_to_groups(self, tool: CompletedTool) -> None:
        last = self.tool_groups[-1] if self.tool_groups else None
        if last is not None and last.category == tool.category:
            last.tools.append(tool)
            last.total_duration_ms += tool.duration_ms
        else:
            self.tool_groups.append(
                ToolGroup(category=tool.category, tools=[tool], total_duration_ms=tool.duration_ms)
            )

    def _update_phase_after_tool_end(self) -> None:
        categories = {tool.category for tool in self.active_tools.values()}
        if "command" in categories:
            self.phase = Phase.RUNNING
        elif "write" in categories:
            self.phase = Phase.EDITING
        elif "read" in categories:
            self.phase = Phase.READING
        else:
            self.phase = Phase.THINKING

    def _log(self, item: ActivityItem) -> None:
        self.activity_log.append(item)
        if len(self.activity_log) > self._activity_log_size:
            del self.activity_log[0]

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def coalesced_summary(self) -> str:
        """Describe what the agent is doing right now in one line."""
        if self.is_done:
            return f"Done ({self.stats.tools_completed} tools)"

        if not self.active_tools:
            return "Waiting..." if self.phase == Phase.IDLE else "Thinking..."

        by_category: dict[str, list[str]] = {}
        for tool in self.active_tools.values():
            by_category.setdefault(tool.category, []).append(
                get_tool_display_name(tool.name, tool.input)
            )

        parts = []
        for category, names in by_category.items():
            verb = CATEGORY_VERBS[category]
            if len(names) <= 3:
                parts.append(f"{verb} {', '.join(names)}")
            else:
                parts.append(f"{verb} {len(names)} items")
        return " | ".join(parts)

    def group_summaries(self) -> list[str]:
        return [group.summary() for group in self.tool_groups]

    def written_files(self) -> list[str]:
        """Paths touched by successful write-category tools, first write first."""
        files: list[str] = []
        for tool in self.completed_tools:
            path = tool.input.get("file_path") or tool.input.get("notebook_path")
            if tool.category == "write" and not tool.is_error and path and str(path) not in files:
                files.append(str(path))
        return files

    def failure_context(self) -> dict[str, Any] | None:
        """Describe what went wrong, for failed iterations.

        Picks the first erroring tool, falling back to the last completed one,
        and attaches the most recent activity. Returns None when no tool ran
        and nothing was logged.
        """
        tools = [tool for group in self.tool_groups for tool in group.tools]
        if not tools and not self.activity_log:
            return None

        culprit = next((tool for tool in tools if tool.is_error), tools[-1] if tools else None)
        recent = [item.describe() for item in self.activity_log[-RECENT_ACTIVITY_COUNT:]]

        return {
            "last_tool_name": culprit.name if culprit else None,
            "last_tool_input": format_tool_input(culprit.input) if culprit and culprit.input else None,
            "last_tool_output": culprit.output[:FAILURE_OUTPUT_LIMIT] if culprit else None,
            "recent_activity": recent,
            "errors": list(self.errors),
        }
