"""Agent event model.

Defines the typed events a coding agent session emits, tool categorization,
translation of Claude Code ``stream-json`` output lines into events, and a
resequencing buffer for transports that may deliver events out of order.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Union

logger = logging.getLogger(__name__)

ToolCategory = Literal["read", "write", "command", "meta"]

TOOL_CATEGORIES: dict[str, ToolCategory] = {
    "Read": "read",
    "Grep": "read",
    "Glob": "read",
    "WebFetch": "read",
    "WebSearch": "read",
    "LSP": "read",
    "Edit": "write",
    "Write": "write",
    "NotebookEdit": "write",
    "Bash": "command",
    "TodoWrite": "meta",
    "Task": "meta",
    "AskUserQuestion": "meta",
    "EnterPlanMode": "meta",
    "ExitPlanMode": "meta",
}

CATEGORY_VERBS: dict[ToolCategory, str] = {
    "read": "Reading",
    "write": "Editing",
    "command": "Running",
    "meta": "Processing",
}

DISPLAY_NAME_LIMIT = 20


def get_tool_category(tool_name: str) -> ToolCategory:
    """Categorize a tool by name; unknown tools are meta operations."""
    return TOOL_CATEGORIES.get(tool_name, "meta")


def _truncate(text: str, limit: int = DISPLAY_NAME_LIMIT) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def get_tool_display_name(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    """Short display label for a tool call (file name, command, or pattern)."""
    if not tool_input:
        return tool_name

    file_path = tool_input.get("file_path")
    if tool_name in ("Read", "Edit", "Write") and isinstance(file_path, str):
        return Path(file_path).name or tool_name

    command = tool_input.get("command")
    if tool_name == "Bash" and isinstance(command, str):
        return _truncate(command.split(" ")[0])

    pattern = tool_input.get("pattern")
    if tool_name == "Glob" and isinstance(pattern, str):
        return pattern
    if tool_name == "Grep" and isinstance(pattern, str):
        return _truncate(pattern)

    return tool_name


def format_tool_call(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    """Format a tool call for human-readable display.

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    tool_input = tool_input or {}
    if tool_name in ("Read", "Write", "Edit"):
        file_path = tool_input.get("file_path", "")
        filename = Path(file_path).name if file_path else "file"
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[tool_name]
        return f"→ {verb} {filename}..."

    if tool_name == "Bash":
        command = str(tool_input.get("command", ""))
        if len(command) > 50:
            command = command[:50] + "..."
        return f"→ Running: {command}"

    if tool_name == "Grep":
        return f"→ Searching for {tool_input.get('pattern', '')}..."

    if tool_name == "Glob":
        return f"→ Finding {tool_input.get('pattern', '')}..."

    return f"→ {tool_name}..."


# =============================================================================
# EVENT VARIANTS
# =============================================================================


@dataclass
class ToolStart:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    tool_id: str | None = None
    seq: int | None = None


@dataclass
class ToolEnd:
    name: str
    output: str = ""
    error: bool = False
    tool_id: str | None = None
    seq: int | None = None


@dataclass
class Thinking:
    text: str
    seq: int | None = None


@dataclass
class Message:
    text: str
    seq: int | None = None


@dataclass
class ErrorEvent:
    message: str
    seq: int | None = None


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class Complete:
    """Final event of an agent session."""

    success: bool
    duration_ms: int = 0
    cost_usd: float | None = None
    usage: Usage | None = None
    error: str | None = None
    output: str | None = None
    session_id: str | None = None
    seq: int | None = None


AgentEvent = Union[ToolStart, ToolEnd, Thinking, Message, ErrorEvent, Complete]


# =============================================================================
# STREAM-JSON TRANSLATION
# =============================================================================


def parse_stream_line(line: str, pending_tools: dict[str, str]) -> list[AgentEvent]:
    """Translate one Claude Code stream-json line into agent events.

    Tool results only carry the tool_use id, so tool names are tracked in
    pending_tools (id -> name) between calls.

    Args:
        line: One line of stream-json output
        pending_tools: Mutable map of unmatched tool_use ids to tool names

    Returns:
        Events in the order they appear in the line. Malformed lines and
        envelope types without events yield an empty list.
    """
    line = line.strip()
    if not line:
        return []

    try:
        envelope = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed stream line: {line[:80]}")
        return []

    if not isinstance(envelope, dict):
        return []

    envelope_type = envelope.get("type")
    events: list[AgentEvent] = []

    if envelope_type == "assistant":
        for block in _content_blocks(envelope):
            block_type = block.get("type")
            if block_type == "tool_use":
                tool_id = block.get("id")
                name = block.get("name", "")
                if tool_id:
                    pending_tools[tool_id] = name
                events.append(ToolStart(name=name, input=block.get("input") or {}, tool_id=tool_id))
            elif block_type == "text":
                events.append(Message(text=block.get("text", "")))
            elif block_type == "thinking":
                events.append(Thinking(text=block.get("thinking", "")))

    elif envelope_type == "user":
        for block in _content_blocks(envelope):
            if block.get("type") == "tool_result":
                tool_id = block.get("tool_use_id")
                name = pending_tools.pop(tool_id, "unknown") if tool_id else "unknown"
                events.append(
                    ToolEnd(
                        name=name,
                        output=_stringify_content(block.get("content")),
                        error=bool(block.get("is_error", False)),
                        tool_id=tool_id,
                    )
                )

    elif envelope_type == "result":
        events.append(_complete_from_result(envelope))

    return events


def _content_blocks(envelope: dict[str, Any]) -> list[dict[str, Any]]:
    message = envelope.get("message") or {}
    content = message.get("content") or []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return [block for block in content if isinstance(block, dict)]


def _stringify_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item.get("text", "") for item in content if isinstance(item, dict)
        )
    return json.dumps(content)


def _complete_from_result(result: dict[str, Any]) -> Complete:
    is_error = bool(result.get("is_error", False))
    subtype = result.get("subtype", "success")
    success = not is_error and subtype == "success"

    usage_data = result.get("usage")
    usage = None
    if isinstance(usage_data, dict):
        usage = Usage(
            input_tokens=int(usage_data.get("input_tokens", 0) or 0),
            output_tokens=int(usage_data.get("output_tokens", 0) or 0),
        )

    error = None
    if not success:
        errors = result.get("errors")
        if isinstance(errors, list) and errors:
            error = str(errors[0])
        else:
            error = str(result.get("result") or subtype or "Unknown error")

    return Complete(
        success=success,
        duration_ms=int(result.get("duration_ms", 0) or 0),
        cost_usd=result.get("total_cost_usd"),
        usage=usage,
        error=error,
        output=result.get("result") if success else None,
        session_id=result.get("session_id"),
    )


# =============================================================================
# RESEQUENCING
# =============================================================================


class EventResequencer:
    """Buffers sequence-numbered events and releases them in order.

    Events without a seq are released immediately. Events with a seq are
    held until every lower sequence number has been released.

    Usage:
        reseq = EventResequencer()
        for event in transport:
            for ordered in reseq.push(event):
                machine.apply(ordered)
        for ordered in reseq.flush():
            machine.apply(ordered)
    """

    def __init__(self, start: int = 0) -> None:
        self._next_seq = start
        self._buffer: dict[int, AgentEvent] = {}

    @property
    def pending(self) -> int:
        """Number of events held back waiting for a gap to fill."""
        return len(self._buffer)

    def push(self, event: AgentEvent) -> list[AgentEvent]:
        """Accept one event and return the events now ready, in order."""
        seq = event.seq
        if seq is None:
            return [event]

        if seq < self._next_seq or seq in self._buffer:
            logger.warning(f"Dropping duplicate event seq={seq}")
            return []

        self._buffer[seq] = event
        ready: list[AgentEvent] = []
        while self._next_seq in self._buffer:
            ready.append(self._buffer.pop(self._next_seq))
            self._next_seq += 1
        return ready

    def flush(self) -> list[AgentEvent]:
        """Release all buffered events in sequence order, skipping gaps."""
        ready = [self._buffer[seq] for seq in sorted(self._buffer)]
        if self._buffer:
            self._next_seq = max(self._buffer) + 1
        self._buffer.clear()
        return ready
