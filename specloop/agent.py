"""Coding agent adapter.

Runs the Claude Code CLI as a subprocess in stream-json mode and delivers
its output as typed agent events, one at a time. The adapter never times out
on its own: callers await next_event() under their own idle timeout and call
kill() to tear the session down.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from specloop.errors import AgentError
from specloop.events import AgentEvent, Complete, ErrorEvent, parse_stream_line

logger = logging.getLogger(__name__)

DEFAULT_TOOLS = ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]

# stream-json lines carry whole tool results
STREAM_LIMIT = 16 * 1024 * 1024


class AgentSession(Protocol):
    async def next_event(self) -> AgentEvent | None: ...

    async def kill(self) -> None: ...


class Agent(Protocol):
    async def start(self, prompt: str, cwd: Path) -> AgentSession: ...


class ClaudeCodeSession:
    """One running Claude Code process.

    Events carry a monotonic seq assigned in stdout order. After the
    stream ends without a result, a synthetic Complete is produced from the
    exit status so every session finishes with exactly one Complete.
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process
        self._pending_tools: dict[str, str] = {}
        self._queue: deque[AgentEvent] = deque()
        self._seq = 0
        self._completed = False
        self._finished = False

    async def next_event(self) -> AgentEvent | None:
        """Return the next event, or None once the session is finished."""
        while not self._queue:
            if self._finished:
                return None
            await self._read_more()

        event = self._queue.popleft()
        if isinstance(event, Complete):
            self._completed = True
        return event

    async def _read_more(self) -> None:
        stdout = self.process.stdout
        if stdout is None:
            raise AgentError("Agent process has no stdout stream")

        try:
            line = await stdout.readline()
        except (ValueError, asyncio.LimitOverrunError) as e:
            raise AgentError(f"Agent output line too long: {e}") from e

        if line:
            for event in parse_stream_line(line.decode("utf-8", errors="replace"), self._pending_tools):
                self._push(event)
            return

        self._finished = True
        returncode = await self.process.wait()
        if self._completed or any(isinstance(e, Complete) for e in self._queue):
            return

        stderr = b""
        if self.process.stderr is not None:
            stderr = await self.process.stderr.read()
        message = stderr.decode("utf-8", errors="replace").strip() or "No result event received"
        if returncode != 0:
            message = f"Agent exited with code {returncode}: {message}"
        self._push(ErrorEvent(message=message))
        self._push(Complete(success=False, error=message))

    def _push(self, event: AgentEvent) -> None:
        event.seq = self._seq
        self._seq += 1
        self._queue.append(event)

    async def kill(self) -> None:
        """Terminate the process. Safe to call more than once."""
        self._finished = True
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()


@dataclass
class ClaudeCodeAgent:
    """Starts Claude Code sessions.

    Attributes:
        command: Executable to run (default "claude")
        model: Model alias passed with --model, if any
        allowed_tools: Tools the agent may use
        max_turns: Optional conversation turn limit
    """

    command: str = "claude"
    model: str | None = None
    allowed_tools: list[str] | None = None
    max_turns: int | None = None

    def build_command(self, prompt: str) -> list[str]:
        cmd = [
            self.command,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",  # Required for stream-json with -p
            "--dangerously-skip-permissions",
            "--allowedTools",
            ",".join(self.allowed_tools or DEFAULT_TOOLS),
        ]
        if self.max_turns:
            cmd.extend(["--max-turns", str(self.max_turns)])
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    async def start(self, prompt: str, cwd: Path) -> ClaudeCodeSession:
        """Spawn the agent in cwd.

        Raises:
            AgentError: If the executable cannot be started
        """
        cmd = self.build_command(prompt)
        logger.debug(f"Starting agent: {cmd[0]} in {cwd}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise AgentError(
                f"Failed to start agent '{self.command}': {e}",
                suggestion="Install the Claude Code CLI or set SPECLOOP_AGENT_COMMAND.",
            ) from e
        return ClaudeCodeSession(process)
