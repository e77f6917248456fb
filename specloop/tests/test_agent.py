"""Tests for the Claude Code agent adapter."""

import asyncio
import json
from pathlib import Path

import pytest

from specloop.agent import DEFAULT_TOOLS, ClaudeCodeAgent, ClaudeCodeSession
from specloop.errors import AgentError
from specloop.events import Complete, ErrorEvent, ToolEnd, ToolStart


class FakeProcess:
    """Stands in for asyncio.subprocess.Process with canned output."""

    def __init__(self, lines: list[dict], exit_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = asyncio.StreamReader()
        for line in lines:
            self.stdout.feed_data((json.dumps(line) + "\n").encode())
        self.stdout.feed_eof()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_data(stderr)
        self.stderr.feed_eof()
        self.returncode: int | None = None
        self._exit_code = exit_code
        self.kill_calls = 0

    async def wait(self) -> int:
        self.returncode = self._exit_code
        return self._exit_code

    def kill(self) -> None:
        self.kill_calls += 1
        self._exit_code = -9


async def drain(session: ClaudeCodeSession) -> list:
    events = []
    while (event := await session.next_event()) is not None:
        events.append(event)
    return events


class TestBuildCommand:
    """Tests for ClaudeCodeAgent.build_command()."""

    def test_default_command(self) -> None:
        cmd = ClaudeCodeAgent().build_command("do it")

        assert cmd[:3] == ["claude", "-p", "do it"]
        assert "--output-format" in cmd
        assert cmd[cmd.index("--output-format") + 1] == "stream-json"
        assert "--verbose" in cmd
        assert "--dangerously-skip-permissions" in cmd
        assert cmd[cmd.index("--allowedTools") + 1] == ",".join(DEFAULT_TOOLS)
        assert "--model" not in cmd
        assert "--max-turns" not in cmd

    def test_optional_flags(self) -> None:
        agent = ClaudeCodeAgent(command="/opt/claude", model="opus", allowed_tools=["Read"], max_turns=20)

        cmd = agent.build_command("x")

        assert cmd[0] == "/opt/claude"
        assert cmd[cmd.index("--allowedTools") + 1] == "Read"
        assert cmd[cmd.index("--max-turns") + 1] == "20"
        assert cmd[cmd.index("--model") + 1] == "opus"


class TestClaudeCodeSession:
    """Tests for event delivery from a running process."""

    @pytest.mark.asyncio
    async def test_translates_stream_with_sequence_numbers(self) -> None:
        process = FakeProcess(
            [
                {"type": "system", "subtype": "init"},
                {
                    "type": "assistant",
                    "message": {
                        "content": [
                            {"type": "tool_use", "id": "tu_1", "name": "Read", "input": {"file_path": "a.py"}}
                        ]
                    },
                },
                {
                    "type": "user",
                    "message": {"content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "x"}]},
                },
                {"type": "result", "subtype": "success", "is_error": False, "total_cost_usd": 0.1},
            ]
        )

        events = await drain(ClaudeCodeSession(process))

        assert [type(e) for e in events] == [ToolStart, ToolEnd, Complete]
        assert [e.seq for e in events] == [0, 1, 2]
        assert events[1].name == "Read"
        assert events[2].success

    @pytest.mark.asyncio
    async def test_missing_result_synthesizes_failure(self) -> None:
        process = FakeProcess([], exit_code=1, stderr=b"Invalid API key\n")

        events = await drain(ClaudeCodeSession(process))

        assert [type(e) for e in events] == [ErrorEvent, Complete]
        assert events[0].message == "Agent exited with code 1: Invalid API key"
        assert not events[1].success
        assert events[1].error == events[0].message

    @pytest.mark.asyncio
    async def test_kill_is_idempotent(self) -> None:
        process = FakeProcess([])
        session = ClaudeCodeSession(process)

        await session.kill()
        await session.kill()

        assert process.kill_calls == 1
        assert await session.next_event() is None


class TestClaudeCodeAgentStart:
    """Tests for process startup."""

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path) -> None:
        agent = ClaudeCodeAgent(command=str(tmp_path / "no-such-agent"))

        with pytest.raises(AgentError) as exc_info:
            await agent.start("prompt", tmp_path)

        assert "Failed to start agent" in exc_info.value.message
        assert exc_info.value.suggestion
