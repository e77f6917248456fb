"""Tests for the iteration state machine."""

import pytest

from specloop.events import Complete, ErrorEvent, Message, Thinking, ToolEnd, ToolStart
from specloop.state_machine import (
    IterationStateMachine,
    Phase,
    format_tool_input,
    parse_commit_output,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def machine(clock: FakeClock) -> IterationStateMachine:
    return IterationStateMachine(iteration=1, total_iterations=3, clock=clock)


def read(tool_id: str, path: str) -> ToolStart:
    return ToolStart(name="Read", input={"file_path": path}, tool_id=tool_id)


class TestPhases:
    """Tests for phase transitions."""

    def test_starts_idle(self, machine: IterationStateMachine) -> None:
        assert machine.phase == Phase.IDLE
        assert machine.coalesced_summary() == "Waiting..."

    def test_tool_start_sets_phase_by_category(self, machine: IterationStateMachine) -> None:
        machine.apply(read("t1", "a.py"))
        assert machine.phase == Phase.READING

        machine.apply(ToolStart(name="Edit", input={"file_path": "a.py"}, tool_id="t2"))
        assert machine.phase == Phase.EDITING

        machine.apply(ToolStart(name="Bash", input={"command": "pytest"}, tool_id="t3"))
        assert machine.phase == Phase.RUNNING

    def test_phase_after_tool_end_prefers_commands(self, machine: IterationStateMachine) -> None:
        machine.apply(ToolStart(name="Bash", input={"command": "pytest"}, tool_id="t1"))
        machine.apply(read("t2", "a.py"))
        machine.apply(ToolStart(name="Edit", input={"file_path": "b.py"}, tool_id="t3"))

        machine.apply(ToolEnd(name="Read", tool_id="t2"))
        assert machine.phase == Phase.RUNNING

        machine.apply(ToolEnd(name="Bash", tool_id="t1"))
        assert machine.phase == Phase.EDITING

        machine.apply(ToolEnd(name="Edit", tool_id="t3"))
        assert machine.phase == Phase.THINKING

    def test_text_sets_thinking_and_task_text(self, machine: IterationStateMachine) -> None:
        machine.apply(Thinking(text="   "))
        assert machine.task_text is None

        machine.apply(Message(text="  Implementing T001  "))
        machine.apply(Message(text="Something else"))

        assert machine.phase == Phase.THINKING
        assert machine.task_text == "Implementing T001"

    def test_task_text_is_truncated(self, clock: FakeClock) -> None:
        machine = IterationStateMachine(clock=clock, task_text_limit=10)

        machine.apply(Message(text="x" * 50))

        assert machine.task_text == "x" * 10

    def test_complete_ends_iteration(self, machine: IterationStateMachine) -> None:
        done = Complete(success=True)
        machine.apply(done)
        machine.apply(read("t1", "late.py"))

        assert machine.is_done
        assert machine.result is done
        assert machine.active_tools == {}
        assert machine.coalesced_summary() == "Done (0 tools)"


class TestToolTracking:
    """Tests for tool matching, grouping and stats."""

    def test_two_reads_coalesce_into_one_group(
        self, machine: IterationStateMachine, clock: FakeClock
    ) -> None:
        machine.apply(read("t1", "src/a.py"))
        machine.apply(read("t2", "src/b.py"))
        assert machine.coalesced_summary() == "Reading a.py, b.py"

        clock.advance(0.5)
        machine.apply(ToolEnd(name="Read", tool_id="t1", output="a"))
        machine.apply(ToolEnd(name="Read", tool_id="t2", output="b"))

        assert len(machine.tool_groups) == 1
        assert machine.tool_groups[0].count == 2
        assert machine.tool_groups[0].total_duration_ms == 1000
        assert machine.group_summaries() == ["Reading 2 files"]
        assert [t.id for t in machine.completed_tools] == ["t1", "t2"]

    def test_category_change_starts_new_group(self, machine: IterationStateMachine) -> None:
        for tool_id, name, tool_input in [
            ("t1", "Read", {"file_path": "a.py"}),
            ("t2", "Edit", {"file_path": "a.py"}),
            ("t3", "Read", {"file_path": "b.py"}),
        ]:
            machine.apply(ToolStart(name=name, input=tool_input, tool_id=tool_id))
            machine.apply(ToolEnd(name=name, tool_id=tool_id))

        assert machine.group_summaries() == ["Reading a.py", "Editing a.py", "Reading b.py"]

    def test_many_active_tools_are_counted(self, machine: IterationStateMachine) -> None:
        for i in range(4):
            machine.apply(read(f"t{i}", f"f{i}.py"))
        machine.apply(ToolStart(name="Bash", input={"command": "ls -la"}, tool_id="b1"))

        assert machine.coalesced_summary() == "Reading 4 items | Running ls"

    def test_end_without_id_matches_latest_same_name(self, machine: IterationStateMachine) -> None:
        machine.apply(ToolStart(name="Read", input={"file_path": "a.py"}))
        machine.apply(ToolStart(name="Read", input={"file_path": "b.py"}))

        machine.apply(ToolEnd(name="Read"))

        [remaining] = machine.active_tools.values()
        assert remaining.input == {"file_path": "a.py"}
        assert machine.completed_tools[0].input == {"file_path": "b.py"}

    def test_unmatched_end_is_synthetic(self, machine: IterationStateMachine) -> None:
        machine.apply(ToolEnd(name="Grep", tool_id="ghost", output="x"))

        [tool] = machine.completed_tools
        assert tool.synthetic
        assert tool.duration_ms == 0
        assert machine.stats.tools_started == 0
        assert machine.stats.tools_completed == 1

    def test_stats(self, machine: IterationStateMachine) -> None:
        machine.apply(read("t1", "a.py"))
        machine.apply(ToolEnd(name="Read", tool_id="t1"))
        machine.apply(ToolStart(name="Bash", input={"command": "false"}, tool_id="t2"))
        machine.apply(ToolEnd(name="Bash", tool_id="t2", error=True))
        machine.apply(ToolStart(name="TodoWrite", tool_id="t3"))
        machine.apply(ToolEnd(name="TodoWrite", tool_id="t3"))

        assert machine.stats.to_dict() == {
            "tools_started": 3,
            "tools_completed": 3,
            "tools_errored": 1,
            "reads": 1,
            "writes": 0,
            "commands": 1,
            "meta_ops": 1,
        }

    def test_written_files(self, machine: IterationStateMachine) -> None:
        machine.apply(ToolStart(name="Write", input={"file_path": "app.py"}, tool_id="w1"))
        machine.apply(ToolEnd(name="Write", tool_id="w1"))
        machine.apply(ToolStart(name="Edit", input={"file_path": "bad.py"}, tool_id="w2"))
        machine.apply(ToolEnd(name="Edit", tool_id="w2", error=True))
        machine.apply(ToolStart(name="Edit", input={"file_path": "app.py"}, tool_id="w3"))
        machine.apply(ToolEnd(name="Edit", tool_id="w3"))
        machine.apply(read("r1", "notes.py"))
        machine.apply(ToolEnd(name="Read", tool_id="r1"))

        assert machine.written_files() == ["app.py"]

    def test_activity_log_is_bounded(self, clock: FakeClock) -> None:
        machine = IterationStateMachine(clock=clock, activity_log_size=3)

        for i in range(5):
            machine.apply(Message(text=f"thought {i}"))

        assert [item.text for item in machine.activity_log] == ["thought 2", "thought 3", "thought 4"]


class TestCommitDetection:
    """Tests for commit detection in command output."""

    def test_parse_commit_output(self) -> None:
        commit = parse_commit_output(
            "[feature/auth 1a2b3c4] Add user model\n 2 files changed, 40 insertions(+)"
        )

        assert commit.hash == "1a2b3c4"
        assert commit.message == "Add user model"

    def test_no_commit(self) -> None:
        assert parse_commit_output("nothing to commit, working tree clean") is None

    def test_detects_commit_from_bash(self, machine: IterationStateMachine) -> None:
        machine.apply(ToolStart(name="Bash", input={"command": "git commit -m x"}, tool_id="t1"))
        machine.apply(ToolEnd(name="Bash", tool_id="t1", output="[main deadbeef] Add signup\n"))

        assert machine.last_commit.hash == "deadbeef"
        assert machine.activity_log[-1].type == "commit"

    def test_ignores_errored_and_non_command_output(self, machine: IterationStateMachine) -> None:
        machine.apply(ToolStart(name="Bash", tool_id="t1"))
        machine.apply(ToolEnd(name="Bash", tool_id="t1", output="[main deadbeef] x", error=True))
        machine.apply(read("t2", "log.txt"))
        machine.apply(ToolEnd(name="Read", tool_id="t2", output="[main cafebabe] y"))

        assert machine.last_commit is None


class TestFailureContext:
    """Tests for failure_context()."""

    def test_nothing_happened(self, machine: IterationStateMachine) -> None:
        assert machine.failure_context() is None

    def test_prefers_first_erroring_tool(self, machine: IterationStateMachine) -> None:
        machine.apply(ToolStart(name="Bash", input={"command": "pytest"}, tool_id="t1"))
        machine.apply(ToolEnd(name="Bash", tool_id="t1", output="1 failed", error=True))
        machine.apply(read("t2", "a.py"))
        machine.apply(ToolEnd(name="Read", tool_id="t2", output="code"))
        machine.apply(ErrorEvent(message="agent crashed"))

        context = machine.failure_context()

        assert context["last_tool_name"] == "Bash"
        assert context["last_tool_input"] == "command: pytest"
        assert context["last_tool_output"] == "1 failed"
        assert context["errors"] == ["agent crashed"]
        assert len(context["recent_activity"]) == 5
        assert context["recent_activity"][-1] == "error: agent crashed"

    def test_falls_back_to_last_tool_and_truncates(self, machine: IterationStateMachine) -> None:
        machine.apply(read("t1", "a.py"))
        machine.apply(ToolEnd(name="Read", tool_id="t1", output="a"))
        machine.apply(read("t2", "b.py"))
        machine.apply(ToolEnd(name="Read", tool_id="t2", output="y" * 600))

        context = machine.failure_context()

        assert context["last_tool_input"] == "file: b.py"
        assert len(context["last_tool_output"]) == 500

    def test_format_tool_input(self) -> None:
        assert format_tool_input({"pattern": "foo"}) == "pattern: foo"
        assert format_tool_input({"other": 1}) == "{'other': 1}"
