"""Tests for CLI module.

These tests drive the commands through click's CliRunner against a project
created in tmp_path.
"""

import json
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from specloop.cli import ConsoleReporter, cli
from specloop.events import Complete, ToolEnd, ToolStart
from specloop.locator import ProjectPaths
from specloop.models import IterationResult, RunResult
from specloop.state import RunState
from specloop.state_machine import IterationStateMachine
from specloop.tests.conftest import make_spec_text


def invoke(root: Path, *args: str):
    return CliRunner().invoke(cli, ["-C", str(root), *args])


def save_run(root: Path, spec_name: str, started_at: datetime, *costs: float) -> None:
    state = RunState.new(spec_name, started_at=started_at)
    for n, cost in enumerate(costs, start=1):
        state.add_iteration(
            IterationResult(
                iteration=n,
                status="completed",
                duration_ms=30000,
                cost_usd=cost,
                input_tokens=1000,
                output_tokens=500,
            )
        )
    state.finish("complete", "All tasks resolved")
    state.save(ProjectPaths.for_root(root).state_dir)


class TestCliGroup:
    """Test the top-level command group."""

    def test_help_lists_commands(self):
        result = CliRunner().invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "status", "next", "archive", "history", "costs"):
            assert command in result.output


class TestStatusCommand:
    """Test the status command."""

    def test_shows_tasks_and_progress(self, tmp_path: Path, project):
        """Should list every task with its status."""
        project(make_spec_text(("T001", "passed", "S"), ("T002", "pending", "M")))

        result = invoke(tmp_path, "status")

        assert result.exit_code == 0
        assert "T001" in result.output
        assert "T002" in result.output
        assert "Progress: 1/2 resolved (50%)" in result.output
        assert "Points: 1/3 completed" in result.output

    def test_complete_spec_suggests_archive(self, tmp_path: Path, project):
        project(make_spec_text(("T001", "passed", "S")))

        result = invoke(tmp_path, "status")

        assert "All tasks resolved." in result.output

    def test_no_active_spec(self, tmp_path: Path):
        """Should show an error and exit 1 without an active spec."""
        result = invoke(tmp_path, "status")

        assert result.exit_code == 1
        assert "No spec found" in result.output

    def test_malformed_spec(self, tmp_path: Path, project):
        project("### T001: Task\n- Size: S\n")

        result = invoke(tmp_path, "status")

        assert result.exit_code == 1
        assert "missing a Status field" in result.output


class TestNextCommand:
    """Test the next command."""

    def test_shows_selection(self, tmp_path: Path, project):
        project(make_spec_text(("T001", "pending", "S"), ("T002", "pending", "M"), ("T003", "pending", "L")))

        result = invoke(tmp_path, "next", "--budget", "3")

        assert result.exit_code == 0
        assert "Selected 2 task(s) (3 points):" in result.output
        assert "T001: Task T001 [S]" in result.output
        assert "T003" not in result.output

    def test_conservative(self, tmp_path: Path, project):
        project(make_spec_text(("T001", "pending", "M"), ("T002", "pending", "S")))

        result = invoke(tmp_path, "next", "--budget", "4", "--conservative")

        assert "Selected 1 task(s)" in result.output


class TestArchiveCommand:
    """Test the archive command."""

    def test_archives_resolved_spec(self, tmp_path: Path, project):
        spec_path = project(make_spec_text(("T001", "passed", "S")))

        result = invoke(tmp_path, "archive")

        assert result.exit_code == 0
        assert "Archived" in result.output
        assert not spec_path.exists()
        assert len(list(ProjectPaths.for_root(tmp_path).completed_dir.glob("*-auth.md"))) == 1

    def test_refuses_unresolved_spec(self, tmp_path: Path, project):
        spec_path = project(make_spec_text(("T001", "pending", "S")))

        result = invoke(tmp_path, "archive")

        assert result.exit_code == 1
        assert "Cannot archive" in result.output
        assert spec_path.exists()


class TestHistoryAndCosts:
    """Test the history and costs commands."""

    def test_history_without_runs(self, tmp_path: Path):
        result = invoke(tmp_path, "history")

        assert result.exit_code == 0
        assert "No runs found" in result.output

    def test_history_lists_runs(self, tmp_path: Path):
        save_run(tmp_path, "auth.md", datetime(2026, 1, 5, 10, 0), 0.5, 0.25)
        save_run(tmp_path, "billing.md", datetime(2026, 1, 6, 10, 0), 1.0)

        result = invoke(tmp_path, "history", "--spec", "auth")

        assert result.exit_code == 0
        assert "auth.md" in result.output
        assert "billing.md" not in result.output
        assert "$0.75" in result.output

    def test_costs_by_spec(self, tmp_path: Path):
        save_run(tmp_path, "auth.md", datetime(2026, 1, 5), 0.5, 0.25)
        save_run(tmp_path, "billing.md", datetime(2026, 1, 6), 1.0)

        result = invoke(tmp_path, "costs")

        assert result.exit_code == 0
        assert "Costs by Spec" in result.output
        assert "$0.75" in result.output
        assert "$1.75" in result.output

    def test_costs_total_since(self, tmp_path: Path):
        save_run(tmp_path, "auth.md", datetime(2026, 1, 5), 0.5)
        save_run(tmp_path, "billing.md", datetime(2026, 2, 1), 1.0)

        result = invoke(tmp_path, "costs", "--total", "--since", "2026-01-15")

        assert "Total cost: $1.00" in result.output

    def test_costs_invalid_date(self, tmp_path: Path):
        result = invoke(tmp_path, "costs", "--since", "last week")

        assert result.exit_code != 0
        assert "Invalid date" in result.output


class TestRunCommand:
    """Test the run command with the loop mocked out."""

    def _patches(self, result: RunResult):
        mock_run_loop = AsyncMock(return_value=result)
        telemetry = patch("specloop.cli.setup_telemetry", return_value=(MagicMock(), MagicMock()))
        metrics = patch("specloop.cli.create_metrics")
        loop = patch("specloop.cli.run_loop", new=mock_run_loop)
        return mock_run_loop, telemetry, metrics, loop

    def test_exit_code_follows_outcome(self, tmp_path: Path, project):
        """The process exit code is the run's exit code."""
        project()
        mock_run_loop, telemetry, metrics, loop = self._patches(
            RunResult("stuck", 1, 3, 0.3, 9000, reason="No task status changed")
        )

        with telemetry, metrics, loop:
            result = invoke(tmp_path, "run", "-n", "5", "--budget", "2", "--model", "opus", "--greedy")

        assert result.exit_code == 1
        kwargs = mock_run_loop.call_args.kwargs
        assert kwargs["config"].max_iterations == 5
        assert kwargs["config"].budget == 2
        assert kwargs["config"].model == "opus"
        assert kwargs["greedy"] is True
        assert kwargs["run_all"] is False

    def test_lock_is_released(self, tmp_path: Path, project):
        project()
        _, telemetry, metrics, loop = self._patches(RunResult("complete", 0, 1, 0.1, 1000))

        with telemetry, metrics, loop:
            result = invoke(tmp_path, "run")

        assert result.exit_code == 0
        assert not (ProjectPaths.for_root(tmp_path).state_dir / "specloop.lock").exists()

    def test_iterations_and_all_are_exclusive(self, tmp_path: Path, project):
        project()

        result = invoke(tmp_path, "run", "-n", "3", "--all")

        assert result.exit_code == 2
        assert "mutually exclusive" in result.output

    def test_missing_spec_exits_3(self, tmp_path: Path):
        with patch("specloop.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())):
            with patch("specloop.cli.create_metrics"):
                result = invoke(tmp_path, "run")

        assert result.exit_code == 3
        assert "No spec found" in result.output
        assert not (tmp_path / ".specloop").exists()

    def test_headless_error_is_json(self, tmp_path: Path):
        with patch("specloop.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())):
            with patch("specloop.cli.create_metrics"):
                result = invoke(tmp_path, "run", "--headless")

        assert result.exit_code == 3
        event = json.loads(result.output.strip().splitlines()[-1])
        assert event["event"] == "failed"
        assert "No spec found" in event["error"]

    def test_held_lock_exits_3(self, tmp_path: Path, project):
        project()
        lock_file = ProjectPaths.for_root(tmp_path).state_dir / "specloop.lock"
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text("424242")
        _, telemetry, metrics, loop = self._patches(RunResult("complete", 0, 1, 0.1, 1000))

        with telemetry, metrics, loop:
            with patch("specloop.lock.SpecLoopLock._is_process_running", return_value=True):
                result = invoke(tmp_path, "run")

        assert result.exit_code == 3
        assert "already running" in result.output

    def test_unexpected_error_exits_3(self, tmp_path: Path, project):
        spec_path = project()
        spec_path.write_bytes(b"\xff\xfe# not utf-8\n")

        with patch("specloop.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())):
            with patch("specloop.cli.create_metrics"):
                result = invoke(tmp_path, "run")

        assert result.exit_code == 3
        assert "UnicodeDecodeError" in result.output
        assert not (ProjectPaths.for_root(tmp_path).state_dir / "specloop.lock").exists()

    def test_unexpected_error_headless_emits_failed(self, tmp_path: Path, project):
        spec_path = project()
        spec_path.write_bytes(b"\xff\xfe# not utf-8\n")

        with patch("specloop.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())):
            with patch("specloop.cli.create_metrics"):
                result = invoke(tmp_path, "run", "--headless")

        assert result.exit_code == 3
        event = json.loads(result.output.strip().splitlines()[-1])
        assert event["event"] == "failed"
        assert event["error"].startswith("UnicodeDecodeError")


class TestConsoleReporter:
    """Tool activity is printed as coalesced groups."""

    def feed(self, reporter: ConsoleReporter, machine: IterationStateMachine, *events) -> None:
        for event in events:
            machine.apply(event)
            reporter.agent_event(event, machine)

    def test_burst_of_reads_prints_one_line(self, capsys):
        reporter = ConsoleReporter()
        machine = IterationStateMachine()
        reporter.iteration_started(1, 3, [])

        self.feed(
            reporter,
            machine,
            ToolStart(name="Read", input={"file_path": "a.py"}),
            ToolStart(name="Read", input={"file_path": "b.py"}),
            ToolEnd(name="Read"),
            ToolEnd(name="Read"),
            ToolStart(name="Bash", input={"command": "make test"}),
            ToolEnd(name="Bash"),
            Complete(success=True),
        )

        out = capsys.readouterr().out
        assert out.count("Reading 2 files") == 1
        assert "a.py" not in out
        assert "Running: make test" in out

    def test_open_group_is_printed_when_iteration_finishes(self, capsys):
        reporter = ConsoleReporter()
        machine = IterationStateMachine()
        reporter.iteration_started(1, 3, [])

        self.feed(
            reporter,
            machine,
            ToolStart(name="Edit", input={"file_path": "a.py"}),
            ToolStart(name="Edit", input={"file_path": "b.py"}),
            ToolEnd(name="Edit"),
            ToolEnd(name="Edit", error=True),
        )
        assert "Editing" not in capsys.readouterr().out

        reporter.iteration_finished(
            IterationResult(iteration=1, status="failed", duration_ms=100, error="stream ended")
        )

        out = capsys.readouterr().out
        assert "Editing 2 files (1 failed)" in out
