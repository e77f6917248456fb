"""Run state persistence.

Provides RunState, the record of one `specloop run`: its iterations, costs
and per-task failure tracking. State is saved after every iteration under
``.specloop/state/`` and read back by the history and costs commands.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from specloop.models import IterationResult
from specloop.spec_parser import atomic_write_text

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """Persistent state for one run.

    Attributes:
        run_id: Identifier, derived from the start time
        spec_name: File name of the spec being worked on
        started_at: When the run started
        finished_at: When the run ended (None while running or if interrupted)
        outcome: Final outcome (complete, stuck, max_iterations, error)
        reason: Human-readable explanation of the outcome
        iterations: IterationResult dicts, in order
        task_attempt_counts: Map of task_id to failed attempt count
        task_errors: Map of task_id to list of error messages
    """

    run_id: str
    spec_name: str
    started_at: datetime
    finished_at: datetime | None = None
    outcome: str | None = None
    reason: str = ""
    iterations: list[dict[str, Any]] = field(default_factory=list)
    task_attempt_counts: dict[str, int] = field(default_factory=dict)
    task_errors: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def new(cls, spec_name: str, started_at: datetime | None = None) -> "RunState":
        started_at = started_at or datetime.now()
        return cls(
            run_id=started_at.strftime("%Y%m%d-%H%M%S-%f"),
            spec_name=spec_name,
            started_at=started_at,
        )

    def save(self, state_dir: Path) -> None:
        """Persist state to <state_dir>/<run_id>_state.json."""
        path = state_dir / f"{self.run_id}_state.json"

        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None

        atomic_write_text(path, json.dumps(data, indent=2))

    @classmethod
    def load(cls, state_dir: Path, run_id: str) -> "RunState | None":
        """Load state from JSON file if it exists.

        Returns:
            RunState if file exists, None otherwise
        """
        path = state_dir / f"{run_id}_state.json"
        if not path.exists():
            return None

        with open(path) as f:
            data = json.load(f)

        data["started_at"] = datetime.fromisoformat(data["started_at"])
        if data.get("finished_at"):
            data["finished_at"] = datetime.fromisoformat(data["finished_at"])
        return cls(**data)

    @classmethod
    def list_runs(cls, state_dir: Path) -> list["RunState"]:
        """Load every saved run, newest first. Unreadable files are skipped."""
        if not state_dir.is_dir():
            return []

        runs = []
        for path in state_dir.glob("*_state.json"):
            run_id = path.name[: -len("_state.json")]
            try:
                state = cls.load(state_dir, run_id)
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping unreadable run state {path.name}: {e}")
                continue
            if state is not None:
                runs.append(state)

        return sorted(runs, key=lambda run: run.started_at, reverse=True)

    def add_iteration(self, result: IterationResult) -> None:
        self.iterations.append(asdict(result))

    def finish(self, outcome: str, reason: str = "") -> None:
        self.outcome = outcome
        self.reason = reason
        self.finished_at = datetime.now()

    @property
    def total_cost_usd(self) -> float:
        return sum(it.get("cost_usd") or 0.0 for it in self.iterations)

    @property
    def total_input_tokens(self) -> int:
        return sum(it.get("input_tokens") or 0 for it in self.iterations)

    @property
    def total_output_tokens(self) -> int:
        return sum(it.get("output_tokens") or 0 for it in self.iterations)

    @property
    def total_duration_ms(self) -> int:
        return sum(it.get("duration_ms") or 0 for it in self.iterations)
