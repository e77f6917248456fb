"""Shared fixtures for specloop tests."""

import asyncio
import logging
import textwrap
from pathlib import Path
from typing import Callable

import pytest

from specloop.events import AgentEvent, Complete, Usage

SAMPLE_SPEC = textwrap.dedent(
    """\
    # User Authentication

    Goal: Let users sign up and log in.

    ## Context
    The API has no auth today.

    ## Tasks

    ### T001: Create user model
    - Status: pending
    - Size: S

    **Deliverables:**
    - User dataclass with email and password hash
    - Unit tests

    **Verify:** `pytest tests/test_user.py`

    ---

    ### T002: Add signup endpoint
    - Status: pending
    - Size: M
    - Depends on: T001

    **Deliverables:**
    - POST /signup

    **Verify:** `pytest tests/test_signup.py`

    **Notes:** Reject duplicate emails.

    ---

    ### T003: Add login endpoint
    - Status: pending
    - Size: L

    **Deliverables:**
    - POST /login returning a token

    ---

    ## Acceptance Criteria
    - Users can sign up
    - Users can log in

    ## Notes
    Passwords are hashed with bcrypt.
    """
)


def make_spec_text(*tasks: tuple[str, str, str], title: str = "Test Spec") -> str:
    """Build a minimal spec from (id, status, size) tuples."""
    blocks = [f"# {title}", "", "## Tasks", ""]
    for task_id, status, size in tasks:
        blocks += [
            f"### {task_id}: Task {task_id}",
            f"- Status: {status}",
            f"- Size: {size}",
            "",
            "**Deliverables:**",
            f"- Deliver {task_id}",
            "",
            "---",
            "",
        ]
    return "\n".join(blocks)


@pytest.fixture
def spec_text_factory() -> Callable[..., str]:
    return make_spec_text


@pytest.fixture
def project(tmp_path: Path) -> Callable[..., Path]:
    """Create a project with an active spec and return the spec path."""

    def _create(text: str = SAMPLE_SPEC, name: str = "auth.md") -> Path:
        active = tmp_path / ".specloop" / "specs" / "active"
        active.mkdir(parents=True, exist_ok=True)
        spec_path = active / name
        spec_path.write_text(text)
        return spec_path

    return _create


class FakeSession:
    """Replays scripted events; optionally runs an action before finishing.

    A script entry of None makes the session go silent forever.
    """

    def __init__(self, events: list[AgentEvent | None], on_finish: Callable[[], None] | None):
        self._events = list(events)
        self._on_finish = on_finish
        self.killed = False

    async def next_event(self) -> AgentEvent | None:
        if not self._events:
            return None
        event = self._events.pop(0)
        if event is None:
            await asyncio.sleep(3600)
        if isinstance(event, Complete) and self._on_finish is not None:
            self._on_finish()
        return event

    async def kill(self) -> None:
        self.killed = True


class FakeAgent:
    """Agent double: each start() consumes the next script.

    Each script is (events, on_finish). on_finish typically edits the spec
    file the way a real agent would.
    """

    def __init__(self, scripts: list[tuple[list[AgentEvent | None], Callable[[], None] | None]]):
        self.scripts = list(scripts)
        self.prompts: list[str] = []
        self.sessions: list[FakeSession] = []

    async def start(self, prompt: str, cwd: Path) -> FakeSession:
        self.prompts.append(prompt)
        events, on_finish = self.scripts.pop(0) if self.scripts else ([], None)
        session = FakeSession(events, on_finish)
        self.sessions.append(session)
        return session


@pytest.fixture
def fake_agent() -> Callable[..., FakeAgent]:
    return FakeAgent


@pytest.fixture
def success_event() -> Callable[..., Complete]:
    def _make(cost: float = 0.10, input_tokens: int = 1000, output_tokens: int = 200) -> Complete:
        return Complete(
            success=True,
            duration_ms=1500,
            cost_usd=cost,
            usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
        )

    return _make


@pytest.fixture(autouse=True)
def reset_specloop_logger():
    """Undo configure_logging() calls made by CLI tests."""
    logger = logging.getLogger("specloop")
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
