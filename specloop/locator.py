"""Spec locator and project directory layout.

A project keeps its specloop files under ``.specloop/``:

    .specloop/
        specs/active/<one spec>.md
        specs/completed/<YYYY-MM-DD>-<name>.md
        learnings/<category>/<slug>.md
        state/
        .task-status.json

Exactly one spec may be active at a time. Legacy layouts (``SPEC.md`` at the
project root, or ``specs/`` without ``.specloop/``) are only detected to
report that a migration is required.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from specloop.errors import AmbiguousSpecError, MigrationRequiredError, NoActiveSpecError

logger = logging.getLogger(__name__)

SPECLOOP_DIR = ".specloop"

MIGRATION_MESSAGE = (
    "Legacy spec layout detected (SPEC.md or specs/ in the project root). "
    "Move the spec to .specloop/specs/active/ and use task ids (T001, T002)."
)


@dataclass(frozen=True)
class ProjectPaths:
    """Resolved specloop locations for a project root."""

    root: Path

    @property
    def base_dir(self) -> Path:
        return self.root / SPECLOOP_DIR

    @property
    def specs_dir(self) -> Path:
        return self.base_dir / "specs"

    @property
    def active_dir(self) -> Path:
        return self.specs_dir / "active"

    @property
    def completed_dir(self) -> Path:
        return self.specs_dir / "completed"

    @property
    def learnings_dir(self) -> Path:
        return self.base_dir / "learnings"

    @property
    def state_dir(self) -> Path:
        return self.base_dir / "state"

    @property
    def status_history_path(self) -> Path:
        return self.base_dir / ".task-status.json"

    @classmethod
    def for_root(cls, root_dir: str | Path) -> "ProjectPaths":
        return cls(Path(root_dir).resolve())


def locate_active_spec(root_dir: str | Path) -> Path:
    """Find the single active spec document.

    Args:
        root_dir: Project root directory

    Returns:
        Path to the active spec

    Raises:
        AmbiguousSpecError: If more than one spec is active
        MigrationRequiredError: If only a legacy spec layout exists
        NoActiveSpecError: If no spec is active
    """
    paths = ProjectPaths.for_root(root_dir)
    candidates = _list_specs(paths.active_dir)

    if len(candidates) == 1:
        return candidates[0]

    if len(candidates) > 1:
        names = [p.name for p in candidates]
        raise AmbiguousSpecError(
            f"Multiple specs found in {paths.active_dir}: {', '.join(names)}. "
            "Only one active spec is allowed.",
            candidates=names,
        )

    legacy = _find_legacy_spec(paths)
    if legacy is not None:
        logger.warning(f"Legacy spec found at {legacy}")
        raise MigrationRequiredError(
            f"No active spec in {paths.active_dir}; found legacy spec {legacy}.",
            suggestion=MIGRATION_MESSAGE,
        )

    raise NoActiveSpecError(
        f"No spec found in {paths.active_dir}.",
        suggestion="Create a spec in .specloop/specs/active/.",
    )


def has_active_spec(root_dir: str | Path) -> bool:
    """Return True if exactly one spec is active."""
    try:
        locate_active_spec(root_dir)
        return True
    except (NoActiveSpecError, AmbiguousSpecError):
        return False


def _list_specs(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix == ".md" and not p.name.startswith(".")
    )


def _find_legacy_spec(paths: ProjectPaths) -> Path | None:
    legacy_file = paths.root / "SPEC.md"
    if legacy_file.is_file():
        return legacy_file

    if not paths.base_dir.exists():
        legacy_specs = _list_specs(paths.root / "specs" / "active")
        if legacy_specs:
            return legacy_specs[0]

    return None
