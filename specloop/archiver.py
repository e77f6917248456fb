"""Spec archiver.

Moves a fully resolved spec from the active location to the completed
archive, stamping a completion timestamp. Archiving is one-way; there is no
unarchive.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from specloop.errors import SpecNotCompleteError
from specloop.locator import ProjectPaths
from specloop.progress import evaluate
from specloop.spec_parser import atomic_write_text, parse_spec

logger = logging.getLogger(__name__)


def archive_spec(
    spec_path: str | Path,
    root_dir: str | Path,
    now: datetime | None = None,
) -> Path:
    """Archive a completed spec.

    Failed tasks keep their failed status; only the completion timestamp is
    added to the document.

    Args:
        spec_path: Path to the active spec
        root_dir: Project root directory
        now: Completion time (defaults to the current UTC time)

    Returns:
        Path of the archived document

    Raises:
        SpecNotCompleteError: If any task is pending or in progress. The
            spec file is left where it is.
    """
    spec_path = Path(spec_path)
    now = now or datetime.now(timezone.utc)

    content = spec_path.read_text(encoding="utf-8")
    progress = evaluate(parse_spec(content))
    if not progress.completed:
        raise SpecNotCompleteError(
            f"Cannot archive {spec_path.name}: "
            f"{progress.counts.pending} pending, "
            f"{progress.counts.in_progress} in progress",
        )

    stamped = _stamp_completion(content, now)
    # Validate before anything touches disk
    parse_spec(stamped)

    completed_dir = ProjectPaths.for_root(root_dir).completed_dir
    archived_path = _archive_path(spec_path, completed_dir, now)

    atomic_write_text(archived_path, stamped)
    if archived_path.resolve() != spec_path.resolve():
        spec_path.unlink()

    logger.info(f"Archived {spec_path.name} to {archived_path}")
    return archived_path


def archive_filename(spec_path: str | Path, now: datetime) -> str:
    """Build the archive filename: <YYYY-MM-DD>-<clean-name>.md."""
    name = Path(spec_path).stem
    name = re.sub(r"^\d{4}-\d{2}-\d{2}-", "", name)
    name = re.sub(r"[^a-zA-Z0-9_-]", "-", name).lower()
    return f"{now.date().isoformat()}-{name}.md"


def _archive_path(spec_path: Path, completed_dir: Path, now: datetime) -> Path:
    base = completed_dir / archive_filename(spec_path, now)
    candidate = base
    counter = 2
    while candidate.exists():
        candidate = base.with_name(f"{base.stem}-{counter}.md")
        counter += 1
    return candidate


def _stamp_completion(content: str, now: datetime) -> str:
    completed_line = f"**Completed:** {now.isoformat()}"
    if re.search(r"^\*\*\s*Completed\s*:\s*\*\*.*$", content, re.M):
        return re.sub(r"^\*\*\s*Completed\s*:\s*\*\*.*$", completed_line, content, flags=re.M)
    return f"{content.rstrip()}\n\n---\n{completed_line}\n"
