"""Spec parser for task spec markdown files.

Parses spec documents into validated Spec objects, serializes them back to a
canonical markdown form, and writes spec files atomically. Field lines are
normalized before strict parsing so that minor formatting drift in
agent-edited specs is tolerated, while structural problems (missing or
invalid status/size, duplicate ids) raise MalformedSpecError.
"""

import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path

from specloop.errors import LegacySpecFormatError, MalformedSpecError, UnknownTaskError
from specloop.models import Spec, Task, TaskSize, TaskStatus

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = r"T\d{3,}"

_TASK_HEADER_RE = re.compile(rf"^###\s+({TASK_ID_PATTERN}):[ \t]*(.*?)[ \t]*$", re.MULTILINE)
_SECTION_RE = re.compile(r"^##\s", re.MULTILINE)

# Lines after a field label that end a free-text block
_BLOCK_END = r"(?=\n\*\*[A-Z][\w ]*:\*\*|\n---|\n###|\n##\s|\Z)"


def normalize_spec(content: str) -> str:
    """Normalize spec content to handle common format variations.

    Handles:
    - "-Status:pending", "* status :  pending" -> "- Status: pending"
    - the same for Size and Depends on
    - "### T001:Title", "###T001 : Title" -> "### T001: Title"
    - "** Deliverables :**" -> "**Deliverables:**" (and Verify, Notes, Completed)
    """
    content = content.replace("\r\n", "\n")
    content = re.sub(r"^[-*][ \t]*Status[ \t]*:[ \t]*", "- Status: ", content, flags=re.I | re.M)
    content = re.sub(r"^[-*][ \t]*Size[ \t]*:[ \t]*", "- Size: ", content, flags=re.I | re.M)
    content = re.sub(
        r"^(?:[-*][ \t]*|\*\*[ \t]*)Depends[ \t]+on[ \t]*:[ \t]*(?:\*\*)?[ \t]*",
        "- Depends on: ",
        content,
        flags=re.I | re.M,
    )
    content = re.sub(
        rf"^###[ \t]*({TASK_ID_PATTERN})[ \t]*:[ \t]*", r"### \1: ", content, flags=re.M
    )
    for label in ("Deliverables", "Verify", "Notes", "Completed"):
        content = re.sub(
            rf"\*\*\s*{label}\s*:\s*\*\*", f"**{label}:**", content, flags=re.I
        )
    return content


def parse_spec(text: str) -> Spec:
    """Parse spec document text into a Spec.

    Args:
        text: Raw markdown content of the spec

    Returns:
        Spec with tasks in declaration order

    Raises:
        LegacySpecFormatError: If the document uses checkbox tasks without ids
        MalformedSpecError: If a task block is structurally invalid
    """
    content = normalize_spec(text)

    if _is_legacy_format(content):
        raise LegacySpecFormatError(
            "Legacy spec format detected (checkbox tasks).",
            suggestion="Migrate to task blocks with ids (### T001: Title).",
        )

    tasks = _parse_tasks(content)

    return Spec(
        title=_extract_title(content),
        goal=_extract_goal(content),
        context=_extract_context(content),
        tasks=tasks,
        acceptance_criteria=_extract_acceptance_criteria(content),
        notes=_extract_notes(content),
        completed_at=_extract_completed_at(content),
    )


def load_spec(spec_path: str | Path) -> Spec:
    """Read and parse a spec file."""
    spec_path = Path(spec_path)
    spec = parse_spec(spec_path.read_text(encoding="utf-8"))
    logger.debug(f"Loaded spec {spec_path.name} with {len(spec.tasks)} tasks")
    return spec


def _is_legacy_format(content: str) -> bool:
    has_checkbox_tasks = re.search(r"^-\s*\[\s*[xX ]?\s*\]\s+", content, re.M)
    has_task_ids = _TASK_HEADER_RE.search(content)
    return bool(has_checkbox_tasks) and not has_task_ids


def _extract_title(content: str) -> str:
    match = re.search(r"^#\s+(.+?)\s*$", content, re.M)
    return match.group(1) if match else "Untitled Spec"


def _extract_goal(content: str) -> str:
    match = re.search(r"^Goal:[ \t]*(.*?)\s*$", content, re.M)
    return match.group(1) if match else ""


def _extract_context(content: str) -> str | None:
    match = re.search(
        r"^##\s+Context[ \t]*\n(.*?)(?=^##\s|^###\s|^---|\Z)", content, re.M | re.S
    )
    if not match:
        return None
    return match.group(1).strip() or None


def _split_task_sections(content: str) -> list[tuple[str, str, str]]:
    """Split content into (id, title, body) per task header.

    A task section ends at the next task header or the next level-2 heading.
    """
    matches = list(_TASK_HEADER_RE.finditer(content))
    sections = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        next_heading = _SECTION_RE.search(content, match.end(), end)
        if next_heading:
            end = next_heading.start()
        sections.append((match.group(1), match.group(2), content[match.end() : end]))
    return sections


def _parse_tasks(content: str) -> list[Task]:
    tasks: list[Task] = []
    seen: set[str] = set()

    for task_id, title, body in _split_task_sections(content):
        if task_id in seen:
            raise MalformedSpecError(f"Duplicate task id {task_id}", task_id=task_id)
        seen.add(task_id)

        tasks.append(
            Task(
                id=task_id,
                title=title,
                status=_parse_status(task_id, body),
                size=_parse_size(task_id, body),
                deliverables=_extract_deliverables(body),
                verify=_extract_verify(body),
                notes=_extract_task_notes(body),
                depends_on=_extract_depends_on(body),
            )
        )

    return tasks


def _field_value(body: str, label: str) -> str | None:
    match = re.search(rf"^- {label}:[ \t]*(.*?)[ \t]*$", body, re.M)
    return match.group(1) if match else None


def _parse_status(task_id: str, body: str) -> TaskStatus:
    raw = _field_value(body, "Status")
    if raw is None:
        raise MalformedSpecError(f"Task {task_id} is missing a Status field", task_id=task_id)

    token = raw.split()[0].lower().replace("-", "_") if raw.split() else ""
    try:
        return TaskStatus(token)
    except ValueError:
        raise MalformedSpecError(
            f"Task {task_id} has invalid status '{raw}'",
            task_id=task_id,
            suggestion="Use one of: pending, in_progress, passed, failed.",
        ) from None


def _parse_size(task_id: str, body: str) -> TaskSize:
    raw = _field_value(body, "Size")
    if raw is None:
        raise MalformedSpecError(f"Task {task_id} is missing a Size field", task_id=task_id)

    token = raw.split()[0].upper() if raw.split() else ""
    try:
        return TaskSize(token)
    except ValueError:
        raise MalformedSpecError(
            f"Task {task_id} has invalid size '{raw}'",
            task_id=task_id,
            suggestion="Use one of: S, M, L.",
        ) from None


def _extract_depends_on(body: str) -> list[str]:
    raw = _field_value(body, "Depends on")
    if not raw:
        return []
    return re.findall(TASK_ID_PATTERN, raw)


def _extract_deliverables(body: str) -> list[str]:
    match = re.search(
        r"\*\*Deliverables:\*\*[ \t]*\n(.*?)(?=\n\*\*|\n---|\n###|\n##\s|\Z)", body, re.S
    )
    if not match:
        return []

    deliverables = []
    for line in match.group(1).split("\n"):
        bullet = re.match(r"^\s*[-*]\s+(.+)$", line)
        if bullet and bullet.group(1).strip():
            deliverables.append(bullet.group(1).strip())
    return deliverables


def _extract_verify(body: str) -> str | None:
    """Extract the verify command, unwrapping a code span if present."""
    match = re.search(r"^\*\*Verify:\*\*[ \t]*(.*?)[ \t]*$", body, re.M)
    if not match or not match.group(1):
        return None

    text = match.group(1)
    single = re.fullmatch(r"`([^`]*)`", text)
    if single:
        return single.group(1) or None
    double = re.fullmatch(r"``(.*?)``", text)
    if double:
        return double.group(1).strip() or None

    code = re.search(r"`([^`]+)`", text)
    return code.group(1) if code else text


def _extract_task_notes(body: str) -> str | None:
    match = re.search(rf"\*\*Notes:\*\*[ \t]*(.*?){_BLOCK_END}", body, re.S)
    if not match:
        return None
    return match.group(1).strip() or None


def _extract_acceptance_criteria(content: str) -> list[str]:
    match = re.search(
        r"^##\s+Acceptance Criteria[ \t]*\n(.*?)(?=^##\s|^\*\*Completed:\*\*|\Z)",
        content,
        re.M | re.S,
    )
    if not match:
        return []

    # Match: - [ ] item, - [x] item, or - item
    criteria = []
    for bullet in re.finditer(r"^\s*[-*]\s+(?:\[[ xX]\]\s*)?(.+?)\s*$", match.group(1), re.M):
        criteria.append(bullet.group(1))
    return criteria


def _extract_notes(content: str) -> str | None:
    match = re.search(
        r"^##\s+Notes[ \t]*\n(.*?)(?=^##\s|^\*\*Completed:\*\*|\Z)", content, re.M | re.S
    )
    if not match:
        return None
    notes = re.sub(r"\n?-{3,}\s*$", "", match.group(1).strip())
    return notes.strip() or None


def _extract_completed_at(content: str) -> datetime | None:
    match = re.search(r"^\*\*Completed:\*\*[ \t]*(\S+)", content, re.M)
    if not match:
        return None
    value = match.group(1)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise MalformedSpecError(f"Invalid completion timestamp '{match.group(1)}'") from None


# =============================================================================
# SERIALIZATION
# =============================================================================


def serialize_spec(spec: Spec) -> str:
    """Render a Spec in canonical markdown form.

    parse_spec(serialize_spec(spec)) yields a Spec equal to the input for any
    Spec produced by parse_spec.
    """
    lines = [f"# {spec.title}", ""]

    if spec.goal:
        lines += [f"Goal: {spec.goal}", ""]

    if spec.context:
        lines += ["## Context", spec.context, ""]

    lines += ["## Tasks", ""]
    for task in spec.tasks:
        lines += _serialize_task(task)
        lines += ["---", ""]

    if spec.acceptance_criteria:
        lines.append("## Acceptance Criteria")
        lines += [f"- {criterion}" for criterion in spec.acceptance_criteria]
        lines.append("")

    if spec.notes:
        lines += ["## Notes", spec.notes, ""]

    if spec.completed_at is not None:
        lines += ["---", f"**Completed:** {spec.completed_at.isoformat()}", ""]

    return "\n".join(lines)


def _serialize_task(task: Task) -> list[str]:
    lines = [
        f"### {task.id}: {task.title}".rstrip(),
        f"- Status: {task.status.value}",
        f"- Size: {task.size.value}",
    ]
    if task.depends_on:
        lines.append(f"- Depends on: {', '.join(task.depends_on)}")
    lines.append("")

    if task.deliverables:
        lines.append("**Deliverables:**")
        lines += [f"- {item}" for item in task.deliverables]
        lines.append("")

    if task.verify:
        lines += [f"**Verify:** {_format_code_span(task.verify)}", ""]

    if task.notes:
        lines += [f"**Notes:** {task.notes}", ""]

    return lines


def _format_code_span(command: str) -> str:
    if "`" not in command:
        return f"`{command}`"
    return f"`` {command} ``"


# =============================================================================
# FILE OPERATIONS
# =============================================================================


def atomic_write_text(path: str | Path, content: str) -> None:
    """Write a file so that readers only ever see the old or the new content.

    Writes to a temporary file in the same directory and renames it over
    the target.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_spec(spec_path: str | Path, spec: Spec) -> None:
    """Atomically write a Spec in canonical form."""
    atomic_write_text(spec_path, serialize_spec(spec))


def update_task_status(spec_path: str | Path, task_id: str, status: TaskStatus) -> Spec:
    """Rewrite the status line of one task, leaving the rest of the file intact.

    The edited document is re-parsed before it is written, so a failed
    update never reaches disk.

    Args:
        spec_path: Path to the spec file
        task_id: Id of the task to update
        status: New status

    Returns:
        The re-parsed Spec after the update

    Raises:
        UnknownTaskError: If no task with task_id exists
        MalformedSpecError: If the task has no status line
    """
    spec_path = Path(spec_path)
    content = spec_path.read_text(encoding="utf-8")

    header = re.search(rf"^###[ \t]*{re.escape(task_id)}[ \t]*:", content, re.M)
    if not header:
        raise UnknownTaskError(f"Task {task_id} not found in {spec_path.name}")

    next_header = re.compile(r"^#{2,3}\s", re.M).search(content, header.end())
    section_end = next_header.start() if next_header else len(content)

    status_line = re.compile(r"^[-*][ \t]*Status[ \t]*:.*$", re.I | re.M).search(
        content, header.end(), section_end
    )
    if not status_line:
        raise MalformedSpecError(f"Task {task_id} is missing a Status field", task_id=task_id)

    updated = (
        content[: status_line.start()]
        + f"- Status: {status.value}"
        + content[status_line.end() :]
    )
    spec = parse_spec(updated)
    atomic_write_text(spec_path, updated)
    logger.info(f"Task {task_id} status set to {status.value}")
    return spec
