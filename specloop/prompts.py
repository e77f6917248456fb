"""Agent instructions and per-iteration task context."""

from pathlib import Path

from specloop.models import Spec, Task

DEFAULT_INSTRUCTIONS = """You are an autonomous coding agent working through a task spec.

## Your Task
Complete ONE task per iteration. Tasks are identified by IDs like T001, T002.

## The Loop
1. Read the spec at {spec_path} and the assigned task below
2. Update the task's Status field: `- Status: pending` -> `- Status: in_progress`
3. Implement the task with tests
4. Run the task's Verify command (found in the **Verify:** section)
5. Run the full test suite and type checks
6. Update the task's Status field: `- Status: in_progress` -> `- Status: passed`
   (or `- Status: failed` if it cannot be completed)
7. Commit with the task ID in the message (e.g. "feat: T001 add user validation")

## Rules
- Plan BEFORE coding
- Run the Verify command BEFORE marking passed
- Only edit the Status line of a task; leave the rest of the spec as is
- Commit AFTER each task
- No TODO/FIXME stubs in completed tasks"""

GREEDY_INSTRUCTIONS = """You are an autonomous coding agent working through a task spec in GREEDY MODE.

## Your Task
Complete AS MANY of the assigned tasks as possible, in order, before context fills up.
Tasks are identified by IDs like T001, T002.

## The Loop (repeat for each assigned task)
1. Read the spec at {spec_path} and the next assigned task below
2. Update the task's Status field: `- Status: pending` -> `- Status: in_progress`
3. Implement the task with tests
4. Run the task's Verify command
5. Run the full test suite and type checks
6. Update the task's Status field: `- Status: in_progress` -> `- Status: passed`
   (or `- Status: failed` if it cannot be completed)
7. Commit with the task ID in the message
8. CONTINUE to the next assigned task

## Rules
- Commit after EACH task
- Run the Verify command BEFORE marking passed
- Only edit the Status line of a task; leave the rest of the spec as is
- No TODO/FIXME stubs in completed tasks"""


def format_task(task: Task) -> str:
    """Render one task as the agent sees it."""
    lines = [f"### {task.id}: {task.title}", f"- Status: {task.status.value}", f"- Size: {task.size.value}"]
    if task.depends_on:
        lines.append(f"- Depends on: {', '.join(task.depends_on)}")
    if task.deliverables:
        lines += ["", "**Deliverables:**"] + [f"- {item}" for item in task.deliverables]
    if task.verify:
        lines += ["", f"**Verify:** `{task.verify}`"]
    if task.notes:
        lines += ["", f"**Notes:** {task.notes}"]
    return "\n".join(lines)


def build_task_context(
    spec: Spec,
    spec_path: str | Path,
    selected: list[Task],
    greedy: bool = False,
    learnings: str = "",
    capture_instructions: list[str] | None = None,
) -> str:
    """Build the prompt for one iteration.

    Standard mode hands only the first selected task to the agent; greedy
    mode hands over all of them.

    Args:
        spec: The active spec
        spec_path: Location of the spec document
        selected: Tasks chosen by the budget calculator
        greedy: Assign every selected task instead of the first one
        learnings: Relevant learnings, already formatted for the prompt
        capture_instructions: Learning capture requests to handle first
    """
    template = GREEDY_INSTRUCTIONS if greedy else DEFAULT_INSTRUCTIONS
    assigned = selected if greedy else selected[:1]

    parts = [template.format(spec_path=spec_path)]

    header = f"## Spec: {spec.title}"
    if spec.goal:
        header += f"\n\nGoal: {spec.goal}"
    parts.append(header)

    if capture_instructions:
        parts.extend(capture_instructions)

    label = "Assigned Tasks" if len(assigned) > 1 else "Assigned Task"
    parts.append(f"## {label}\n\n" + "\n\n".join(format_task(task) for task in assigned))

    if learnings:
        parts.append(learnings)

    return "\n\n".join(part.strip() for part in parts) + "\n"
