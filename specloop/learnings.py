"""Learnings capture and search.

When a task moves from failed to passed, the orchestrator writes a stub
learning file and asks the agent to complete it during the next iteration.
Learnings are markdown files with YAML frontmatter stored under
``.specloop/learnings/<category>/<slug>.md``. Existing learnings relevant to
the next task are injected into the task context.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Literal

import yaml

from specloop.spec_parser import atomic_write_text

logger = logging.getLogger(__name__)

LearningCategory = Literal["build-errors", "test-failures", "runtime-errors", "patterns"]

PLACEHOLDER = "To be filled in by the agent"

_CATEGORY_KEYWORDS: list[tuple[LearningCategory, tuple[str, ...]]] = [
    ("build-errors", ("build", "compile", "compilation", "type error", "typeerror", "import error")),
    ("test-failures", ("test", "pytest", "assert", "spec")),
    ("runtime-errors", ("runtime", "crash", "exception", "traceback", "uncaught")),
]

_STOPWORDS = {"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by", "from"}

_FRONTMATTER = re.compile(r"\A---\n(.*?)\n---\n?(.*)\Z", re.S)


@dataclass
class Learning:
    """A learning record: YAML metadata plus a markdown body."""

    title: str
    metadata: dict[str, Any]
    body: str = ""
    category: LearningCategory | None = None
    path: Path | None = None

    @property
    def problem(self) -> str:
        return str(self.metadata.get("problem", ""))

    @property
    def solution(self) -> str:
        return str(self.metadata.get("solution", ""))

    @property
    def tags(self) -> list[str]:
        return [str(tag) for tag in self.metadata.get("tags") or []]


def slugify(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


def detect_category(problem: str, tags: list[str] | None = None) -> LearningCategory:
    """Classify a problem description by keyword, most specific first."""
    text = f"{problem} {' '.join(tags or [])}".lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return "patterns"


def generate_learning_from_failure(
    task_id: str,
    task_title: str,
    error_message: str | None = None,
    logs: str | None = None,
) -> Learning:
    """Build a stub learning for a task that failed before passing."""
    metadata = {
        "problem": f"Task {task_id} ({task_title}) failed initially",
        "symptoms": error_message or "Task failed with errors",
        "root-cause": PLACEHOLDER,
        "solution": PLACEHOLDER,
        "prevention": PLACEHOLDER,
        "tags": [task_id.lower(), "task-failure"],
    }

    sections = ["## Context", "", f"Task: {task_title}", f"Task ID: {task_id}", ""]
    if logs:
        sections += ["## Error Logs", "", "```", logs.rstrip(), "```", ""]
    sections += [
        "## Resolution",
        "",
        "[Describe what fixed the issue]",
        "",
        "## Test Added",
        "",
        "[Describe the test that would catch this bug]",
        "",
        "## Rule Suggestion",
        "",
        "[Suggest a project rule that would prevent this]",
    ]

    return Learning(
        title=f"{task_id.lower()}-{slugify(task_title)}",
        metadata=metadata,
        body="\n".join(sections),
    )


def format_learning(learning: Learning, today: date | None = None) -> str:
    """Render a learning as markdown with YAML frontmatter."""
    metadata = dict(learning.metadata)
    if learning.category:
        metadata["category"] = learning.category
    metadata.setdefault("date", (today or date.today()).isoformat())

    frontmatter = yaml.safe_dump(metadata, sort_keys=False, allow_unicode=True)
    return f"---\n{frontmatter}---\n\n{learning.body.strip()}\n"


def create_learning(
    learning: Learning,
    learnings_dir: str | Path,
    today: date | None = None,
) -> Path:
    """Write a learning under learnings_dir/<category>/<slug>.md.

    The category is detected from the problem and tags when not set.

    Returns:
        Path of the written file
    """
    if learning.category is None:
        learning.category = detect_category(learning.problem, learning.tags)

    path = Path(learnings_dir) / learning.category / f"{slugify(learning.title)}.md"
    atomic_write_text(path, format_learning(learning, today))
    learning.path = path

    logger.info(f"Created learning {path}")
    return path


def parse_learning(content: str) -> tuple[dict[str, Any] | None, str]:
    """Split frontmatter from body. Returns (None, content) without valid YAML."""
    match = _FRONTMATTER.match(content)
    if not match:
        return None, content

    try:
        metadata = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return None, content

    if not isinstance(metadata, dict):
        return None, content
    return metadata, match.group(2).strip()


def load_learning(path: Path) -> Learning | None:
    """Load a learning file; files without problem and solution are skipped."""
    try:
        metadata, body = parse_learning(path.read_text(encoding="utf-8"))
    except OSError as e:
        logger.debug(f"Cannot read learning {path}: {e}")
        return None

    if not metadata or not metadata.get("problem") or not metadata.get("solution"):
        return None

    return Learning(
        title=path.stem.replace("-", " ").title(),
        metadata=metadata,
        body=body,
        category=metadata.get("category"),
        path=path,
    )


def extract_keywords(*texts: str) -> list[str]:
    words = re.split(r"\W+", " ".join(texts).lower())
    seen: dict[str, None] = {}
    for word in words:
        if len(word) > 2 and word not in _STOPWORDS:
            seen.setdefault(word, None)
    return list(seen)


def search_learnings(learnings_dir: str | Path, *texts: str) -> list[Learning]:
    """Find completed learnings mentioning any keyword of the given texts.

    Stub learnings whose solution is still the placeholder are ignored.
    """
    keywords = extract_keywords(*texts)
    directory = Path(learnings_dir)
    if not keywords or not directory.is_dir():
        return []

    results = []
    for path in sorted(directory.rglob("*.md")):
        learning = load_learning(path)
        if learning is None or learning.solution == PLACEHOLDER:
            continue
        haystack = " ".join(
            [learning.problem, str(learning.metadata.get("root-cause", "")), learning.solution]
            + learning.tags
        ).lower()
        if any(keyword in haystack for keyword in keywords):
            results.append(learning)
    return results


def format_learnings_for_prompt(learnings: list[Learning]) -> str:
    if not learnings:
        return ""

    lines = [
        "## Relevant Learnings",
        "",
        "The following learnings from past iterations may help with this task:",
        "",
    ]
    for learning in learnings:
        lines.append(f"### {learning.title}")
        lines.append(f"- **Problem:** {learning.problem}")
        lines.append(f"- **Solution:** {learning.solution}")
        prevention = learning.metadata.get("prevention")
        if prevention and prevention != PLACEHOLDER:
            lines.append(f"- **Prevention:** {prevention}")
        if learning.tags:
            lines.append(f"- **Tags:** {', '.join(learning.tags)}")
        lines.append("")
    return "\n".join(lines)


def learning_capture_instructions(task_id: str, task_title: str, learning_path: str | Path) -> str:
    """Instructions asking the agent to complete a stub learning."""
    return f"""## Learning Capture Required

The previous iteration failed on task {task_id}, and it has now been fixed.
Document what happened so the same failure does not recur.

**Task:** {task_title}
**Learning file:** {learning_path}

1. Update the learning file at `{learning_path}` with:
   - **Root cause:** what was the actual problem?
   - **Solution:** what fixed it?
   - **Prevention:** how can it be prevented in the future?
2. Add a test that fails with the original bug and passes with the fix.
3. Suggest a specific, actionable project rule that would prevent it.

Keep the YAML frontmatter fields (problem, symptoms, root-cause, solution,
prevention, tags, category, date) and replace every placeholder.
"""
