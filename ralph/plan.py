"""Plan document and progress log handling.

The plan is a markdown file whose checklist lines are the units of work:

    - [ ] pending task
    - [x] completed task
    - [x] abandoned task (SKIPPED)

Everything else in the file is prose and ignored. The plan is re-read on
every call, never cached, since the agent edits it between iterations.
"""

import logging
import re
from datetime import datetime
from pathlib import Path

from ralph.models import PlanTask, TaskStats

logger = logging.getLogger(__name__)

SKIPPED_MARKER = "(SKIPPED)"

PENDING_RE = re.compile(r"^(\s*-\s*)\[\s*\](\s*)(.*?)\s*$")
COMPLETE_RE = re.compile(r"^(\s*-\s*)\[[xX]\](\s*)(.*?)\s*$")

PLAN_TEMPLATE = """# Implementation Plan

## Tasks

(No tasks yet - planning phase will populate this)

---
"""

SESSION_PLAN_TEMPLATE = """# Implementation Plan

## Session: {name}

{description}

## Overview

Add specifications to the specs folder, then run `ralph run` to generate
tasks from them and start building.

## Tasks

(No tasks yet - planning phase will populate this)

## Completed

(Completed tasks are marked with [x])
"""

PROGRESS_TEMPLATE = """# Ralph Progress Log{suffix}

## Codebase Patterns
(Add reusable patterns here)

---
"""


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def parse_tasks(plan_path: Path) -> list[PlanTask]:
    """Extract checklist tasks from a plan file.

    Args:
        plan_path: Path to the plan document

    Returns:
        Tasks in file order; empty if the file does not exist
    """
    if not plan_path.exists():
        return []

    tasks = []
    for line_number, line in enumerate(plan_path.read_text().splitlines()):
        match = PENDING_RE.match(line)
        if match:
            tasks.append(PlanTask(text=match.group(3), line_number=line_number))
            continue
        match = COMPLETE_RE.match(line)
        if match:
            text = match.group(3)
            tasks.append(
                PlanTask(
                    text=text,
                    line_number=line_number,
                    completed=True,
                    skipped=text.endswith(SKIPPED_MARKER),
                )
            )
    return tasks


def task_stats(plan_path: Path) -> TaskStats:
    """Count total, completed and pending tasks in a plan."""
    tasks = parse_tasks(plan_path)
    completed = sum(1 for t in tasks if t.completed)
    return TaskStats(
        total=len(tasks), completed=completed, pending=len(tasks) - completed
    )


def next_pending_task(plan_path: Path) -> PlanTask | None:
    """Return the first pending task, or None if nothing is pending."""
    for task in parse_tasks(plan_path):
        if not task.completed:
            return task
    return None


def completed_task_texts(plan_path: Path) -> list[str]:
    """Completed task descriptions in plan order."""
    return [t.text for t in parse_tasks(plan_path) if t.completed]


def mark_task_complete(
    plan_path: Path, task: PlanTask | str, skipped: bool = False
) -> bool:
    """Tick off a pending task in the plan.

    Only the first pending line with matching text is changed. Completed
    lines are never touched, so marking is monotonic and a task the agent
    already ticked off is left alone.

    Args:
        plan_path: Path to the plan document
        task: Task (or task text) to mark
        skipped: Append the (SKIPPED) marker to the line

    Returns:
        True if a line was changed, False if no pending line matched
    """
    text = task.text if isinstance(task, PlanTask) else task
    if not plan_path.exists():
        return False

    content = plan_path.read_text()
    lines = content.splitlines()

    # Prefer the recorded line if it still holds the same pending task
    candidates = list(range(len(lines)))
    if isinstance(task, PlanTask) and 0 <= task.line_number < len(lines):
        candidates.remove(task.line_number)
        candidates.insert(0, task.line_number)

    for index in candidates:
        match = PENDING_RE.match(lines[index])
        if not match or match.group(3) != text:
            continue

        new_text = f"{text} {SKIPPED_MARKER}" if skipped else text
        lines[index] = f"{match.group(1)}[x]{match.group(2) or ' '}{new_text}"
        trailing = "\n" if content.endswith("\n") else ""
        plan_path.write_text("\n".join(lines) + trailing)
        logger.debug("Marked task complete at line %d: %s", index + 1, new_text)
        return True

    return False


def ensure_plan_file(plan_path: Path) -> bool:
    """Create an empty plan if none exists.

    Returns:
        True if the file was created
    """
    if plan_path.exists():
        return False
    plan_path.parent.mkdir(parents=True, exist_ok=True)
    plan_path.write_text(PLAN_TEMPLATE + f"Created: {_now()}\n")
    logger.info("Created %s", plan_path.name)
    return True


def write_session_plan(plan_path: Path, name: str, description: str = "") -> None:
    """Write the initial plan for a newly created session."""
    plan_path.parent.mkdir(parents=True, exist_ok=True)
    plan_path.write_text(
        SESSION_PLAN_TEMPLATE.format(
            name=name, description=description or "(No description)"
        )
    )


def ensure_progress_file(progress_path: Path, name: str | None = None) -> bool:
    """Create the progress log if none exists.

    Returns:
        True if the file was created
    """
    if progress_path.exists():
        return False
    progress_path.parent.mkdir(parents=True, exist_ok=True)
    suffix = f" - {name}" if name else ""
    progress_path.write_text(
        PROGRESS_TEMPLATE.format(suffix=suffix) + f"Started: {_now()}\n"
    )
    logger.info("Created %s", progress_path.name)
    return True


def reset_plan(plan_path: Path) -> None:
    """Replace the plan with an empty one. Clears every task."""
    plan_path.parent.mkdir(parents=True, exist_ok=True)
    plan_path.write_text(PLAN_TEMPLATE + f"Created: {_now()}\n")
    logger.info("Reset %s", plan_path.name)


def reset_progress(progress_path: Path) -> None:
    progress_path.parent.mkdir(parents=True, exist_ok=True)
    progress_path.write_text(PROGRESS_TEMPLATE.format(suffix="") + f"Started: {_now()}\n")
    logger.info("Reset %s", progress_path.name)


def append_progress(progress_path: Path, line: str) -> None:
    """Append a timestamped line to the progress log, creating it if needed."""
    ensure_progress_file(progress_path)
    with open(progress_path, "a") as f:
        f.write(f"[{_now()}] {line}\n")
