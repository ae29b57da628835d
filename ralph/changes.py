"""Working-tree change tracking for run summaries.

Takes a git snapshot when a run starts and another when it ends, and
reports the files created, modified and deleted in between together with
lines added and removed. Outside a git work tree (or without git) no
snapshot is taken and the summary leaves the section out.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class GitSnapshot:
    """State of the work tree at one moment.

    Attributes:
        status_lines: Lines of `git status --porcelain`
        lines_added: Added lines across staged, unstaged and untracked files
        lines_removed: Removed lines across staged and unstaged files
    """

    status_lines: frozenset[str] = frozenset()
    lines_added: int = 0
    lines_removed: int = 0


@dataclass
class FileChanges:
    created: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    lines_added: int = 0
    lines_removed: int = 0

    @property
    def files_changed(self) -> int:
        return len(self.created) + len(self.modified) + len(self.deleted)

    @property
    def is_empty(self) -> bool:
        return (
            self.files_changed == 0
            and self.lines_added == 0
            and self.lines_removed == 0
        )


def _git(root: Path, *args: str) -> str | None:
    """Run a git command in root, returning stdout or None on failure."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.debug("git %s unavailable: %s", " ".join(args), e)
        return None
    if result.returncode != 0:
        logger.debug("git %s failed: %s", " ".join(args), result.stderr.strip())
        return None
    return result.stdout


def parse_numstat(output: str) -> tuple[int, int]:
    """Sum `git diff --numstat` output into (added, removed).

    Binary files report `-` for both counts and are skipped.
    """
    added = removed = 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3 or not parts[0].isdigit() or not parts[1].isdigit():
            continue
        added += int(parts[0])
        removed += int(parts[1])
    return added, removed


def _count_lines(path: Path) -> int:
    try:
        with open(path, "rb") as f:
            return sum(1 for _ in f)
    except OSError:
        return 0


def snapshot(root: Path) -> GitSnapshot | None:
    """Capture the work tree state of root.

    Returns:
        GitSnapshot, or None if root is not inside a git work tree
    """
    status = _git(root, "status", "--porcelain")
    if status is None:
        return None

    added = removed = 0
    for args in (("diff", "--cached", "--numstat"), ("diff", "--numstat")):
        output = _git(root, *args) or ""
        diff_added, diff_removed = parse_numstat(output)
        added += diff_added
        removed += diff_removed

    # Untracked files count as fully added
    untracked = _git(root, "ls-files", "--others", "--exclude-standard") or ""
    for name in untracked.splitlines():
        if name:
            added += _count_lines(root / name)

    return GitSnapshot(
        status_lines=frozenset(line for line in status.splitlines() if line.strip()),
        lines_added=added,
        lines_removed=removed,
    )


def changes_between(start: GitSnapshot, end: GitSnapshot) -> FileChanges:
    """Files and lines that changed between two snapshots.

    Status lines already present at the start are not counted again. Line
    counts are the growth since the start and never go negative.
    """
    changes = FileChanges(
        lines_added=max(0, end.lines_added - start.lines_added),
        lines_removed=max(0, end.lines_removed - start.lines_removed),
    )
    for line in sorted(end.status_lines - start.status_lines, key=lambda s: s[3:]):
        code, name = line[:2], line[3:]
        if code == "??" or code.startswith("A"):
            changes.created.append(name)
        elif "D" in code:
            changes.deleted.append(name)
        else:
            changes.modified.append(name)
    return changes
