"""Per-run statistics for agent calls."""

import time
from dataclasses import dataclass, field

from ralph.changes import FileChanges, GitSnapshot, changes_between

# Phase labels used for per-phase accounting, in display order
PHASE_AGENTS_UPDATE = "AgentsUpdate"
PHASE_SPEC_CREATION = "SpecCreation"
PHASE_PLANNING = "Planning"
PHASE_BUILDING = "Building"

PHASE_ORDER = (
    PHASE_AGENTS_UPDATE,
    PHASE_SPEC_CREATION,
    PHASE_PLANNING,
    PHASE_BUILDING,
)


@dataclass
class PhaseStats:
    calls: int = 0
    duration_seconds: float = 0.0


@dataclass
class SessionStats:
    """Counts agent calls and time spent for one `ralph run`.

    Attributes:
        started_at: Monotonic start time of the run
        calls_total: Agent calls made
        calls_successful: Calls that exited cleanly
        calls_failed: Calls that failed
        calls_cancelled: Calls interrupted by the user
        ai_seconds: Wall-clock time spent inside agent calls
        phases: Per-phase call counts and durations
        build_iterations: Build loop iterations completed
        git_start: Work tree snapshot taken when the run started
        git_end: Work tree snapshot taken when the run ended
    """

    started_at: float = field(default_factory=time.monotonic)
    calls_total: int = 0
    calls_successful: int = 0
    calls_failed: int = 0
    calls_cancelled: int = 0
    ai_seconds: float = 0.0
    phases: dict[str, PhaseStats] = field(default_factory=dict)
    build_iterations: int = 0
    git_start: GitSnapshot | None = None
    git_end: GitSnapshot | None = None

    def record_call(
        self,
        phase: str,
        duration_seconds: float,
        success: bool,
        cancelled: bool = False,
    ) -> None:
        self.calls_total += 1
        if cancelled:
            self.calls_cancelled += 1
        elif success:
            self.calls_successful += 1
        else:
            self.calls_failed += 1
        self.ai_seconds += duration_seconds

        phase_stats = self.phases.setdefault(phase, PhaseStats())
        phase_stats.calls += 1
        phase_stats.duration_seconds += duration_seconds

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def success_rate(self) -> float:
        if self.calls_total == 0:
            return 0.0
        return self.calls_successful / self.calls_total * 100

    @property
    def file_changes(self) -> FileChanges | None:
        """Work tree changes during the run, or None outside a git work tree."""
        if self.git_start is None or self.git_end is None:
            return None
        return changes_between(self.git_start, self.git_end)

    def phase_breakdown(self) -> list[tuple[str, PhaseStats]]:
        """Phases that ran, in display order."""
        return [(name, self.phases[name]) for name in PHASE_ORDER if name in self.phases]


def format_duration(seconds: float) -> str:
    """Format seconds as `1h 02m 03s`, `2m 03s` or `3s`."""
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"
