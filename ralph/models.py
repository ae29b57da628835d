"""Data models for ralph.

Defines the enums and dataclasses shared by the orchestration engine:
sessions, plan tasks, checkpoints, error classifications and the results
of individual agent invocations. Persisted records convert to and from
their camelCase JSON form via to_dict()/from_dict().
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

CHECKPOINT_VERSION = 1

PLAN_FILE_NAME = "IMPLEMENTATION_PLAN.md"
PROGRESS_FILE_NAME = "progress.txt"


class Phase(str, Enum):
    """Lifecycle phase of a session."""

    IDLE = "Idle"
    SPEC_CREATION = "SpecCreation"
    PLANNING = "Planning"
    BUILDING = "Building"
    COMPLETE = "Complete"
    ERROR = "Error"


class ErrorKind(str, Enum):
    """Classification kinds for raw agent errors.

    - FATAL: needs out-of-band user action (quota, billing, credentials)
    - TRANSIENT: network-level hiccup, retried with backoff
    - CRITICAL: service-side outage (5xx), halts the loop
    - UNKNOWN: no rule matched, surfaced for a human to judge
    """

    FATAL = "Fatal"
    TRANSIENT = "Transient"
    CRITICAL = "Critical"
    UNKNOWN = "Unknown"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class SourceKind(str, Enum):
    """Where a session reads its specs (or references) from."""

    SESSION = "session"
    GLOBAL = "global"
    CUSTOM = "custom"
    NONE = "none"


class LoopStatus(str, Enum):
    """Terminal status of a Build Iteration Loop run."""

    ALL_COMPLETE = "all_complete"
    LIMIT_REACHED = "limit_reached"
    CANCELLED = "cancelled"
    HALTED = "halted"
    EXHAUSTED = "exhausted"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ErrorPayload:
    """Error information embedded in a checkpoint.

    The kind is restricted to ErrorKind, so a payload is always one of the
    four classification kinds rather than an open-ended map.
    """

    kind: ErrorKind
    message: str
    resumable: bool
    raw: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "resumable": self.resumable,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErrorPayload":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            resumable=bool(data.get("resumable", False)),
            raw=data.get("raw", ""),
        )


@dataclass(frozen=True)
class ErrorClassification:
    """Result of classifying one raw error string.

    Attributes:
        kind: Taxonomy entry the error falls into
        message: Human-readable explanation
        resumable: Whether the session can safely continue later
        retry_after: Suggested delay in seconds before retrying, if any
        raw: The original error text
    """

    kind: ErrorKind
    message: str
    resumable: bool
    retry_after: float | None = None
    raw: str = ""

    @property
    def is_retryable(self) -> bool:
        """Only transient errors are retried automatically."""
        return self.kind == ErrorKind.TRANSIENT

    def to_payload(self) -> ErrorPayload:
        """Convert to the form stored inside a checkpoint."""
        return ErrorPayload(
            kind=self.kind,
            message=self.message,
            resumable=self.resumable,
            raw=self.raw,
        )


@dataclass
class PlanTask:
    """One checklist line of a plan document.

    Attributes:
        text: Task description with the checkbox prefix stripped
        line_number: Zero-based line index inside the plan file
        completed: True for `- [x]` lines
        skipped: True when the completed line carries the (SKIPPED) marker
    """

    text: str
    line_number: int
    completed: bool = False
    skipped: bool = False


@dataclass(frozen=True)
class TaskStats:
    """Task counts read from a plan document."""

    total: int = 0
    completed: int = 0
    pending: int = 0


@dataclass
class Checkpoint:
    """Snapshot of orchestration progress for one session.

    A checkpoint is written only after a unit of work completed or after a
    phase boundary was entered, so the latest checkpoint is always safe to
    resume from. `iteration` is the number of the last *completed* iteration.
    """

    session_id: str
    phase: Phase
    iteration: int = 0
    current_task: str = ""
    completed_tasks: list[str] = field(default_factory=list)
    timestamp: str = ""
    timestamp_utc: str = ""
    error: ErrorPayload | None = None
    can_resume: bool = True
    is_completed_state: bool = False
    version: int = CHECKPOINT_VERSION

    def stamp(self, now: datetime | None = None) -> "Checkpoint":
        """Fill in both timestamps from a single instant.

        Args:
            now: Aware or naive instant to use (defaults to the current time)

        Returns:
            self, for chaining
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.astimezone()
        self.timestamp = now.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        self.timestamp_utc = now.astimezone(timezone.utc).isoformat()
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "sessionId": self.session_id,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "currentTask": self.current_task,
            "completedTasks": list(self.completed_tasks),
            "timestamp": self.timestamp,
            "timestampUtc": self.timestamp_utc,
            "error": self.error.to_dict() if self.error else None,
            "canResume": self.can_resume,
            "isCompletedState": self.is_completed_state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        """Create from the JSON form.

        Missing optional fields fall back to their defaults.
        """
        error = data.get("error")
        return cls(
            version=int(data.get("version", CHECKPOINT_VERSION)),
            session_id=data["sessionId"],
            phase=Phase(data["phase"]),
            iteration=int(data.get("iteration", 0)),
            current_task=data.get("currentTask", ""),
            completed_tasks=list(data.get("completedTasks", [])),
            timestamp=data.get("timestamp", ""),
            timestamp_utc=data.get("timestampUtc", ""),
            error=ErrorPayload.from_dict(error) if error else None,
            can_resume=bool(data.get("canResume", True)),
            is_completed_state=bool(data.get("isCompletedState", False)),
        )


@dataclass
class Session:
    """An isolated unit of orchestrated work.

    Each session owns a directory holding its descriptor, plan document,
    progress log, checkpoint and (for session-scoped specs) a specs folder.
    `directory` is resolved by the registry and is not persisted.
    """

    id: str
    name: str
    directory: Path
    description: str = ""
    created: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    specs_source: SourceKind = SourceKind.SESSION
    specs_folder: str | None = None
    references_source: SourceKind = SourceKind.NONE
    references_folder: str | None = None
    references_enabled: bool = False

    @property
    def plan_file(self) -> Path:
        return self.directory / PLAN_FILE_NAME

    @property
    def progress_file(self) -> Path:
        return self.directory / PROGRESS_FILE_NAME

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created": self.created,
            "status": self.status.value,
            "specsSource": self.specs_source.value,
            "specsFolder": self.specs_folder,
            "referencesSource": self.references_source.value,
            "referencesFolder": self.references_folder,
            "referencesEnabled": self.references_enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], directory: Path) -> "Session":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            directory=directory,
            description=data.get("description", ""),
            created=data.get("created", ""),
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
            specs_source=SourceKind(
                data.get("specsSource", SourceKind.SESSION.value)
            ),
            specs_folder=data.get("specsFolder"),
            references_source=SourceKind(
                data.get("referencesSource", SourceKind.NONE.value)
            ),
            references_folder=data.get("referencesFolder"),
            references_enabled=bool(data.get("referencesEnabled", False)),
        )


@dataclass
class IterationResult:
    """Outcome of one unit of work (one external-agent invocation).

    Attributes:
        success: Agent process exited cleanly
        cancelled: User interrupted the call
        output: Combined stdout/stderr of the agent
        duration_seconds: Wall-clock time of the last attempt
        exit_code: Process exit status (None if it never ran)
        error: Raw error text used for classification
        classification: Attached by the retry controller on failure
        attempts: Number of attempts the retry controller made
    """

    success: bool
    cancelled: bool = False
    output: str = ""
    duration_seconds: float = 0.0
    exit_code: int | None = None
    error: str = ""
    classification: ErrorClassification | None = None
    attempts: int = 1

    @property
    def fatal(self) -> bool:
        return (
            self.classification is not None
            and self.classification.kind == ErrorKind.FATAL
        )

    @property
    def critical(self) -> bool:
        return (
            self.classification is not None
            and self.classification.kind == ErrorKind.CRITICAL
        )

    @property
    def halting(self) -> bool:
        """Fatal and Critical failures stop the loop without a retry."""
        return self.fatal or self.critical

    @property
    def error_text(self) -> str:
        """Text to classify: explicit error, falling back to output."""
        return self.error or self.output


@dataclass
class LoopOutcome:
    """Result of a Build Iteration Loop run.

    Attributes:
        status: Why the loop stopped
        iterations: Iterations completed during this run
        last_iteration: Number of the last completed iteration overall
        last_task: Task the loop was working on when it stopped
        classification: Error classification for halted/exhausted outcomes
        result: The final IterationResult, if any
    """

    status: LoopStatus
    iterations: int = 0
    last_iteration: int = 0
    last_task: str | None = None
    classification: ErrorClassification | None = None
    result: IterationResult | None = None
