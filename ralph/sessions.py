"""Session registry.

Each session is an isolated unit of work stored in
`<sessions_root>/<session-id>/` with its own descriptor, plan document,
progress log and checkpoint. The active session is tracked by a single
pointer file holding its id; all reads and writes of that pointer go
through SessionRegistry.get_active()/set_active().
"""

import json
import logging
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable

from ralph import plan
from ralph.config import RalphConfig
from ralph.errors import RalphError, SessionExistsError, SessionNotFoundError
from ralph.models import Session, SessionStatus, SourceKind, TaskStats

logger = logging.getLogger(__name__)

SESSION_FILE_NAME = "session.json"


def slugify(name: str) -> str:
    """Lowercase a name and collapse anything non-alphanumeric into dashes."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "session"


class SessionRegistry:
    """Create, list, select and remove sessions.

    Args:
        config: Ralph configuration supplying the session and specs paths
        clock: Returns the current time; replaceable in tests
    """

    def __init__(
        self,
        config: RalphConfig,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.sessions_root = config.sessions_root
        self.active_file = config.active_session_file
        self._clock = clock

    def _directory(self, session_id: str) -> Path:
        return self.sessions_root / session_id

    def _write(self, session: Session) -> None:
        session.directory.mkdir(parents=True, exist_ok=True)
        with open(session.directory / SESSION_FILE_NAME, "w") as f:
            json.dump(session.to_dict(), f, indent=2)
            f.write("\n")

    def exists(self, session_id: str) -> bool:
        if not session_id:
            return False
        return (self._directory(session_id) / SESSION_FILE_NAME).exists()

    def create(
        self,
        name: str,
        description: str = "",
        specs_source: SourceKind = SourceKind.SESSION,
        specs_folder: str | None = None,
    ) -> Session:
        """Create a new session and lay out its directory.

        Args:
            name: Human-readable session name (slugified into the id)
            description: Optional description written into the plan
            specs_source: Where the session reads specs from
            specs_folder: Folder for SourceKind.CUSTOM, relative to the project

        Returns:
            The created Session

        Raises:
            SessionExistsError: If a session with the generated id exists
            RalphError: If a custom specs source has no folder
        """
        if specs_source == SourceKind.CUSTOM and not specs_folder:
            raise RalphError("A custom specs source needs a specs folder")

        now = self._clock()
        session_id = f"{slugify(name)}-{now.strftime('%Y%m%d-%H%M%S')}"
        directory = self._directory(session_id)
        if directory.exists():
            raise SessionExistsError(session_id)

        session = Session(
            id=session_id,
            name=name,
            directory=directory,
            description=description,
            created=now.astimezone().isoformat(timespec="seconds"),
            specs_source=specs_source,
            specs_folder=specs_folder if specs_source == SourceKind.CUSTOM else None,
        )

        self._write(session)
        plan.write_session_plan(session.plan_file, name, description)
        plan.ensure_progress_file(session.progress_file, name=name)
        if specs_source == SourceKind.SESSION:
            (directory / "specs").mkdir(exist_ok=True)

        logger.info("Created session %s", session_id)
        return session

    def get(self, session_id: str) -> Session | None:
        """Load a session by id, or None if it does not exist."""
        if not self.exists(session_id):
            return None

        directory = self._directory(session_id)
        with open(directory / SESSION_FILE_NAME) as f:
            data = json.load(f)
        return Session.from_dict(data, directory)

    def require(self, session_id: str) -> Session:
        """Load a session by id.

        Raises:
            SessionNotFoundError: If no such session exists
        """
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list(self) -> list[Session]:
        """All sessions, oldest first."""
        if not self.sessions_root.exists():
            return []

        sessions = []
        for child in sorted(self.sessions_root.iterdir()):
            if not (child / SESSION_FILE_NAME).exists():
                continue
            try:
                sessions.append(self.require(child.name))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Skipping unreadable session %s: %s", child.name, e)
        return sorted(sessions, key=lambda s: (s.created, s.id))

    def update(self, session: Session) -> None:
        """Persist selector changes (specs/references source, status)."""
        if not self.exists(session.id):
            raise SessionNotFoundError(session.id)
        self._write(session)

    def archive(self, session_id: str) -> Session:
        session = self.require(session_id)
        session.status = SessionStatus.ARCHIVED
        self._write(session)
        logger.info("Archived session %s", session_id)
        return session

    def set_active(self, session_id: str) -> None:
        """Point the active-session pointer at a session.

        Raises:
            SessionNotFoundError: If the id is unknown. The pointer is left
                untouched in that case.
        """
        if not self.exists(session_id):
            raise SessionNotFoundError(session_id)
        self.active_file.parent.mkdir(parents=True, exist_ok=True)
        self.active_file.write_text(session_id)

    def get_active(self) -> Session | None:
        """The active session, or None if unset or stale."""
        if not self.active_file.exists():
            return None
        session_id = self.active_file.read_text().strip()
        return self.get(session_id)

    def clear_active(self) -> None:
        self.active_file.unlink(missing_ok=True)

    def remove(self, session_id: str) -> None:
        """Delete a session directory.

        Clears the active pointer if it referenced this session.

        Raises:
            SessionNotFoundError: If no such session exists
        """
        if not self.exists(session_id):
            raise SessionNotFoundError(session_id)

        if self.active_file.exists() and self.active_file.read_text().strip() == session_id:
            self.clear_active()

        shutil.rmtree(self._directory(session_id))
        logger.info("Removed session %s", session_id)

    def specs_dir(self, session: Session) -> Path | None:
        """Resolve the folder a session reads specs from."""
        if session.specs_source == SourceKind.SESSION:
            return session.directory / "specs"
        if session.specs_source == SourceKind.GLOBAL:
            return self.config.global_specs_dir
        if session.specs_source == SourceKind.CUSTOM and session.specs_folder:
            folder = Path(session.specs_folder)
            return folder if folder.is_absolute() else self.config.project_root / folder
        return None

    def user_specs(self, session: Session) -> "list[Path]":
        """Markdown specs for a session, excluding `_`-prefixed templates."""
        folder = self.specs_dir(session)
        if folder is None or not folder.is_dir():
            return []
        return sorted(
            p
            for p in folder.glob("*.md")
            if p.is_file() and not p.name.startswith("_")
        )

    def has_specs(self, session: Session) -> bool:
        return bool(self.user_specs(session))

    def task_stats(self, session: Session) -> TaskStats:
        return plan.task_stats(session.plan_file)
