"""Lock manager for session execution.

Provides PID-based locking so two ralph processes never drive the same
session at once.
"""

import os
from pathlib import Path
from types import TracebackType

from ralph.errors import SessionLockedError

LOCK_FILE_NAME = "session.lock"


class SessionLock:
    """PID-based lock for one session.

    The lock is a file in the session directory holding the owner's PID.
    Locks left behind by dead processes are reclaimed on acquire.

    Usage:
        with SessionLock(session.directory, session.id):
            # Run the session - lock is held
            ...

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, session_dir: Path, session_id: str) -> None:
        self.session_id = session_id
        self.lock_path = session_dir / LOCK_FILE_NAME

    def acquire(self) -> bool:
        """Try to acquire the lock.

        Returns:
            True if lock acquired, False if held by another running process
        """
        if self.lock_path.exists():
            holder_pid = self.get_holder_pid()
            if (
                holder_pid is not None
                and holder_pid != os.getpid()
                and self._is_process_running(holder_pid)
            ):
                return False
            # Stale lock or invalid content - can acquire

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock. Safe to call even if lock doesn't exist."""
        self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        if not self.lock_path.exists():
            return None

        try:
            return int(self.lock_path.read_text().strip())
        except ValueError:
            return None

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 only checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but belongs to another user
            return True

    def __enter__(self) -> "SessionLock":
        """Acquire lock on context entry.

        Raises:
            SessionLockedError: If lock is already held by a running process
        """
        if not self.acquire():
            raise SessionLockedError(self.session_id, self.get_holder_pid())
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
