"""Tests for the session lock."""

import os
from pathlib import Path

import pytest

from ralph.errors import SessionLockedError
from ralph.lock import LOCK_FILE_NAME, SessionLock


class TestSessionLockAcquire:
    """Tests for SessionLock.acquire()."""

    def test_acquire_creates_lock_file_with_pid(self, tmp_path: Path) -> None:
        lock = SessionLock(tmp_path, "auth-20260115-123456")

        assert lock.acquire() is True
        assert (tmp_path / LOCK_FILE_NAME).read_text().strip() == str(os.getpid())

    def test_acquire_creates_missing_session_dir(self, tmp_path: Path) -> None:
        lock = SessionLock(tmp_path / "sessions" / "new", "new")

        assert lock.acquire() is True
        assert lock.lock_path.exists()

    def test_acquire_fails_when_held_by_another_running_process(
        self, tmp_path: Path
    ) -> None:
        """The parent of the test process is alive and is not us."""
        (tmp_path / LOCK_FILE_NAME).write_text(str(os.getppid()))

        lock = SessionLock(tmp_path, "busy")

        assert lock.acquire() is False
        assert lock.get_holder_pid() == os.getppid()

    def test_acquire_reclaims_stale_lock(self, tmp_path: Path) -> None:
        lock_file = tmp_path / LOCK_FILE_NAME
        # PID far beyond the usual range
        lock_file.write_text("99999999")

        lock = SessionLock(tmp_path, "stale")

        assert lock.acquire() is True
        assert lock_file.read_text().strip() == str(os.getpid())

    def test_acquire_ignores_invalid_content(self, tmp_path: Path) -> None:
        (tmp_path / LOCK_FILE_NAME).write_text("not_a_pid")

        assert SessionLock(tmp_path, "garbled").acquire() is True


class TestSessionLockRelease:
    def test_release_removes_lock_file(self, tmp_path: Path) -> None:
        lock = SessionLock(tmp_path, "s")
        lock.acquire()

        lock.release()

        assert not lock.lock_path.exists()

    def test_release_without_lock_is_safe(self, tmp_path: Path) -> None:
        SessionLock(tmp_path, "s").release()


class TestSessionLockContextManager:
    """Tests for using SessionLock with `with`."""

    def test_context_manager_releases_on_exit(self, tmp_path: Path) -> None:
        with SessionLock(tmp_path, "s") as lock:
            assert lock.lock_path.exists()

        assert not (tmp_path / LOCK_FILE_NAME).exists()

    def test_context_manager_releases_on_exception(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError):
            with SessionLock(tmp_path, "s"):
                raise RuntimeError("boom")

        assert not (tmp_path / LOCK_FILE_NAME).exists()

    def test_context_manager_raises_when_locked(self, tmp_path: Path) -> None:
        (tmp_path / LOCK_FILE_NAME).write_text(str(os.getppid()))

        with pytest.raises(SessionLockedError, match="already running") as exc_info:
            with SessionLock(tmp_path, "busy"):
                pass

        assert exc_info.value.session_id == "busy"
        assert exc_info.value.pid == os.getppid()
        # The other holder's lock stays in place
        assert (tmp_path / LOCK_FILE_NAME).exists()
