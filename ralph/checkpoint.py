"""Checkpoint persistence for session resumability.

Provides CheckpointStore, which saves and loads one Checkpoint per session as
JSON under the session directory. Writes are atomic (temporary sibling file
then os.replace) so a crash or interrupt never leaves a half-written record.
"""

import json
import logging
import os
from pathlib import Path

from ralph.models import Checkpoint, Phase

logger = logging.getLogger(__name__)

CHECKPOINT_FILE_NAME = "checkpoint.json"


class CheckpointStore:
    """Save/load checkpoints under `<sessions_root>/<session_id>/`.

    Usage:
        store = CheckpointStore(config.sessions_root)
        store.save(Checkpoint(session_id=sid, phase=Phase.BUILDING).stamp())
        checkpoint = store.load(sid)
    """

    def __init__(self, sessions_root: Path) -> None:
        self.sessions_root = sessions_root

    def path_for(self, session_id: str) -> Path:
        return self.sessions_root / session_id / CHECKPOINT_FILE_NAME

    def save(self, checkpoint: Checkpoint) -> bool:
        """Persist a checkpoint atomically.

        Creates the session directory if needed. Serialisation uses sorted
        keys and a fixed indent, so saving the same checkpoint twice produces
        byte-identical files.

        Args:
            checkpoint: Checkpoint to write

        Returns:
            True on success, False if the write failed (the failure is logged)
        """
        path = self.path_for(checkpoint.session_id)
        tmp_path = path.with_name(path.name + ".tmp")
        payload = json.dumps(checkpoint.to_dict(), indent=2, sort_keys=True) + "\n"

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error("Failed to save checkpoint for %s: %s", checkpoint.session_id, e)
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
            return False

        logger.debug(
            "Saved checkpoint for %s (phase=%s, iteration=%d)",
            checkpoint.session_id,
            checkpoint.phase.value,
            checkpoint.iteration,
        )
        return True

    def load(self, session_id: str) -> Checkpoint | None:
        """Load the checkpoint for a session.

        Args:
            session_id: Session to load

        Returns:
            Checkpoint if present and readable, None if absent or corrupt
        """
        path = self.path_for(session_id)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Checkpoint.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, e)
            return None

    def delete(self, session_id: str) -> None:
        """Remove a session's checkpoint. Safe to call if none exists."""
        path = self.path_for(session_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not delete checkpoint %s: %s", path, e)

    def can_resume(self, session_id: str) -> bool:
        """Whether a session has a checkpoint that work can continue from.

        False when there is no checkpoint, when the session reached Complete,
        or when it stopped in Error with a non-resumable cause.
        """
        checkpoint = self.load(session_id)
        if checkpoint is None:
            return False
        if checkpoint.phase == Phase.COMPLETE:
            return False
        if checkpoint.phase == Phase.ERROR and not checkpoint.can_resume:
            return False
        return True

    def resume_iteration(self, session_id: str) -> int:
        """Iteration number a resumed build loop starts at."""
        checkpoint = self.load(session_id)
        if checkpoint is None:
            return 1
        return checkpoint.iteration + 1
