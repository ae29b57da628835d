"""Tests for data models."""

from datetime import datetime, timezone
from pathlib import Path

from ralph.models import (
    Checkpoint,
    ErrorClassification,
    ErrorKind,
    IterationResult,
    Phase,
    Session,
    SourceKind,
)


class TestCheckpoint:
    """Tests for Checkpoint serialization."""

    def test_stamp_sets_both_timestamps(self):
        checkpoint = Checkpoint(session_id="s", phase=Phase.IDLE)

        checkpoint.stamp(datetime(2026, 3, 1, 8, 30, 0, tzinfo=timezone.utc))

        assert checkpoint.timestamp_utc == "2026-03-01T08:30:00+00:00"
        assert len(checkpoint.timestamp) == len("2026-03-01 08:30:00")

    def test_from_dict_fills_defaults(self):
        checkpoint = Checkpoint.from_dict({"sessionId": "s", "phase": "Planning"})

        assert checkpoint.phase == Phase.PLANNING
        assert checkpoint.iteration == 0
        assert checkpoint.completed_tasks == []
        assert checkpoint.error is None
        assert checkpoint.can_resume is True

    def test_error_payload_round_trip(self):
        payload = ErrorClassification(
            kind=ErrorKind.CRITICAL, message="Down", resumable=True, raw="502"
        ).to_payload()
        checkpoint = Checkpoint(session_id="s", phase=Phase.ERROR, error=payload)

        restored = Checkpoint.from_dict(checkpoint.to_dict())

        assert restored.error == payload


class TestSession:
    def test_paths_and_round_trip(self, tmp_path: Path):
        session = Session(
            id="auth-20260115-123456",
            name="Auth",
            directory=tmp_path,
            specs_source=SourceKind.CUSTOM,
            specs_folder="docs/specs",
        )

        assert session.plan_file == tmp_path / "IMPLEMENTATION_PLAN.md"
        assert session.progress_file == tmp_path / "progress.txt"
        assert Session.from_dict(session.to_dict(), tmp_path) == session

    def test_from_dict_defaults(self, tmp_path: Path):
        session = Session.from_dict({"id": "legacy"}, tmp_path)

        assert session.name == "legacy"
        assert session.specs_source == SourceKind.SESSION
        assert session.references_enabled is False


class TestIterationResult:
    def test_error_text_falls_back_to_output(self):
        assert IterationResult(success=False, output="boom").error_text == "boom"
        assert (
            IterationResult(success=False, output="o", error="e").error_text == "e"
        )

    def test_halting_flags(self):
        critical = IterationResult(
            success=False,
            classification=ErrorClassification(
                kind=ErrorKind.CRITICAL, message="", resumable=True
            ),
        )
        unknown = IterationResult(
            success=False,
            classification=ErrorClassification(
                kind=ErrorKind.UNKNOWN, message="", resumable=True
            ),
        )

        assert critical.halting and critical.critical and not critical.fatal
        assert not unknown.halting
        assert not IterationResult(success=True).halting
