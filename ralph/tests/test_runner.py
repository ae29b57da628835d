"""Tests for the session runner and run_session()."""

import os
from unittest.mock import patch

import pytest

from ralph.agent import AGENTS_UPDATED_SIGNAL, PLANNING_COMPLETE_SIGNAL
from ralph.changes import GitSnapshot
from ralph.context import EngineContext
from ralph.errors import RalphError, SessionLockedError
from ralph.lock import LOCK_FILE_NAME
from ralph.loop import Decision
from ralph.memory import MemoryStore
from ralph.models import Checkpoint, ErrorKind, IterationResult, Phase, Session
from ralph.runner import RunResult, RunStatus, SessionRunner, run_session
from ralph.tests.helpers import PLAN_AB, ScriptedInvoker, failed, ok


def add_spec(session: Session, name: str = "login.md") -> None:
    (session.directory / "specs" / name).write_text("# Login\n\nUsers can log in.\n")


def planner_writes(session: Session, content: str = PLAN_AB):
    def plan_tasks(prompt: str) -> IterationResult:
        session.plan_file.write_text(content)
        return ok(PLANNING_COMPLETE_SIGNAL)

    return plan_tasks


def make_runner(
    ctx: EngineContext, session: Session, script: list, decide=None
) -> tuple[SessionRunner, ScriptedInvoker]:
    invoker = ScriptedInvoker(script)
    return SessionRunner(ctx, session, invoker=invoker, decide=decide), invoker


@pytest.mark.usefixtures("agents_dir")
class TestAutoMode:
    """Tests for the default auto mode."""

    def test_no_specs_stops_at_spec_creation(
        self, ctx: EngineContext, session: Session
    ) -> None:
        runner, invoker = make_runner(ctx, session, [ok(AGENTS_UPDATED_SIGNAL)])

        result = runner.run()

        assert result.status == RunStatus.NEEDS_SPECS
        assert invoker.phases == ["AgentsUpdate"]
        assert ctx.store.load(session.id).phase == Phase.SPEC_CREATION
        assert result.exit_code(non_interactive=True) == 0

    def test_plans_then_builds_to_completion(
        self, ctx: EngineContext, session: Session
    ) -> None:
        add_spec(session)
        runner, invoker = make_runner(
            ctx, session, [ok(), planner_writes(session), ok(), ok()]
        )

        result = runner.run()

        assert result.status == RunStatus.COMPLETE
        assert invoker.phases == ["AgentsUpdate", "Planning", "Building", "Building"]
        assert (result.total, result.pending) == (2, 0)
        checkpoint = ctx.store.load(session.id)
        assert checkpoint.phase == Phase.COMPLETE
        assert checkpoint.iteration == 2

    def test_pending_tasks_skip_planning(
        self, ctx: EngineContext, session: Session
    ) -> None:
        session.plan_file.write_text(PLAN_AB)
        runner, invoker = make_runner(ctx, session, [ok(), ok(), ok()])

        result = runner.run()

        assert result.status == RunStatus.COMPLETE
        assert invoker.phases == ["AgentsUpdate", "Building", "Building"]

    def test_agents_update_failure_is_not_fatal(
        self, ctx: EngineContext, session: Session
    ) -> None:
        session.plan_file.write_text(PLAN_AB)
        runner, _ = make_runner(ctx, session, [failed("segfault"), ok(), ok()])

        assert runner.run().status == RunStatus.COMPLETE

    def test_agents_update_quota_error_halts(
        self, ctx: EngineContext, session: Session
    ) -> None:
        runner, invoker = make_runner(ctx, session, [failed("insufficient_quota")])

        result = runner.run()

        assert result.status == RunStatus.HALTED
        assert len(invoker.prompts) == 1
        assert ctx.store.load(session.id).phase == Phase.ERROR

    def test_completed_plan_is_replanned_when_specs_exist(
        self, ctx: EngineContext, session: Session
    ) -> None:
        add_spec(session)
        session.plan_file.write_text("- [x] Task A\n")
        new_work = "- [x] Task A\n- [ ] Task C\n"
        runner, invoker = make_runner(
            ctx, session, [ok(), planner_writes(session, new_work), ok()]
        )

        result = runner.run()

        assert result.status == RunStatus.COMPLETE
        assert "Task C" in invoker.prompts[-1]

    def test_completed_plan_without_new_tasks(
        self, ctx: EngineContext, session: Session
    ) -> None:
        add_spec(session)
        session.plan_file.write_text("- [x] Task A\n")
        runner, _ = make_runner(ctx, session, [ok(), ok()])

        result = runner.run()

        assert result.status == RunStatus.COMPLETE
        assert result.message == "All 1 tasks already completed!"

    def test_plan_emptied_by_hand_while_building(
        self, ctx: EngineContext, session: Session
    ) -> None:
        """A Building checkpoint with an emptied plan falls back to specs."""
        ctx.store.save(
            Checkpoint(session_id=session.id, phase=Phase.BUILDING, iteration=3).stamp()
        )
        runner, invoker = make_runner(ctx, session, [ok()])

        result = runner.run()

        assert result.status == RunStatus.NEEDS_SPECS
        assert invoker.phases == ["AgentsUpdate"]
        checkpoint = ctx.store.load(session.id)
        assert checkpoint.phase == Phase.SPEC_CREATION
        assert checkpoint.iteration == 3

    def test_prompts_name_session_files(
        self, ctx: EngineContext, session: Session
    ) -> None:
        session.plan_file.write_text("- [ ] Task A\n")
        runner, invoker = make_runner(ctx, session, [ok(), ok()])

        runner.run()

        build_prompt = invoker.prompts[-1]
        assert build_prompt.startswith("You are the build agent.")
        assert "description: build" not in build_prompt
        assert str(session.plan_file) in build_prompt
        assert str(session.directory / "specs") in build_prompt
        assert str(ctx.config.ralph_dir / "memory.md") in build_prompt
        assert (ctx.config.ralph_dir / "memory.md").exists()

    def test_disabled_memory_is_left_out_of_prompts(
        self, ctx: EngineContext, session: Session
    ) -> None:
        MemoryStore(ctx.config.ralph_dir).set_enabled(False)
        session.plan_file.write_text("- [ ] Task A\n")
        runner, invoker = make_runner(ctx, session, [ok(), ok()])

        runner.run()

        assert all("Project memory" not in prompt for prompt in invoker.prompts)


@pytest.mark.usefixtures("agents_dir")
class TestModes:
    """Tests for plan, build, agents and spec modes."""

    def test_plan_mode_without_specs(self, ctx: EngineContext, session: Session) -> None:
        runner, invoker = make_runner(ctx, session, [])

        result = runner.run("plan")

        assert result.status == RunStatus.NEEDS_SPECS
        assert invoker.prompts == []

    def test_plan_mode_creates_tasks(self, ctx: EngineContext, session: Session) -> None:
        add_spec(session)
        runner, invoker = make_runner(ctx, session, [planner_writes(session)])

        result = runner.run("plan")

        assert result.status == RunStatus.PLANNED
        assert result.pending == 2
        assert invoker.phases == ["Planning"]

    def test_planning_without_tasks(self, ctx: EngineContext, session: Session) -> None:
        add_spec(session)
        runner, _ = make_runner(ctx, session, [ok()])

        result = runner.run("plan")

        assert result.status == RunStatus.NO_TASKS

    def test_build_mode_without_tasks(self, ctx: EngineContext, session: Session) -> None:
        runner, _ = make_runner(ctx, session, [])

        result = runner.run("build")

        assert result.status == RunStatus.NO_TASKS
        assert "Run planning first" in result.message

    def test_build_mode_limit(self, ctx: EngineContext, session: Session) -> None:
        session.plan_file.write_text(PLAN_AB)
        runner, _ = make_runner(ctx, session, [ok()])

        result = runner.run("build", max_iterations=1)

        assert result.status == RunStatus.LIMIT_REACHED
        assert result.pending == 1
        assert result.exit_code(non_interactive=True) == 1
        assert result.exit_code(non_interactive=False) == 0

    def test_agents_mode(self, ctx: EngineContext, session: Session) -> None:
        runner, invoker = make_runner(ctx, session, [ok(AGENTS_UPDATED_SIGNAL)])

        result = runner.run("agents")

        assert result.status == RunStatus.AGENTS_UPDATED
        assert invoker.phases == ["AgentsUpdate"]

    def test_agents_mode_failure_is_reported(
        self, ctx: EngineContext, session: Session
    ) -> None:
        runner, _ = make_runner(ctx, session, [failed("segfault")])

        assert runner.run("agents").status == RunStatus.EXHAUSTED

    def test_spec_mode_sends_request(self, ctx: EngineContext, session: Session) -> None:
        def write_spec(prompt: str) -> IterationResult:
            add_spec(session)
            return ok()

        runner, invoker = make_runner(ctx, session, [write_spec])

        result = runner.run("spec", spec_request="OAuth login with GitHub")

        assert result.status == RunStatus.SPEC_CREATED
        assert "## REQUEST" in invoker.prompts[0]
        assert "OAuth login with GitHub" in invoker.prompts[0]
        assert ctx.store.load(session.id).phase == Phase.SPEC_CREATION

    @pytest.mark.parametrize("phase", [Phase.BUILDING, Phase.COMPLETE])
    def test_spec_mode_from_later_phase(
        self, ctx: EngineContext, session: Session, phase: Phase
    ) -> None:
        """A new spec can be added mid-build or after completion, then replanned."""
        session.plan_file.write_text("- [x] Task A\n")
        ctx.store.save(Checkpoint(session_id=session.id, phase=phase).stamp())

        def write_spec(prompt: str) -> IterationResult:
            add_spec(session, "search.md")
            return ok()

        runner, _ = make_runner(ctx, session, [write_spec])

        result = runner.run("spec", spec_request="Full-text search")

        assert result.status == RunStatus.SPEC_CREATED
        assert ctx.store.load(session.id).phase == Phase.SPEC_CREATION

    def test_spec_mode_needs_request(self, ctx: EngineContext, session: Session) -> None:
        runner, _ = make_runner(ctx, session, [])

        with pytest.raises(RalphError):
            runner.run("spec")

    def test_unknown_mode(self, ctx: EngineContext, session: Session) -> None:
        runner, _ = make_runner(ctx, session, [])

        with pytest.raises(RalphError, match="Unknown mode"):
            runner.run("turbo")

    def test_delegate_needs_agent_cli(self, ctx: EngineContext, session: Session) -> None:
        session.plan_file.write_text(PLAN_AB)
        runner, _ = make_runner(ctx, session, [])

        with pytest.raises(RalphError, match="Delegate"):
            runner.run(delegate=True)


class TestMissingAgents:
    def test_agents_mode_requires_updater(
        self, ctx: EngineContext, session: Session
    ) -> None:
        runner, _ = make_runner(ctx, session, [])

        with pytest.raises(RalphError, match="Agents updater not found"):
            runner.run("agents")

    def test_auto_mode_tolerates_missing_updater(
        self, ctx: EngineContext, session: Session
    ) -> None:
        runner, invoker = make_runner(ctx, session, [])

        result = runner.run()

        assert result.status == RunStatus.NEEDS_SPECS
        assert invoker.prompts == []


@pytest.mark.usefixtures("agents_dir")
class TestErrorRecovery:
    """Halts write an Error checkpoint; the next run resumes from it."""

    def test_quota_halt_then_resume(self, ctx: EngineContext, session: Session) -> None:
        session.plan_file.write_text(PLAN_AB)
        runner, _ = make_runner(ctx, session, [ok(), failed("insufficient_quota")])

        result = runner.run("build")

        assert result.status == RunStatus.HALTED
        assert result.classification.kind == ErrorKind.FATAL
        assert result.exit_code(non_interactive=True) == 1
        checkpoint = ctx.store.load(session.id)
        assert checkpoint.phase == Phase.ERROR
        assert checkpoint.iteration == 1
        assert checkpoint.completed_tasks == ["Task A"]
        assert checkpoint.can_resume is True

        resumed, invoker = make_runner(ctx, session, [ok()])
        result = resumed.run("build")

        assert result.status == RunStatus.COMPLETE
        assert "Task B" in invoker.prompts[0]
        assert ctx.store.load(session.id).iteration == 2

    def test_auth_halt_needs_force(self, ctx: EngineContext, session: Session) -> None:
        session.plan_file.write_text(PLAN_AB)
        runner, _ = make_runner(ctx, session, [failed("HTTP 401 Unauthorized")])
        runner.run("build")
        assert ctx.store.can_resume(session.id) is False

        blocked, _ = make_runner(ctx, session, [])
        with pytest.raises(RalphError, match="--force"):
            blocked.run("build")

        forced, _ = make_runner(ctx, session, [ok(), ok()])
        assert forced.run("build", force=True).status == RunStatus.COMPLETE

    def test_exhausted_failure_exit_codes(
        self, ctx: EngineContext, session: Session
    ) -> None:
        session.plan_file.write_text(PLAN_AB)
        runner, _ = make_runner(ctx, session, [failed("segfault")])

        result = runner.run("build")

        assert result.status == RunStatus.EXHAUSTED
        assert result.exit_code(non_interactive=True) == 1
        assert result.exit_code(non_interactive=False) == 0
        # Exhaustion is not a halt: no Error checkpoint
        assert ctx.store.load(session.id).phase == Phase.BUILDING

    def test_skip_decision_is_forwarded(
        self, ctx: EngineContext, session: Session
    ) -> None:
        session.plan_file.write_text(PLAN_AB)
        runner, _ = make_runner(
            ctx,
            session,
            [failed("segfault"), ok()],
            decide=lambda task, result: Decision.SKIP,
        )

        assert runner.run("build").status == RunStatus.COMPLETE


class TestRunResult:
    @pytest.mark.parametrize(
        ("status", "pending", "expected"),
        [
            (RunStatus.COMPLETE, 0, 0),
            (RunStatus.NEEDS_SPECS, 0, 0),
            (RunStatus.CANCELLED, 1, 0),
            (RunStatus.HALTED, 1, 1),
            (RunStatus.EXHAUSTED, 1, 1),
            (RunStatus.LIMIT_REACHED, 1, 1),
            (RunStatus.LIMIT_REACHED, 0, 0),
        ],
    )
    def test_non_interactive_exit_codes(
        self, status: RunStatus, pending: int, expected: int
    ) -> None:
        assert RunResult(status, pending=pending).exit_code(True) == expected


@pytest.mark.usefixtures("agents_dir")
class TestRunSession:
    """Tests for run_session()."""

    def test_lock_released_after_run(self, ctx: EngineContext, session: Session) -> None:
        session.plan_file.write_text(PLAN_AB)

        result = run_session(
            ctx, session, mode="build", invoker=ScriptedInvoker([ok(), ok()])
        )

        assert result.status == RunStatus.COMPLETE
        assert not (session.directory / LOCK_FILE_NAME).exists()

    def test_locked_session_is_refused(
        self, ctx: EngineContext, session: Session
    ) -> None:
        (session.directory / LOCK_FILE_NAME).write_text(str(os.getppid()))
        invoker = ScriptedInvoker([])

        with pytest.raises(SessionLockedError):
            run_session(ctx, session, invoker=invoker)

        assert invoker.prompts == []

    def test_plan_and_progress_files_recreated(
        self, ctx: EngineContext, session: Session
    ) -> None:
        session.plan_file.unlink()
        session.progress_file.unlink()

        run_session(ctx, session, mode="build", invoker=ScriptedInvoker([]))

        assert session.plan_file.exists()
        assert session.progress_file.exists()

    def test_work_tree_snapshots_bracket_the_run(
        self, ctx: EngineContext, session: Session
    ) -> None:
        session.plan_file.write_text("- [ ] Task A\n")
        snapshots = iter(
            [
                GitSnapshot(),
                GitSnapshot(status_lines=frozenset({"?? login.py"}), lines_added=40),
            ]
        )

        with patch("ralph.runner.snapshot", side_effect=lambda root: next(snapshots)):
            run_session(ctx, session, mode="build", invoker=ScriptedInvoker([ok()]))

        changes = ctx.stats.file_changes
        assert changes is not None
        assert changes.created == ["login.py"]
        assert changes.lines_added == 40

    def test_no_snapshot_outside_git(self, ctx: EngineContext, session: Session) -> None:
        with patch("ralph.runner.snapshot", return_value=None):
            run_session(ctx, session, mode="build", invoker=ScriptedInvoker([]))

        assert ctx.stats.file_changes is None
