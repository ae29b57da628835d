"""Session runner.

Dispatches a `ralph run` to the phases its mode asks for: the agents-update
pass, spec creation, planning and the build loop. A Fatal or Critical
failure in any phase is recorded as an Error checkpoint that keeps the last
good iteration count and completed tasks.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from ralph import plan
from ralph.agent import (
    AGENTS_UPDATED_SIGNAL,
    AGENTS_UPDATER_AGENT,
    BUILD_AGENT,
    PLAN_AGENT,
    PLANNING_COMPLETE_SIGNAL,
    SPEC_CREATED_SIGNAL,
    SPEC_CREATOR_AGENT,
    AgentInvoker,
    Invoker,
    has_signal,
    load_agent_prompt,
    session_prompt,
)
from ralph.changes import snapshot
from ralph.context import EngineContext
from ralph.errors import RalphError
from ralph.lock import SessionLock
from ralph.loop import BuildLoop, DecisionCallback
from ralph.memory import MemoryStore
from ralph.models import (
    ErrorClassification,
    IterationResult,
    LoopOutcome,
    LoopStatus,
    Phase,
    Session,
)
from ralph.phases import PhaseMachine, can_transition
from ralph.retry import RetryConfig, RetryController
from ralph.stats import PHASE_AGENTS_UPDATE, PHASE_PLANNING, PHASE_SPEC_CREATION

logger = logging.getLogger(__name__)

MODES = ("auto", "plan", "build", "agents", "continue", "spec")


class RunStatus(str, Enum):
    COMPLETE = "complete"
    PLANNED = "planned"
    AGENTS_UPDATED = "agents_updated"
    SPEC_CREATED = "spec_created"
    DELEGATED = "delegated"
    LIMIT_REACHED = "limit_reached"
    CANCELLED = "cancelled"
    HALTED = "halted"
    EXHAUSTED = "exhausted"
    NEEDS_SPECS = "needs_specs"
    NO_TASKS = "no_tasks"


# Statuses that end a non-interactive run with exit code 1
FAILURE_STATUSES = frozenset({RunStatus.HALTED, RunStatus.EXHAUSTED})


@dataclass
class RunResult:
    """Outcome of one `ralph run`.

    Attributes:
        status: How the run ended
        message: Human-readable summary line
        outcome: Build loop outcome, if the build loop ran
        classification: Error classification for halted/exhausted runs
        pending: Pending tasks left in the plan
        total: Total tasks in the plan
    """

    status: RunStatus
    message: str = ""
    outcome: LoopOutcome | None = None
    classification: ErrorClassification | None = None
    pending: int = 0
    total: int = 0

    def exit_code(self, non_interactive: bool) -> int:
        """Process exit code.

        Interactive runs always return 0 so the user can recover at the
        prompt. Non-interactive runs fail on halts, exhausted retries and
        iteration limits reached with work still pending.
        """
        if not non_interactive:
            return 0
        if self.status in FAILURE_STATUSES:
            return 1
        if self.status == RunStatus.LIMIT_REACHED and self.pending > 0:
            return 1
        return 0


class SessionRunner:
    """Runs the phases of one session.

    Args:
        ctx: Engine context
        session: Session to run
        invoker: Agent invoker (an AgentInvoker from ctx if None)
        decide: Decision callback forwarded to the build loop
    """

    def __init__(
        self,
        ctx: EngineContext,
        session: Session,
        invoker: Invoker | None = None,
        decide: DecisionCallback | None = None,
    ) -> None:
        self.ctx = ctx
        self.session = session
        self.invoker = invoker or AgentInvoker(
            command=ctx.config.agent_command,
            model=ctx.model,
            timeout=ctx.config.agent_timeout_seconds,
            stats=ctx.stats,
        )
        self.decide = decide
        self.machine = PhaseMachine(session, ctx.registry, ctx.store)
        self.memory = MemoryStore(ctx.config.ralph_dir)
        self.retry = RetryController(
            RetryConfig(
                max_attempts=ctx.config.max_attempts,
                base_delay=ctx.config.base_delay_seconds,
                backoff_multiplier=ctx.config.backoff_multiplier,
            ),
            rules=ctx.rules,
            sleep=ctx.sleep,
        )

    def _prompt(self, agent_file: str) -> str:
        base = load_agent_prompt(self.ctx.config.agents_dir / agent_file)
        return session_prompt(
            base,
            self.session.plan_file,
            self.session.progress_file,
            self.ctx.registry.specs_dir(self.session),
            memory_file=self.memory.ensure(),
        )

    def _result(self, status: RunStatus, message: str = "", **kwargs) -> RunResult:
        stats = plan.task_stats(self.session.plan_file)
        return RunResult(
            status=status,
            message=message,
            pending=stats.pending,
            total=stats.total,
            **kwargs,
        )

    def _call(self, prompt: str, phase: str) -> IterationResult:
        self.ctx.console.print(f"[bold]{phase}[/bold] [dim]({self.ctx.model})[/dim]")
        return self.retry.execute(lambda: self.invoker.invoke(prompt, phase))

    def _failed(self, result: IterationResult, phase: str) -> RunResult:
        """Map a failed phase call to a run result."""
        if result.cancelled:
            return self._result(RunStatus.CANCELLED, f"{phase} cancelled")
        classification = result.classification
        if result.halting and classification is not None:
            self.machine.fail(classification)
            return self._result(
                RunStatus.HALTED,
                f"{phase} halted: {classification.message}",
                classification=classification,
            )
        message = classification.message if classification else "agent call failed"
        return self._result(
            RunStatus.EXHAUSTED,
            f"{phase} failed: {message}",
            classification=classification,
        )

    def _resume_after_error(self, force: bool) -> None:
        last = self.ctx.store.load(self.session.id)
        if not self.ctx.store.can_resume(self.session.id) and not force:
            reason = last.error.message if last and last.error else "unknown error"
            raise RalphError(
                f"Session stopped on a non-resumable error: {reason} "
                "Fix the cause, then run again with --force."
            )
        self.machine.resume()
        self.ctx.console.print(
            f"[yellow]Resuming after error in phase "
            f"{self.machine.phase.value}[/yellow]"
        )

    def update_agents(self, required: bool = False) -> RunResult | None:
        """Run the agents-update pass.

        Returns:
            A RunResult if the run must stop, None to continue
        """
        path = self.ctx.config.agents_dir / AGENTS_UPDATER_AGENT
        if not path.exists():
            if required:
                raise RalphError(f"Agents updater not found: {path}")
            logger.warning("Agents updater not found: %s", path)
            return None

        result = self._call(self._prompt(AGENTS_UPDATER_AGENT), PHASE_AGENTS_UPDATE)
        if not result.success:
            if result.cancelled or result.halting or required:
                return self._failed(result, PHASE_AGENTS_UPDATE)
            logger.warning("Agents update failed; continuing without it")
            return None

        if has_signal(result.output, AGENTS_UPDATED_SIGNAL):
            self.ctx.console.print("[green]AGENTS.md updated[/green]")
        return None

    def create_spec(self, request: str) -> RunResult:
        """Ask the spec creator agent to write a specification."""
        if self.machine.phase != Phase.SPEC_CREATION:
            self.machine.enter(Phase.SPEC_CREATION)

        prompt = self._prompt(SPEC_CREATOR_AGENT)
        prompt += f"\n\n## REQUEST\n\n{request}\n"
        result = self._call(prompt, PHASE_SPEC_CREATION)
        if not result.success:
            return self._failed(result, PHASE_SPEC_CREATION)

        if not self.ctx.registry.has_specs(self.session):
            return self._result(
                RunStatus.NEEDS_SPECS, "Spec creation finished but no spec was written"
            )
        if has_signal(result.output, SPEC_CREATED_SIGNAL):
            self.ctx.console.print("[green]Specification created[/green]")
        return self._result(RunStatus.SPEC_CREATED, "Specification created")

    def run_planning(self) -> RunResult | None:
        """Run the planning phase.

        Returns:
            A RunResult if the run must stop, None if pending tasks exist
        """
        if not self.ctx.registry.has_specs(self.session):
            folder = self.ctx.registry.specs_dir(self.session)
            return self._result(
                RunStatus.NEEDS_SPECS,
                f"No specs found in {folder}. Add specifications first.",
            )

        self.machine.enter(Phase.PLANNING)
        result = self._call(self._prompt(PLAN_AGENT), PHASE_PLANNING)
        if not result.success:
            return self._failed(result, PHASE_PLANNING)

        if has_signal(result.output, PLANNING_COMPLETE_SIGNAL):
            logger.info("Planning agent signalled completion")

        stats = plan.task_stats(self.session.plan_file)
        if stats.pending == 0:
            return self._result(
                RunStatus.NO_TASKS,
                "No tasks created. Check the specs for valid specifications.",
            )
        self.ctx.console.print(f"[green]Plan has {stats.pending} pending tasks[/green]")
        return None

    def run_build(self, max_iterations: int) -> RunResult:
        stats = plan.task_stats(self.session.plan_file)
        if stats.total == 0:
            return self._result(
                RunStatus.NO_TASKS,
                "No tasks found in IMPLEMENTATION_PLAN.md. Run planning first.",
            )
        if stats.pending == 0:
            if self.machine.phase != Phase.COMPLETE and can_transition(
                self.machine.phase, Phase.COMPLETE
            ):
                self.machine.enter(Phase.COMPLETE)
            return self._result(
                RunStatus.COMPLETE, f"All {stats.total} tasks already completed!"
            )

        loop = BuildLoop(
            self.ctx,
            self.machine,
            self.invoker,
            self._prompt(BUILD_AGENT),
            decide=self.decide,
        )
        outcome = loop.run(max_iterations)
        return self._from_outcome(outcome)

    def _from_outcome(self, outcome: LoopOutcome) -> RunResult:
        if outcome.status == LoopStatus.ALL_COMPLETE:
            return self._result(RunStatus.COMPLETE, "All tasks complete", outcome=outcome)
        if outcome.status == LoopStatus.LIMIT_REACHED:
            return self._result(
                RunStatus.LIMIT_REACHED,
                f"Reached max iterations ({outcome.iterations})",
                outcome=outcome,
            )
        if outcome.status == LoopStatus.CANCELLED:
            return self._result(RunStatus.CANCELLED, "Cancelled by user", outcome=outcome)
        if outcome.status == LoopStatus.HALTED and outcome.classification:
            self.machine.fail(outcome.classification)
            return self._result(
                RunStatus.HALTED,
                f"Halted: {outcome.classification.message}",
                outcome=outcome,
                classification=outcome.classification,
            )
        message = (
            outcome.classification.message
            if outcome.classification
            else "Stopped after a failed task"
        )
        return self._result(
            RunStatus.EXHAUSTED,
            f"Stopped: {message}",
            outcome=outcome,
            classification=outcome.classification,
        )

    def delegate(self) -> RunResult:
        """Hand the next pending task to the background coding agent."""
        if not isinstance(self.invoker, AgentInvoker):
            raise RalphError("Delegate mode needs the agent CLI (not manual mode)")
        task = plan.next_pending_task(self.session.plan_file)
        if task is None:
            return self._result(RunStatus.NO_TASKS, "No pending task to delegate")
        result = self.invoker.delegate(task.text)
        if not result.success:
            return self._failed(result, "Delegate")
        return self._result(RunStatus.DELEGATED, f"Delegated: {task.text}")

    def run(
        self,
        mode: str = "auto",
        max_iterations: int = 0,
        delegate: bool = False,
        force: bool = False,
        spec_request: str = "",
    ) -> RunResult:
        """Run the session in the given mode.

        Args:
            mode: One of auto, plan, build, agents, continue, spec
            max_iterations: Build iterations to run (0 = unlimited)
            delegate: Delegate the next task instead of building locally
            force: Resume even from a non-resumable error
            spec_request: What to write a spec for (spec mode)

        Returns:
            RunResult describing how the run ended
        """
        if mode not in MODES:
            raise RalphError(f"Unknown mode '{mode}'. Choose from: {', '.join(MODES)}")

        plan.ensure_plan_file(self.session.plan_file)
        plan.ensure_progress_file(self.session.progress_file)

        if self.machine.phase == Phase.ERROR:
            self._resume_after_error(force)

        if delegate:
            return self.delegate()

        if mode == "agents":
            return self.update_agents(required=True) or self._result(
                RunStatus.AGENTS_UPDATED, "Agents update finished"
            )

        if mode == "plan":
            stop = self.run_planning()
            return stop or self._result(RunStatus.PLANNED, "Planning complete")

        if mode == "build":
            return self.run_build(max_iterations)

        if mode == "spec":
            if not spec_request.strip():
                raise RalphError("Describe what the spec should cover")
            return self.create_spec(spec_request)

        # auto / continue
        stop = self.update_agents()
        if stop is not None:
            return stop

        next_phase = self.machine.next_phase()
        logger.debug("Next phase: %s", next_phase.value)

        if next_phase == Phase.SPEC_CREATION:
            if self.machine.phase != Phase.SPEC_CREATION:
                self.machine.enter(Phase.SPEC_CREATION)
            folder = self.ctx.registry.specs_dir(self.session)
            return self._result(
                RunStatus.NEEDS_SPECS,
                f"No specs found in {folder}. Add specifications or run `ralph spec`.",
            )

        if next_phase in (Phase.PLANNING, Phase.COMPLETE):
            if next_phase == Phase.COMPLETE and not self.ctx.registry.has_specs(
                self.session
            ):
                return self.run_build(max_iterations)
            # Replanning after completion may discover new specs
            stop = self.run_planning()
            if stop is not None:
                if next_phase == Phase.COMPLETE and stop.status == RunStatus.NO_TASKS:
                    return self.run_build(max_iterations)
                return stop

        return self.run_build(max_iterations)


def run_session(
    ctx: EngineContext,
    session: Session,
    mode: str = "auto",
    max_iterations: int = 0,
    decide: DecisionCallback | None = None,
    invoker: Invoker | None = None,
    delegate: bool = False,
    force: bool = False,
    spec_request: str = "",
) -> RunResult:
    """Run a session under its lock and a `ralph.session` span.

    Raises:
        SessionLockedError: If another process is running the session
        RalphError: On configuration problems (missing agent files, etc.)
    """
    runner = SessionRunner(ctx, session, invoker=invoker, decide=decide)
    with SessionLock(session.directory, session.id):
        runner.memory.ensure()
        ctx.stats.git_start = snapshot(ctx.config.project_root)
        with ctx.tracer.start_as_current_span("ralph.session") as span:
            span.set_attribute("session.id", session.id)
            span.set_attribute("session.mode", mode)
            span.set_attribute("session.model", ctx.model)
            result = runner.run(
                mode,
                max_iterations,
                delegate=delegate,
                force=force,
                spec_request=spec_request,
            )
            span.set_attribute("session.status", result.status.value)
        ctx.stats.git_end = snapshot(ctx.config.project_root)
    return result
