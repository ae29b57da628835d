"""Build iteration loop.

Works through a session's plan one pending task per iteration. Each
iteration runs one agent call through the retry controller. A completed
task is ticked off in the plan *before* the checkpoint is written, so the
latest checkpoint never claims more progress than the plan shows.
Cancellations and Fatal/Critical halts leave the checkpoint untouched.
"""

import logging
from enum import Enum
from typing import Callable

from ralph import plan, telemetry
from ralph.agent import COMPLETE_SIGNAL, Invoker, build_task_prompt, has_signal
from ralph.context import EngineContext
from ralph.models import (
    Checkpoint,
    ErrorClassification,
    IterationResult,
    LoopOutcome,
    LoopStatus,
    Phase,
    PlanTask,
)
from ralph.phases import PhaseMachine, can_transition
from ralph.retry import RetryConfig, RetryController
from ralph.stats import PHASE_BUILDING

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Caller's choice after a task failed and was not retried further."""

    RETRY = "retry"
    SKIP = "skip"
    STOP = "stop"


DecisionCallback = Callable[[PlanTask, IterationResult], Decision]


class BuildLoop:
    """Runs build iterations for one session.

    Args:
        ctx: Engine context
        machine: Phase machine of the session being built
        invoker: Runs one agent call
        base_prompt: Build agent instructions; each task is appended to it
        decide: Asked what to do after an exhausted or unknown failure.
            Without it such failures end the loop as exhausted.
    """

    def __init__(
        self,
        ctx: EngineContext,
        machine: PhaseMachine,
        invoker: Invoker,
        base_prompt: str,
        decide: DecisionCallback | None = None,
    ) -> None:
        self.ctx = ctx
        self.machine = machine
        self.invoker = invoker
        self.base_prompt = base_prompt
        self.decide = decide
        self.retry = RetryController(
            RetryConfig(
                max_attempts=ctx.config.max_attempts,
                base_delay=ctx.config.base_delay_seconds,
                backoff_multiplier=ctx.config.backoff_multiplier,
            ),
            rules=ctx.rules,
            sleep=ctx.sleep,
            on_retry=self._show_retry,
        )

    def _show_retry(
        self, attempt: int, delay: float, classification: ErrorClassification
    ) -> None:
        self.ctx.console.print(
            f"[yellow]{classification.message} "
            f"Attempt {attempt}/{self.retry.config.max_attempts} failed, "
            f"retrying in {delay:.0f}s...[/yellow]"
        )

    def _checkpoint(self, iteration: int, task: PlanTask) -> None:
        session = self.machine.session
        checkpoint = Checkpoint(
            session_id=session.id,
            phase=Phase.BUILDING,
            iteration=iteration,
            current_task=task.text,
            completed_tasks=plan.completed_task_texts(session.plan_file),
            is_completed_state=True,
        )
        if not self.ctx.store.save(checkpoint.stamp()):
            self.ctx.console.print(
                "[yellow]Warning: could not save checkpoint; "
                "progress is still recorded in the plan.[/yellow]"
            )

    def _finish(
        self, iteration: int, iterations: int, task: str | None
    ) -> LoopOutcome:
        if self.machine.phase != Phase.COMPLETE and can_transition(
            self.machine.phase, Phase.COMPLETE
        ):
            self.machine.enter(Phase.COMPLETE)
        return LoopOutcome(
            status=LoopStatus.ALL_COMPLETE,
            iterations=iterations,
            last_iteration=iteration,
            last_task=task,
        )

    def run(self, max_iterations: int = 0) -> LoopOutcome:
        """Work through pending tasks.

        Args:
            max_iterations: Iterations to run in this call (0 = unlimited)

        Returns:
            LoopOutcome describing why the loop stopped
        """
        session = self.machine.session
        store = self.ctx.store
        iteration = store.resume_iteration(session.id)
        last_completed = iteration - 1
        iterations = 0
        last_task: str | None = None

        if self.machine.phase != Phase.BUILDING and plan.next_pending_task(
            session.plan_file
        ):
            self.machine.enter(Phase.BUILDING)

        while True:
            if max_iterations > 0 and iterations >= max_iterations:
                logger.info("Reached max iterations (%d)", max_iterations)
                return LoopOutcome(
                    status=LoopStatus.LIMIT_REACHED,
                    iterations=iterations,
                    last_iteration=last_completed,
                    last_task=last_task,
                )

            task = plan.next_pending_task(session.plan_file)
            if task is None:
                if plan.task_stats(session.plan_file).total == 0:
                    return LoopOutcome(
                        status=LoopStatus.ALL_COMPLETE,
                        iterations=iterations,
                        last_iteration=last_completed,
                    )
                return self._finish(last_completed, iterations, last_task)

            last_task = task.text
            stats = plan.task_stats(session.plan_file)
            self.ctx.console.print(
                f"\n[bold cyan]Iteration {iteration}[/bold cyan] "
                f"[dim]({stats.completed}/{stats.total} done)[/dim] {task.text}"
            )

            prompt = build_task_prompt(self.base_prompt, task.text)
            with self.ctx.tracer.start_as_current_span("ralph.iteration") as span:
                span.set_attribute("session.id", session.id)
                span.set_attribute("iteration", iteration)
                span.set_attribute("task", task.text)

                result = self.retry.execute(
                    lambda: self.invoker.invoke(prompt, PHASE_BUILDING)
                )
                status = _status_label(result)
                span.set_attribute("iteration.status", status)
                span.set_attribute("iteration.attempts", result.attempts)

            telemetry.record_iteration(session.id, status, result.duration_seconds)

            if result.cancelled:
                logger.info("Iteration %d cancelled by user", iteration)
                return LoopOutcome(
                    status=LoopStatus.CANCELLED,
                    iterations=iterations,
                    last_iteration=last_completed,
                    last_task=task.text,
                    result=result,
                )

            classification = result.classification
            if result.halting and classification is not None:
                telemetry.record_halt(session.id, classification.kind.value)
                return LoopOutcome(
                    status=LoopStatus.HALTED,
                    iterations=iterations,
                    last_iteration=last_completed,
                    last_task=task.text,
                    classification=classification,
                    result=result,
                )

            if not result.success:
                decision = (
                    self.decide(task, result) if self.decide else Decision.STOP
                )
                if decision == Decision.RETRY:
                    logger.info("Retrying task at user request: %s", task.text)
                    continue
                if decision == Decision.SKIP:
                    plan.mark_task_complete(session.plan_file, task, skipped=True)
                    self._checkpoint(iteration, task)
                    logger.info("Skipped task: %s", task.text)
                    iterations += 1
                    self.ctx.stats.build_iterations += 1
                    last_completed = iteration
                    iteration += 1
                    continue
                return LoopOutcome(
                    status=LoopStatus.EXHAUSTED,
                    iterations=iterations,
                    last_iteration=last_completed,
                    last_task=task.text,
                    classification=result.classification,
                    result=result,
                )

            # Plan first, then checkpoint
            plan.mark_task_complete(session.plan_file, task)
            self._checkpoint(iteration, task)
            iterations += 1
            self.ctx.stats.build_iterations += 1
            last_completed = iteration
            self.ctx.console.print(f"[green]Completed:[/green] {task.text}")

            pending = plan.task_stats(session.plan_file).pending
            if has_signal(result.output, COMPLETE_SIGNAL) and pending > 0:
                logger.warning(
                    "Agent signalled completion but %d tasks are pending; ignoring",
                    pending,
                )

            if pending == 0:
                return self._finish(last_completed, iterations, task.text)

            iteration += 1
            if self.ctx.config.iteration_pause_seconds > 0:
                self.ctx.sleep(self.ctx.config.iteration_pause_seconds)


def _status_label(result: IterationResult) -> str:
    if result.success:
        return "success"
    if result.cancelled:
        return "cancelled"
    if result.classification is not None:
        return result.classification.kind.value.lower()
    return "failed"
