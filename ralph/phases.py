"""Phase state machine for sessions.

A session moves through Idle -> SpecCreation -> Planning -> Building ->
Complete, with Error reachable from anywhere on a Fatal or Critical failure.
The allowed edges live in TRANSITIONS; anything else raises
InvalidTransitionError. Every phase boundary is recorded as a checkpoint.
"""

import logging

from ralph import plan
from ralph.checkpoint import CheckpointStore
from ralph.errors import InvalidTransitionError
from ralph.models import Checkpoint, ErrorClassification, Phase, Session, TaskStats
from ralph.sessions import SessionRegistry

logger = logging.getLogger(__name__)

TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.IDLE: frozenset(
        {Phase.SPEC_CREATION, Phase.PLANNING, Phase.BUILDING, Phase.ERROR}
    ),
    # SpecCreation -> Building covers tasks written into the plan by hand
    Phase.SPEC_CREATION: frozenset({Phase.PLANNING, Phase.BUILDING, Phase.ERROR}),
    # Planning -> SpecCreation is only ever a caller decision after zero tasks;
    # Planning -> Complete when replanning found no new work
    Phase.PLANNING: frozenset(
        {Phase.BUILDING, Phase.SPEC_CREATION, Phase.COMPLETE, Phase.ERROR}
    ),
    # Building -> SpecCreation when the plan was emptied by hand or a new
    # spec is requested mid-build
    Phase.BUILDING: frozenset(
        {Phase.COMPLETE, Phase.PLANNING, Phase.SPEC_CREATION, Phase.ERROR}
    ),
    # Replanning or a new spec after completion may discover new work
    Phase.COMPLETE: frozenset(
        {Phase.PLANNING, Phase.BUILDING, Phase.SPEC_CREATION, Phase.ERROR}
    ),
    # Manual resume back to the phase that failed
    Phase.ERROR: frozenset(
        {
            Phase.IDLE,
            Phase.SPEC_CREATION,
            Phase.PLANNING,
            Phase.BUILDING,
            Phase.COMPLETE,
        }
    ),
}


def can_transition(current: Phase, target: Phase) -> bool:
    return current == target or target in TRANSITIONS[current]


def transition(current: Phase, target: Phase) -> Phase:
    """Validate a phase change.

    Staying in the same phase is always allowed.

    Args:
        current: Phase the session is in
        target: Phase to move to

    Returns:
        target

    Raises:
        InvalidTransitionError: If the edge is not in TRANSITIONS
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move from {current.value} to {target.value}"
        )
    return target


def resume_from(current: Phase, previous: Phase) -> Phase:
    """Leave the Error phase for the phase that was running when it failed.

    Raises:
        InvalidTransitionError: If not in Error, or previous is Error itself
    """
    if current != Phase.ERROR:
        raise InvalidTransitionError(
            f"Only an Error phase can be resumed (current: {current.value})"
        )
    if previous == Phase.ERROR:
        raise InvalidTransitionError("Cannot resume into the Error phase")
    return transition(current, previous)


def determine_next_phase(stats: TaskStats, has_specs: bool) -> Phase:
    """Decide which phase a session should run next.

    Pure function of the plan's task counts and whether user specs exist:

    - no tasks, no specs: SpecCreation
    - no tasks, specs present: Planning
    - at least one pending task: Building
    - tasks present, none pending: Complete
    """
    if stats.pending > 0:
        return Phase.BUILDING
    if stats.total == 0:
        return Phase.PLANNING if has_specs else Phase.SPEC_CREATION
    return Phase.COMPLETE


class PhaseMachine:
    """Tracks and records the phase of one session.

    The current phase is taken from the session's last checkpoint (Idle if
    there is none). next_phase() re-reads the plan on every call.
    """

    def __init__(
        self,
        session: Session,
        registry: SessionRegistry,
        store: CheckpointStore,
    ) -> None:
        self.session = session
        self.registry = registry
        self.store = store
        last = store.load(session.id)
        self.phase = last.phase if last else Phase.IDLE
        self.previous: Phase | None = None

    def next_phase(self) -> Phase:
        stats = self.registry.task_stats(self.session)
        return determine_next_phase(stats, self.registry.has_specs(self.session))

    def _boundary(self, phase: Phase) -> Checkpoint:
        """New checkpoint for a phase boundary, carrying prior progress."""
        last = self.store.load(self.session.id)
        return Checkpoint(
            session_id=self.session.id,
            phase=phase,
            iteration=last.iteration if last else 0,
            current_task=last.current_task if last else "",
            completed_tasks=plan.completed_task_texts(self.session.plan_file),
        )

    def enter(self, target: Phase) -> Phase:
        """Move to a new phase and record the boundary checkpoint.

        Entering Complete writes a terminal, non-resumable checkpoint.

        Raises:
            InvalidTransitionError: If the edge is not allowed
        """
        transition(self.phase, target)

        checkpoint = self._boundary(target)
        if target == Phase.COMPLETE:
            checkpoint.can_resume = False
            checkpoint.is_completed_state = True
        self.store.save(checkpoint.stamp())

        if target != self.phase:
            logger.info(
                "Session %s: %s -> %s",
                self.session.id,
                self.phase.value,
                target.value,
            )
        self.phase = target
        return target

    def fail(self, classification: ErrorClassification) -> Checkpoint:
        """Move to Error and record the failure.

        The Error checkpoint keeps the iteration count and completed tasks of
        the last good checkpoint, so a resumed build still starts at n+1.
        """
        transition(self.phase, Phase.ERROR)

        last = self.store.load(self.session.id)
        checkpoint = self._boundary(Phase.ERROR)
        if last is not None:
            checkpoint.completed_tasks = list(last.completed_tasks)
        checkpoint.error = classification.to_payload()
        checkpoint.can_resume = classification.resumable
        self.store.save(checkpoint.stamp())

        logger.warning(
            "Session %s halted in %s: %s",
            self.session.id,
            self.phase.value,
            classification.message,
        )
        if self.phase != Phase.ERROR:
            self.previous = self.phase
        self.phase = Phase.ERROR
        return checkpoint

    def resume(self) -> Phase:
        """Leave Error for the phase that failed (or a recomputed one)."""
        previous = self.previous or self.next_phase()
        target = resume_from(self.phase, previous)
        self.phase = target
        return target
