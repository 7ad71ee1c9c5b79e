"""Workflow state machine for one orchestration request.

The machine owns a single mutable ``WorkflowRun`` and exposes it through a
get/subscribe/dispatch interface. Phase changes follow ``VALID_TRANSITIONS``;
anything else is rejected without raising and leaves the run untouched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from .types import (
    TERMINAL_PHASES,
    Intent,
    WorkflowPhase,
    WorkflowRun,
    WorkflowStep,
    WorkflowStepStatus,
)

logger = logging.getLogger(__name__)

Listener = Callable[[WorkflowRun], None]

VALID_TRANSITIONS: dict[WorkflowPhase, frozenset[WorkflowPhase]] = {
    WorkflowPhase.IDLE: frozenset(
        {WorkflowPhase.ANALYZING, WorkflowPhase.FAILED, WorkflowPhase.CANCELLED}
    ),
    WorkflowPhase.ANALYZING: frozenset(
        {WorkflowPhase.PLANNING, WorkflowPhase.FAILED, WorkflowPhase.CANCELLED}
    ),
    WorkflowPhase.PLANNING: frozenset(
        {WorkflowPhase.EXECUTING, WorkflowPhase.FAILED, WorkflowPhase.CANCELLED}
    ),
    WorkflowPhase.EXECUTING: frozenset(
        {WorkflowPhase.VERIFYING, WorkflowPhase.FAILED, WorkflowPhase.CANCELLED}
    ),
    WorkflowPhase.VERIFYING: frozenset(
        {WorkflowPhase.COMPLETE, WorkflowPhase.FAILED, WorkflowPhase.CANCELLED}
    ),
    WorkflowPhase.COMPLETE: frozenset(),
    WorkflowPhase.FAILED: frozenset(),
    WorkflowPhase.CANCELLED: frozenset(),
}

PHASE_DESCRIPTIONS = {
    WorkflowPhase.IDLE: "Waiting for a request",
    WorkflowPhase.ANALYZING: "Understanding the request",
    WorkflowPhase.PLANNING: "Planning the edit",
    WorkflowPhase.EXECUTING: "Applying changes",
    WorkflowPhase.VERIFYING: "Checking the result",
    WorkflowPhase.COMPLETE: "Done",
    WorkflowPhase.FAILED: "Failed",
    WorkflowPhase.CANCELLED: "Cancelled",
}


def is_valid_transition(current: WorkflowPhase, target: WorkflowPhase) -> bool:
    return WorkflowPhase(target) in VALID_TRANSITIONS[WorkflowPhase(current)]


def valid_next_phases(phase: WorkflowPhase) -> list[WorkflowPhase]:
    return sorted(VALID_TRANSITIONS[WorkflowPhase(phase)], key=lambda p: p.value)


def is_terminal_phase(phase: WorkflowPhase) -> bool:
    return WorkflowPhase(phase) in TERMINAL_PHASES


def can_cancel(phase: WorkflowPhase) -> bool:
    phase = WorkflowPhase(phase)
    return phase != WorkflowPhase.IDLE and phase not in TERMINAL_PHASES


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStateMachine:
    """Drives one request through its lifecycle phases."""

    def __init__(self) -> None:
        self._run = WorkflowRun()
        self._listeners: list[Listener] = []

    # -- store interface --------------------------------------------------

    def get_state(self) -> WorkflowRun:
        """Return a deep copy of the current run."""
        return self._run.model_copy(deep=True)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for state changes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, action: str, **payload: Any) -> Any:
        """Apply a named action.

        Supported actions: ``start(intent)``, ``transition(phase)``,
        ``add_step(step)``, ``update_step(step_id, **changes)``, ``complete``,
        ``fail(message)``, ``cancel`` and ``reset``.

        Raises:
            ValueError: If the action name is unknown.
        """
        handlers: dict[str, Callable[..., Any]] = {
            "start": self.start,
            "transition": self.transition_to,
            "add_step": self.add_step,
            "update_step": self.update_step,
            "complete": self.complete_workflow,
            "fail": self.fail_workflow,
            "cancel": self.cancel_workflow,
            "reset": self.reset,
        }
        handler = handlers.get(action)
        if handler is None:
            raise ValueError(f"Unknown workflow action: {action}")
        return handler(**payload)

    def _notify(self) -> None:
        snapshot = self.get_state()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Workflow listener failed")

    # -- derived state ----------------------------------------------------

    @property
    def phase(self) -> WorkflowPhase:
        return self._run.phase

    @property
    def workflow_id(self) -> str | None:
        return self._run.workflow_id

    @property
    def is_active(self) -> bool:
        return self._run.phase != WorkflowPhase.IDLE and self._run.phase not in TERMINAL_PHASES

    @property
    def progress(self) -> float:
        steps = self._run.steps
        if not steps:
            return 0.0
        completed = sum(1 for step in steps if step.status == WorkflowStepStatus.COMPLETED)
        return 100.0 * completed / len(steps)

    @property
    def current_step(self) -> WorkflowStep | None:
        for wanted in (WorkflowStepStatus.IN_PROGRESS, WorkflowStepStatus.PENDING):
            for step in self._run.steps:
                if step.status == wanted:
                    return step.model_copy()
        return None

    # -- transitions ------------------------------------------------------

    def start(self, intent: Intent) -> bool:
        """Begin a new run. A run that is already active wins; returns False."""
        if self.is_active:
            logger.warning(
                "Workflow %s already active; ignoring new start", self._run.workflow_id
            )
            return False

        self._run = WorkflowRun(
            workflow_id=str(uuid4()),
            intent=intent,
            phase=WorkflowPhase.ANALYZING,
            phase_history=[WorkflowPhase.IDLE, WorkflowPhase.ANALYZING],
            started_at=_now(),
        )
        logger.info("Workflow %s started", self._run.workflow_id)
        self._notify()
        return True

    def transition_to(self, phase: WorkflowPhase | str) -> bool:
        try:
            target = WorkflowPhase(phase)
        except ValueError:
            logger.warning("Rejected transition to unknown workflow phase %r", phase)
            return False
        current = self._run.phase
        if not is_valid_transition(current, target):
            logger.warning(
                "Rejected workflow transition %s -> %s", current.value, target.value
            )
            return False

        self._run.phase = target
        self._run.phase_history.append(target)
        if target in TERMINAL_PHASES:
            self._run.completed_at = _now()
        logger.info(
            "Workflow %s: %s -> %s", self._run.workflow_id, current.value, target.value
        )
        self._notify()
        return True

    def _force_terminal(self, phase: WorkflowPhase, error: str | None = None) -> bool:
        if self._run.phase in TERMINAL_PHASES:
            logger.warning(
                "Workflow already %s; ignoring %s", self._run.phase.value, phase.value
            )
            return False

        previous = self._run.phase
        self._run.phase = phase
        if not self._run.phase_history or self._run.phase_history[-1] != phase:
            self._run.phase_history.append(phase)
        if error is not None:
            self._run.error = error
        self._run.completed_at = _now()
        logger.info(
            "Workflow %s: %s -> %s", self._run.workflow_id, previous.value, phase.value
        )
        self._notify()
        return True

    def complete_workflow(self) -> bool:
        return self._force_terminal(WorkflowPhase.COMPLETE)

    def fail_workflow(self, message: str) -> bool:
        return self._force_terminal(WorkflowPhase.FAILED, error=message)

    def cancel_workflow(self) -> bool:
        return self._force_terminal(WorkflowPhase.CANCELLED)

    def reset(self) -> None:
        self._run = WorkflowRun()
        self._notify()

    # -- steps ------------------------------------------------------------

    def add_step(self, step: WorkflowStep) -> None:
        """Add ``step``, or merge it into the existing step with the same id."""
        for index, existing in enumerate(self._run.steps):
            if existing.id == step.id:
                self._run.steps[index] = existing.model_copy(
                    update=step.model_dump(exclude_unset=True)
                )
                break
        else:
            self._run.steps.append(step.model_copy())
        self._notify()

    def update_step(self, step_id: str, **changes: Any) -> bool:
        for index, existing in enumerate(self._run.steps):
            if existing.id == step_id:
                if "status" in changes:
                    changes["status"] = WorkflowStepStatus(changes["status"])
                self._run.steps[index] = existing.model_copy(update=changes)
                self._notify()
                return True
        logger.debug("No workflow step with id %s", step_id)
        return False
