"""Execution aggregate and its state machine.

The aggregate is the root state of one tracked execution. Transitions are
pure: ``apply_event`` and ``cancel`` take the current aggregate and return a
new one, never mutating their input.

State machine:

    initializing -> running -> completed | error | cancelled

``cancelled`` is only reachable through the local ``cancel`` action. Once a
terminal status is reached the aggregate never changes again.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

from events.types import EventType, ExecutionEvent


class ExecutionStatus(StrEnum):
    """Lifecycle status of an execution."""

    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.ERROR,
    ExecutionStatus.CANCELLED,
})


class ExecutionAggregate(BaseModel):
    """Canonical state of one execution.

    Attributes:
        execution_id: Identity assigned by the executor when the run started.
        persona: Persona that requested the run.
        command: Command that was requested.
        status: Current lifecycle status.
        started: Whether an ``execution_started`` event has been applied.
            Replays of that event are no-ops once this is set.
        started_at: Unix timestamp of the start.
        completed_at: Unix timestamp of reaching a terminal status.
        total_duration: Executor-reported duration in milliseconds (completed only).
        result: Result payload (completed only).
        error_details: Error payload (error only).
        orchestration_strategy: Strategy the run was started with, if known.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str
    persona: str = ""
    command: str = ""
    status: ExecutionStatus = ExecutionStatus.INITIALIZING
    started: bool = False
    started_at: float | None = None
    completed_at: float | None = None
    total_duration: float | None = None
    result: Any = None
    error_details: Any = None
    orchestration_strategy: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self.status in TERMINAL_EXECUTION_STATUSES


def new_aggregate(
    execution_id: str,
    persona: str = "",
    command: str = "",
    orchestration_strategy: str | None = None,
    started_at: float | None = None,
) -> ExecutionAggregate:
    """Create an aggregate in the ``initializing`` state."""
    return ExecutionAggregate(
        execution_id=execution_id,
        persona=persona,
        command=command,
        orchestration_strategy=orchestration_strategy,
        started_at=started_at if started_at is not None else time.time(),
    )


def apply_event(
    state: ExecutionAggregate | None,
    event: ExecutionEvent,
) -> ExecutionAggregate:
    """Apply one event to an execution aggregate.

    The aggregate is created lazily if ``state`` is None. Step events never
    change the aggregate status; they are reconciled by the step store.

    Args:
        state: Current aggregate, or None if no event has been seen yet.
        event: The event to apply. Its execution id must match the aggregate's.

    Returns:
        The new aggregate. Returns ``state`` itself when the event is a no-op
        (a replayed start, a step event, or anything after a terminal status).

    Raises:
        ValueError: If the event belongs to a different execution.
    """
    if state is None:
        state = new_aggregate(event.execution_id, started_at=event.timestamp)
    elif state.execution_id != event.execution_id:
        raise ValueError(
            f"event for {event.execution_id} applied to aggregate {state.execution_id}"
        )

    if state.is_terminal:
        return state

    if event.type == EventType.EXECUTION_STARTED:
        if state.started:
            return state
        return state.model_copy(update={
            "started": True,
            "status": ExecutionStatus.RUNNING,
            "started_at": state.started_at if state.started_at is not None else event.timestamp,
        })

    if event.type == EventType.EXECUTION_COMPLETED:
        result = event.result
        if result is None:
            result = {"message": event.message, "layersExecuted": event.layers_executed}
        return state.model_copy(update={
            "status": ExecutionStatus.COMPLETED,
            "completed_at": event.timestamp,
            "total_duration": event.total_duration,
            "result": result,
        })

    if event.type == EventType.EXECUTION_ERROR:
        details = event.error_details
        if details is None:
            details = {"message": event.message or "Execution failed"}
        return state.model_copy(update={
            "status": ExecutionStatus.ERROR,
            "completed_at": event.timestamp,
            "error_details": details,
        })

    return state


def cancel(state: ExecutionAggregate, at: float | None = None) -> ExecutionAggregate:
    """Cancel an execution locally.

    Args:
        state: The aggregate to cancel.
        at: Cancellation timestamp, defaults to now.

    Returns:
        A cancelled aggregate, or ``state`` unchanged if it is already terminal.
    """
    if state.is_terminal:
        return state
    return state.model_copy(update={
        "status": ExecutionStatus.CANCELLED,
        "completed_at": at if at is not None else time.time(),
    })
