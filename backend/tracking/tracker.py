"""Per-execution tracking session.

An ``ExecutionTracker`` exclusively owns one execution's aggregate and step
store, together with the skeleton computed when tracking began. Applying an
event updates the owned state; ``view()`` renders the current
``ExecutionView`` that dashboards display.
"""

import time
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from events.types import ExecutionEvent
from tracking.aggregate import (
    ExecutionAggregate,
    ExecutionStatus,
    apply_event,
    cancel,
    new_aggregate,
)
from tracking.connection import ConnectionHandle, ConnectionState
from tracking.merge import MergedStepView, merge, progress
from tracking.skeleton import SkeletonEntry
from tracking.steps import StepRecord, StepStore

logger = structlog.get_logger(__name__)


class ConnectionStatus(BaseModel):
    """Stream health as shown to the dashboard."""

    state: ConnectionState = ConnectionState.IDLE
    attempt: int = 0
    next_retry_delay: float | None = None
    connection_lost: bool = False
    message: str | None = None

    @classmethod
    def from_handle(cls, handle: ConnectionHandle) -> "ConnectionStatus":
        message = None
        if handle.state == ConnectionState.RETRYING:
            message = f"Reconnecting in {handle.next_retry_delay:g}s (attempt {handle.attempt + 1})"
        elif handle.state == ConnectionState.LOST:
            message = "Connection lost. Restart to resume tracking."
        return cls(
            state=handle.state,
            attempt=handle.attempt,
            next_retry_delay=handle.next_retry_delay,
            connection_lost=handle.connection_lost,
            message=message,
        )


class ExecutionView(BaseModel):
    """Rendered state of one execution."""

    model_config = ConfigDict(frozen=True)

    execution: ExecutionAggregate
    title: str
    steps: list[MergedStepView]
    live_steps: list[StepRecord] = Field(default_factory=list)
    progress: float = 0.0
    connection: ConnectionStatus = Field(default_factory=ConnectionStatus)


class ExecutionTracker:
    """State owner for one tracked execution.

    Args:
        execution_id: The execution being tracked.
        skeleton: Six skeleton entries computed for the persona and command.
        title: Workflow title.
        persona: Requesting persona.
        command: Requested command.
        orchestration_strategy: Strategy the execution was started with.
    """

    def __init__(
        self,
        execution_id: str,
        skeleton: tuple[SkeletonEntry, ...],
        title: str,
        *,
        persona: str = "",
        command: str = "",
        orchestration_strategy: str | None = None,
    ) -> None:
        self.execution_id = execution_id
        self.skeleton = skeleton
        self.title = title
        self.created_at = time.time()
        self.aggregate = new_aggregate(
            execution_id,
            persona=persona,
            command=command,
            orchestration_strategy=orchestration_strategy,
            started_at=self.created_at,
        )
        self.steps = StepStore(execution_id)
        self.connection = ConnectionStatus()

    @property
    def persona(self) -> str:
        return self.aggregate.persona

    @property
    def command(self) -> str:
        return self.aggregate.command

    @property
    def is_terminal(self) -> bool:
        return self.aggregate.is_terminal

    def apply(self, event: ExecutionEvent) -> bool:
        """Apply an event. Returns whether any state changed."""
        if event.execution_id != self.execution_id:
            logger.warning(
                "event_for_other_execution_ignored",
                execution_id=self.execution_id,
                event_execution_id=event.execution_id,
            )
            return False

        # Late step events still settle their layer, except after a local cancel
        if event.is_step_event and self.aggregate.status != ExecutionStatus.CANCELLED:
            return self.steps.upsert(event) is not None

        if self.aggregate.is_terminal:
            logger.debug(
                "event_after_terminal_status",
                execution_id=self.execution_id,
                status=self.aggregate.status.value,
                event_type=event.type.value,
            )
            return False

        before = self.aggregate
        self.aggregate = apply_event(before, event)
        if self.aggregate is before:
            return False
        logger.info(
            "execution_status_changed",
            execution_id=self.execution_id,
            status=self.aggregate.status.value,
        )
        return True

    def cancel(self) -> bool:
        """Cancel locally. Returns False if already terminal."""
        if self.aggregate.is_terminal:
            return False
        self.aggregate = cancel(self.aggregate)
        logger.info("execution_cancelled", execution_id=self.execution_id)
        return True

    def update_connection(self, handle: ConnectionHandle) -> None:
        self.connection = ConnectionStatus.from_handle(handle)

    def view(self) -> ExecutionView:
        live = self.steps.snapshot()
        return ExecutionView(
            execution=self.aggregate,
            title=self.title,
            steps=merge(self.skeleton, live),
            live_steps=live,
            progress=progress(live),
            connection=self.connection,
        )

    def summary(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "persona": self.persona,
            "command": self.command,
            "status": self.aggregate.status.value,
            "title": self.title,
            "created_at": self.created_at,
            "connection_state": self.connection.state.value,
        }
