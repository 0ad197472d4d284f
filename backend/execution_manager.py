"""Execution manager for tracking executor workflow runs.

This module provides the ExecutionManager class that manages the lifecycle of
tracked executions: starting runs on the executor, building their skeleton,
streaming their events and publishing rendered views.

The ExecutionManager coordinates between:
- ExecutorClient: Starts executions and serves the agent directory
- ConnectionManager: One event stream per execution, with backoff reconnect
- ExecutionTracker: Per-execution aggregate, step store and skeleton
- EventBus: Publishes each new ExecutionView to dashboard subscribers

Usage:
    >>> from events import get_event_bus
    >>> from executor_client import ExecutorClient
    >>> from execution_manager import ExecutionManager
    >>>
    >>> manager = ExecutionManager(ExecutorClient(), get_event_bus())
    >>>
    >>> # Start a run and begin tracking it
    >>> tracker = await manager.start_execution("ops", "Run Diagnostics")
    >>> print(tracker.view().execution.status)
    >>>
    >>> # Cleanup when done
    >>> await manager.cleanup_all()
"""

import asyncio
import time
from typing import Protocol

import structlog

from config import settings
from events import EventBus, UpdateKind, ViewUpdate, parse
from executor_client import ExecutorError
from tracking.aggregate import ExecutionStatus
from tracking.connection import (
    BackoffPolicy,
    ConnectionHandle,
    ConnectionManager,
    ConnectionState,
    Connector,
    Scheduler,
    StreamConnection,
)
from tracking.skeleton import HierarchyConfig, SkeletonBuilder, workflow_title
from tracking.tracker import ExecutionTracker, ExecutionView

logger = structlog.get_logger(__name__)

_RETRYABLE_STATUSES = frozenset({ExecutionStatus.ERROR, ExecutionStatus.CANCELLED})


class ExecutionNotFoundError(KeyError):
    """No tracked execution has the given id."""


class InvalidExecutionStateError(ValueError):
    """The requested action does not apply in the execution's current state."""


class Executor(Protocol):
    """The parts of ExecutorClient the manager depends on."""

    async def start_execution(
        self, persona: str, command: str, orchestration_strategy: str | None = None
    ) -> str: ...

    async def fetch_hierarchy(self, persona: str) -> HierarchyConfig: ...

    async def connect(self, execution_id: str, user_id: str) -> StreamConnection: ...


def default_policy() -> BackoffPolicy:
    """Backoff policy from settings."""
    return BackoffPolicy(
        base_delay=settings.reconnect_base_delay_seconds,
        max_delay=settings.reconnect_max_delay_seconds,
        max_attempts=settings.max_reconnect_attempts,
    )


class ExecutionManager:
    """Manages the lifecycle of tracked executions.

    Each tracked execution id has exactly one ExecutionTracker and at most
    one live stream. Retrying an execution never reuses the old tracker; it
    starts a new execution id with fresh state.

    Thread Safety:
        Registry changes use asyncio.Lock. Event application runs on the
        stream task of the execution concerned and does not need the lock.

    Attributes:
        executor: Client for the workflow executor
        event_bus: Bus that receives every rendered view
        connections: Stream supervisor
    """

    def __init__(
        self,
        executor: Executor,
        event_bus: EventBus,
        *,
        connector: Connector | None = None,
        policy: BackoffPolicy | None = None,
        call_later: Scheduler | None = None,
        skeleton_builder: SkeletonBuilder | None = None,
    ) -> None:
        """Initialize the ExecutionManager.

        Args:
            executor: Client used to start runs and fetch the agent directory
            event_bus: Bus for publishing views
            connector: Stream connector; defaults to ``executor.connect``
            policy: Reconnect backoff policy; defaults to settings
            call_later: Timer scheduler for reconnects (tests inject a fake)
            skeleton_builder: Skeleton builder; defaults to one configured
                from settings
        """
        self.executor = executor
        self.event_bus = event_bus
        self.connections = ConnectionManager(
            connector or executor.connect,
            on_message=self._on_message,
            on_state_change=self._on_state_change,
            policy=policy or default_policy(),
            call_later=call_later,
        )
        self.skeleton_builder = skeleton_builder or SkeletonBuilder(
            admin_personas=settings.admin_personas,
            role_agent_names=settings.role_agent_names,
            default_max=settings.default_max_agents_per_layer,
        )
        self._trackers: dict[str, ExecutionTracker] = {}
        self._user_ids: dict[str, str] = {}
        self._lock = asyncio.Lock()
        logger.info("execution_manager_initialized")

    # -------------------------------------------------------------------------
    # Starting and tracking
    # -------------------------------------------------------------------------

    async def _load_hierarchy(self, persona: str) -> HierarchyConfig:
        """Fetch the hierarchy config, degrading to an empty one on failure."""
        try:
            return await self.executor.fetch_hierarchy(persona)
        except ExecutorError as e:
            logger.warning(
                "hierarchy_fetch_failed",
                persona=persona,
                error=str(e),
            )
            return HierarchyConfig()

    async def start_execution(
        self,
        persona: str,
        command: str,
        orchestration_strategy: str | None = None,
        user_id: str | None = None,
    ) -> ExecutionTracker:
        """Start a run on the executor and begin tracking it.

        Args:
            persona: The requesting persona
            command: The command to execute
            orchestration_strategy: Strategy passed to the executor
            user_id: User id for the event stream; defaults to settings

        Returns:
            The tracker of the new execution

        Raises:
            ExecutorError: If the executor does not start the run
        """
        strategy = orchestration_strategy or settings.default_orchestration_strategy
        logger.info("start_execution_requested", persona=persona, command=command, strategy=strategy)

        hierarchy = await self._load_hierarchy(persona)
        execution_id = await self.executor.start_execution(persona, command, strategy)

        return await self.track_execution(
            execution_id,
            persona=persona,
            command=command,
            orchestration_strategy=strategy,
            user_id=user_id,
            hierarchy=hierarchy,
        )

    async def track_execution(
        self,
        execution_id: str,
        *,
        persona: str,
        command: str,
        orchestration_strategy: str | None = None,
        user_id: str | None = None,
        hierarchy: HierarchyConfig | None = None,
    ) -> ExecutionTracker:
        """Begin tracking an execution that is already running on the executor.

        Tracking an id that is already tracked replaces its tracker and
        stream; state is never carried over.
        """
        if hierarchy is None:
            hierarchy = await self._load_hierarchy(persona)

        skeleton = self.skeleton_builder.build(hierarchy, persona, command)
        title = workflow_title(
            hierarchy.company_name or settings.default_company_name, persona, command
        )
        tracker = ExecutionTracker(
            execution_id,
            skeleton,
            title,
            persona=persona,
            command=command,
            orchestration_strategy=orchestration_strategy,
        )
        user_id = user_id or settings.user_id

        async with self._lock:
            replaced = execution_id in self._trackers
            self._trackers[execution_id] = tracker
            self._user_ids[execution_id] = user_id

        if replaced:
            logger.info("tracker_replaced", execution_id=execution_id)

        self._publish(tracker)
        await self.connections.open(execution_id, user_id)

        logger.info(
            "tracking_started",
            execution_id=execution_id,
            persona=persona,
            command=command,
        )
        return tracker

    # -------------------------------------------------------------------------
    # Stream callbacks
    # -------------------------------------------------------------------------

    def _on_message(self, execution_id: str, raw: str) -> None:
        event = parse(raw)
        if event is None:
            return

        if event.execution_id != execution_id:
            logger.debug(
                "event_for_other_execution_dropped",
                stream_execution_id=execution_id,
                event_execution_id=event.execution_id,
            )
            return

        tracker = self._trackers.get(execution_id)
        if tracker is None:
            logger.debug("event_for_untracked_execution", execution_id=execution_id)
            return

        if tracker.apply(event):
            self._publish(tracker)

    def _on_state_change(self, handle: ConnectionHandle) -> None:
        tracker = self._trackers.get(handle.execution_id)
        if tracker is None:
            return
        current = self.connections.get(handle.execution_id)
        # A replaced handle may still report its own teardown
        if current is not None and current is not handle:
            return
        tracker.update_connection(handle)
        self._publish(tracker)

    def _publish(self, tracker: ExecutionTracker) -> None:
        self.event_bus.publish(
            ViewUpdate(
                kind=UpdateKind.VIEW,
                execution_id=tracker.execution_id,
                timestamp=time.time(),
                view=tracker.view().model_dump(mode="json"),
            )
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_tracker(self, execution_id: str) -> ExecutionTracker | None:
        """Get the tracker of an execution, or None if it is not tracked."""
        return self._trackers.get(execution_id)

    def require_tracker(self, execution_id: str) -> ExecutionTracker:
        """Get the tracker of an execution.

        Raises:
            ExecutionNotFoundError: If the execution is not tracked
        """
        tracker = self._trackers.get(execution_id)
        if tracker is None:
            raise ExecutionNotFoundError(execution_id)
        return tracker

    def get_view(self, execution_id: str) -> ExecutionView:
        return self.require_tracker(execution_id).view()

    def list_trackers(self) -> list[ExecutionTracker]:
        """All tracked executions, most recent first."""
        return sorted(self._trackers.values(), key=lambda t: t.created_at, reverse=True)

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def cancel_execution(self, execution_id: str) -> ExecutionView:
        """Cancel an execution locally and stop its stream.

        Raises:
            ExecutionNotFoundError: If the execution is not tracked
            InvalidExecutionStateError: If the execution has already finished
        """
        tracker = self.require_tracker(execution_id)
        if not tracker.cancel():
            raise InvalidExecutionStateError(
                f"Execution '{execution_id}' is already {tracker.aggregate.status.value}"
            )

        handle = self.connections.get(execution_id)
        if handle is not None:
            await self.connections.close(handle)
        self._publish(tracker)
        return tracker.view()

    async def restart_connection(self, execution_id: str) -> ExecutionView:
        """Reconnect the stream of an execution whose connection was lost.

        Raises:
            ExecutionNotFoundError: If the execution is not tracked
            InvalidExecutionStateError: If the execution has finished or its
                stream is already connected
        """
        tracker = self.require_tracker(execution_id)
        if tracker.is_terminal:
            raise InvalidExecutionStateError(
                f"Execution '{execution_id}' is {tracker.aggregate.status.value}"
            )

        handle = self.connections.get(execution_id)
        if handle is None:
            await self.connections.open(execution_id, self._user_ids.get(execution_id, settings.user_id))
        elif handle.state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
            raise InvalidExecutionStateError(
                f"Stream for '{execution_id}' is already {handle.state.value}"
            )
        else:
            self.connections.restart(handle)

        logger.info("connection_restarted", execution_id=execution_id)
        return tracker.view()

    async def retry_execution(self, execution_id: str) -> ExecutionTracker:
        """Start a failed or cancelled execution again under a new id.

        The old execution stays tracked with its final state.

        Raises:
            ExecutionNotFoundError: If the execution is not tracked
            InvalidExecutionStateError: If the execution did not fail and was
                not cancelled
            ExecutorError: If the executor does not start the new run
        """
        tracker = self.require_tracker(execution_id)
        if tracker.aggregate.status not in _RETRYABLE_STATUSES:
            raise InvalidExecutionStateError(
                f"Execution '{execution_id}' is {tracker.aggregate.status.value}; "
                "only failed or cancelled executions can be retried"
            )

        handle = self.connections.get(execution_id)
        if handle is not None:
            await self.connections.close(handle)

        logger.info("retry_execution", execution_id=execution_id)
        return await self.start_execution(
            tracker.persona,
            tracker.command,
            tracker.aggregate.orchestration_strategy,
            self._user_ids.get(execution_id),
        )

    async def stop_tracking(self, execution_id: str) -> None:
        """Stop tracking an execution and release its stream and subscribers.

        Raises:
            ExecutionNotFoundError: If the execution is not tracked
        """
        async with self._lock:
            if execution_id not in self._trackers:
                raise ExecutionNotFoundError(execution_id)
            del self._trackers[execution_id]
            self._user_ids.pop(execution_id, None)

        handle = self.connections.get(execution_id)
        if handle is not None:
            await self.connections.close(handle)
        self.event_bus.close_execution(execution_id)
        logger.info("tracking_stopped", execution_id=execution_id)

    async def cleanup_all(self) -> None:
        """Close every stream and drop every tracker.

        Called during application shutdown.
        """
        logger.info("cleanup_all_start", execution_count=len(self._trackers))

        async with self._lock:
            execution_ids = list(self._trackers)
            self._trackers.clear()
            self._user_ids.clear()

        await self.connections.close_all()
        for execution_id in execution_ids:
            self.event_bus.close_execution(execution_id)

        logger.info("cleanup_all_complete")
