"""Async view bus for publishing execution views to dashboard consumers.

This module provides an EventBus class that fans out ``ViewUpdate`` objects
from the execution trackers to every dashboard subscriber (via WebSocket)
watching the same execution.

The event bus is thread-safe and supports:
- Multiple subscribers per execution
- Async update delivery via asyncio.Queue
- Latest-view retention so late subscribers start from the current state
- Execution lifecycle management (close terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import UpdateKind, ViewUpdate

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub bus for execution view updates.

    The EventBus manages subscriptions per execution id, allowing multiple
    dashboard connections to follow the same execution. Updates are delivered
    via asyncio.Queue for non-blocking consumption.

    Latest View:
        Only the most recent view of an execution matters to a dashboard, so
        instead of replaying history the bus keeps the last published update
        per execution and hands it to every new subscriber immediately.

    Thread Safety:
        All operations use a threading.Lock to ensure thread-safe access
        to the subscription registry.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("exec_123")
        >>> bus.publish(ViewUpdate(kind=UpdateKind.VIEW, execution_id="exec_123", view={...}))
        >>> update = await queue.get()
        >>> bus.unsubscribe("exec_123", queue)
        >>> bus.close_execution("exec_123")

    Attributes:
        _subscribers: Dict mapping execution_id to list of subscriber queues
        _latest: Dict mapping execution_id to the last published update
        _lock: Threading lock for thread-safe subscriber management
    """

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[ViewUpdate]]] = defaultdict(list)
        self._latest: dict[str, ViewUpdate] = {}
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, execution_id: str) -> asyncio.Queue[ViewUpdate]:
        """Subscribe to view updates for an execution.

        If a view has already been published for this execution, it is put
        into the new queue immediately.

        Args:
            execution_id: The execution to subscribe to

        Returns:
            An asyncio.Queue that will receive ViewUpdate objects
        """
        queue: asyncio.Queue[ViewUpdate] = asyncio.Queue()

        with self._lock:
            self._subscribers[execution_id].append(queue)
            subscriber_count = len(self._subscribers[execution_id])
            latest = self._latest.get(execution_id)

        if latest is not None:
            queue.put_nowait(latest)

        logger.info(
            "subscriber_added",
            execution_id=execution_id,
            subscriber_count=subscriber_count,
            latest_view_delivered=latest is not None,
        )
        return queue

    def unsubscribe(self, execution_id: str, queue: asyncio.Queue[ViewUpdate]) -> None:
        """Unsubscribe a queue from execution updates.

        If the queue is not registered, this is a no-op.

        Args:
            execution_id: The execution to unsubscribe from
            queue: The queue to remove
        """
        with self._lock:
            if execution_id in self._subscribers:
                try:
                    self._subscribers[execution_id].remove(queue)
                    subscriber_count = len(self._subscribers[execution_id])
                    logger.info(
                        "subscriber_removed",
                        execution_id=execution_id,
                        subscriber_count=subscriber_count,
                    )
                    if not self._subscribers[execution_id]:
                        del self._subscribers[execution_id]
                except ValueError:
                    logger.warning(
                        "unsubscribe_queue_not_found",
                        execution_id=execution_id,
                    )

    def publish(self, update: ViewUpdate) -> None:
        """Publish an update to all subscribers of its execution.

        The update also becomes the execution's latest view. Queues are
        unbounded, so publishing never blocks the stream consumer that
        produced the update.

        Args:
            update: The ViewUpdate to publish
        """
        with self._lock:
            self._latest[update.execution_id] = update
            subscribers = list(self._subscribers.get(update.execution_id, []))

        for queue in subscribers:
            queue.put_nowait(update)

        logger.debug(
            "view_update_published",
            execution_id=update.execution_id,
            subscriber_count=len(subscribers),
        )

    def get_latest(self, execution_id: str) -> ViewUpdate | None:
        """Return the last update published for an execution, if any."""
        with self._lock:
            return self._latest.get(execution_id)

    def close_execution(self, execution_id: str) -> None:
        """Close an execution's channel and notify all subscribers.

        Puts a ``CLOSED`` sentinel into each subscriber queue so consumers
        (e.g. the WebSocket send loop) can break out cleanly, then drops the
        subscribers and the retained view.

        Args:
            execution_id: The execution to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(execution_id, [])
            had_view = self._latest.pop(execution_id, None) is not None

        sentinel = ViewUpdate(kind=UpdateKind.CLOSED, execution_id=execution_id)
        for queue in queues_to_signal:
            queue.put_nowait(sentinel)

        if queues_to_signal or had_view:
            logger.info(
                "execution_channel_closed",
                execution_id=execution_id,
                subscribers_removed=len(queues_to_signal),
            )
        else:
            logger.debug("close_execution_not_found", execution_id=execution_id)

    def get_subscriber_count(self, execution_id: str) -> int:
        """Get the number of subscribers for an execution."""
        with self._lock:
            return len(self._subscribers.get(execution_id, []))


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.

    Returns:
        The global EventBus instance
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            # Double-check locking pattern
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
