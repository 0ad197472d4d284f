"""Tests for events/bus.py -- view fan-out bus.

Covers publish/subscribe, latest-view delivery to late subscribers, the
close_execution sentinel, and the global singleton accessor.
"""

import asyncio

from events.bus import EventBus, get_event_bus, reset_event_bus
from events.types import UpdateKind, ViewUpdate

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_update(execution_id: str = "exec_test", status: str = "running") -> ViewUpdate:
    return ViewUpdate(
        kind=UpdateKind.VIEW,
        execution_id=execution_id,
        view={"execution": {"status": status}},
    )


# =========================================================================
# Subscribe / Publish basics
# =========================================================================


class TestSubscribePublish:
    """Basic subscribe and publish."""

    async def test_subscribe_returns_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("exec_1")
        assert isinstance(queue, asyncio.Queue)
        assert queue.empty()

    async def test_publish_delivers_to_subscriber(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("exec_1")
        event_bus.publish(_make_update("exec_1"))
        received = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert received.kind == UpdateKind.VIEW
        assert received.execution_id == "exec_1"

    async def test_publish_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("exec_1")
        q2 = event_bus.subscribe("exec_1")
        event_bus.publish(_make_update("exec_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        r2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert r1 == r2

    async def test_publish_does_not_cross_executions(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("exec_1")
        q2 = event_bus.subscribe("exec_2")
        event_bus.publish(_make_update("exec_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        assert r1.execution_id == "exec_1"
        assert q2.empty()

    async def test_updates_delivered_in_order(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("exec_1")
        for status in ("initializing", "running", "completed"):
            event_bus.publish(_make_update("exec_1", status))
        statuses = [queue.get_nowait().view["execution"]["status"] for _ in range(3)]
        assert statuses == ["initializing", "running", "completed"]


# =========================================================================
# Latest view
# =========================================================================


class TestLatestView:
    """Late subscribers start from the most recent view only."""

    async def test_latest_delivered_on_subscribe(self, event_bus: EventBus) -> None:
        event_bus.publish(_make_update("exec_1", "initializing"))
        event_bus.publish(_make_update("exec_1", "running"))

        queue = event_bus.subscribe("exec_1")
        assert queue.qsize() == 1
        assert queue.get_nowait().view == {"execution": {"status": "running"}}

    async def test_get_latest(self, event_bus: EventBus) -> None:
        assert event_bus.get_latest("exec_1") is None
        update = _make_update("exec_1")
        event_bus.publish(update)
        assert event_bus.get_latest("exec_1") == update


# =========================================================================
# Unsubscribe
# =========================================================================


class TestUnsubscribe:
    async def test_unsubscribe_removes_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("exec_1")
        event_bus.unsubscribe("exec_1", queue)
        assert event_bus.get_subscriber_count("exec_1") == 0

    async def test_unsubscribe_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        event_bus.unsubscribe("nonexistent", asyncio.Queue())

    async def test_unsubscribe_wrong_queue_is_noop(self, event_bus: EventBus) -> None:
        event_bus.subscribe("exec_1")
        event_bus.unsubscribe("exec_1", asyncio.Queue())
        assert event_bus.get_subscriber_count("exec_1") == 1

    async def test_after_unsubscribe_updates_not_delivered(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("exec_1")
        event_bus.unsubscribe("exec_1", queue)
        event_bus.publish(_make_update("exec_1"))
        assert queue.empty()


# =========================================================================
# Close execution
# =========================================================================


class TestCloseExecution:
    """close_execution sends the CLOSED sentinel and forgets the execution."""

    async def test_close_sends_sentinel(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("exec_1")
        event_bus.close_execution("exec_1")
        sentinel = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert sentinel.kind == UpdateKind.CLOSED
        assert sentinel.view is None

    async def test_close_removes_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("exec_1")
        q2 = event_bus.subscribe("exec_1")
        event_bus.close_execution("exec_1")
        assert event_bus.get_subscriber_count("exec_1") == 0
        assert q1.get_nowait().kind == q2.get_nowait().kind == UpdateKind.CLOSED

    async def test_close_clears_latest_view(self, event_bus: EventBus) -> None:
        event_bus.publish(_make_update("exec_1"))
        event_bus.close_execution("exec_1")
        assert event_bus.get_latest("exec_1") is None
        assert event_bus.subscribe("exec_1").empty()

    async def test_close_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        event_bus.close_execution("nonexistent")


# =========================================================================
# Global singleton
# =========================================================================


class TestGlobalEventBus:
    def test_get_event_bus_returns_same_instance(self) -> None:
        reset_event_bus()
        assert get_event_bus() is get_event_bus()

    def test_reset_event_bus_creates_new_instance(self) -> None:
        reset_event_bus()
        first = get_event_bus()
        reset_event_bus()
        assert get_event_bus() is not first


# =========================================================================
# Subscriber info
# =========================================================================


class TestSubscriberInfo:
    async def test_subscriber_count(self, event_bus: EventBus) -> None:
        assert event_bus.get_subscriber_count("exec_1") == 0
        event_bus.subscribe("exec_1")
        event_bus.subscribe("exec_1")
        assert event_bus.get_subscriber_count("exec_1") == 2
