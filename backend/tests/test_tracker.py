"""Tests for tracking/tracker.py -- per-execution tracking session."""

import json

import pytest
from conftest import make_event, step_completed, step_started

from events.parser import parse
from events.types import EventType
from tracking.aggregate import ExecutionStatus
from tracking.connection import ConnectionHandle, ConnectionState
from tracking.merge import Provenance
from tracking.skeleton import AgentDirectory, build_skeleton
from tracking.steps import StepStatus
from tracking.tracker import ConnectionStatus, ExecutionTracker


def _envelope(event_type: str, **data: object) -> str:
    return json.dumps({
        "type": "agent-event",
        "executionId": "E1",
        "eventType": event_type,
        "eventData": data,
    })


@pytest.fixture()
def tracker() -> ExecutionTracker:
    directory = AgentDirectory.from_mapping({
        "process": [{"name": "Diagnostics Runner", "persona": "ops"}],
    })
    return ExecutionTracker(
        "E1",
        build_skeleton(directory, "ops", "Run Diagnostics"),
        "Enterprise Run Diagnostics Execution",
        persona="ops",
        command="Run Diagnostics",
    )


# =========================================================================
# End-to-end scenario
# =========================================================================


class TestRunDiagnosticsScenario:
    """Single System step followed by completion."""

    def test_system_step_completes(self, tracker: ExecutionTracker) -> None:
        skeleton_view = tracker.view()

        for raw in (
            _envelope("step_started", stepId=1, layer="System", stepOrder=3),
            _envelope("step_completed", stepId=1, layer="System", stepOrder=3, duration=420),
            _envelope("execution_completed", totalDuration=900),
        ):
            event = parse(raw)
            assert event is not None
            tracker.apply(event)

        view = tracker.view()
        assert view.execution.status == ExecutionStatus.COMPLETED
        assert view.execution.total_duration == 900

        assert len(view.live_steps) == 1
        record = view.live_steps[0]
        assert record.status == StepStatus.COMPLETED
        assert record.duration == 420

        assert len(view.steps) == 6
        system = view.steps[4]
        assert system.layer_name == "System"
        assert system.status == StepStatus.COMPLETED
        assert system.duration == 420

        for index in (0, 1, 2, 3, 5):
            assert view.steps[index] == skeleton_view.steps[index]
            assert view.steps[index].provenance == Provenance.SKELETON_ONLY

        assert view.progress == 100.0


# =========================================================================
# Event application
# =========================================================================


class TestApply:
    """Routing events to the aggregate or the step store."""

    def test_duplicate_start_reports_no_change(self, tracker: ExecutionTracker) -> None:
        started = make_event(EventType.EXECUTION_STARTED)
        assert tracker.apply(started) is True
        before = tracker.aggregate
        assert tracker.apply(started) is False
        assert tracker.aggregate is before

    def test_step_event_changes_store_only(self, tracker: ExecutionTracker) -> None:
        tracker.apply(make_event(EventType.EXECUTION_STARTED))
        assert tracker.apply(step_started("s1", "Process", 4)) is True
        assert tracker.aggregate.status == ExecutionStatus.RUNNING
        assert len(tracker.steps) == 1

    def test_foreign_execution_ignored(self, tracker: ExecutionTracker) -> None:
        assert tracker.apply(make_event(EventType.EXECUTION_STARTED, execution_id="E2")) is False
        assert tracker.aggregate.status == ExecutionStatus.INITIALIZING

    def test_late_step_completion_after_execution_completed(self, tracker: ExecutionTracker) -> None:
        tracker.apply(make_event(EventType.EXECUTION_STARTED))
        tracker.apply(step_started("1", "System", 5))
        tracker.apply(make_event(EventType.EXECUTION_COMPLETED, total_duration=900))

        assert tracker.apply(step_completed("1", "System", 5, duration=420)) is True

        view = tracker.view()
        assert view.execution.status == ExecutionStatus.COMPLETED
        assert view.steps[4].status == StepStatus.COMPLETED
        assert view.steps[4].duration == 420

    def test_terminal_status_frozen(self, tracker: ExecutionTracker) -> None:
        tracker.apply(make_event(EventType.EXECUTION_ERROR, message="boom"))
        assert tracker.apply(make_event(EventType.EXECUTION_COMPLETED, total_duration=900)) is False
        assert tracker.apply(step_started("s1", "Process", 4)) is True
        assert tracker.aggregate.status == ExecutionStatus.ERROR
        assert tracker.aggregate.error_details == {"message": "boom"}

    def test_step_events_dropped_after_cancel(self, tracker: ExecutionTracker) -> None:
        tracker.cancel()
        assert tracker.apply(step_started("s1", "Process", 4)) is False
        assert len(tracker.steps) == 0

    def test_cancel(self, tracker: ExecutionTracker) -> None:
        assert tracker.cancel() is True
        assert tracker.aggregate.status == ExecutionStatus.CANCELLED
        assert tracker.cancel() is False


# =========================================================================
# View rendering
# =========================================================================


class TestView:
    def test_initial_view(self, tracker: ExecutionTracker) -> None:
        view = tracker.view()
        assert view.title == "Enterprise Run Diagnostics Execution"
        assert view.execution.status == ExecutionStatus.INITIALIZING
        assert view.progress == 0.0
        assert view.steps[3].agent == "Diagnostics Runner"
        assert view.connection.state == ConnectionState.IDLE

    def test_view_serializes_to_json(self, tracker: ExecutionTracker) -> None:
        tracker.apply(step_started("s1", "Process", 4, output_data={"rows": 3}))
        data = tracker.view().model_dump(mode="json")
        assert data["steps"][3]["provenance"] == "live-enriched"
        assert data["live_steps"][0]["step_id"] == "s1"

    def test_connection_status_from_retrying_handle(self, tracker: ExecutionTracker) -> None:
        handle = ConnectionHandle(
            execution_id="E1",
            user_id="u",
            state=ConnectionState.RETRYING,
            attempt=1,
            next_retry_delay=2.0,
        )
        tracker.update_connection(handle)
        status = tracker.view().connection
        assert status.state == ConnectionState.RETRYING
        assert status.connection_lost is False
        assert status.message == "Reconnecting in 2s (attempt 2)"

    def test_connection_status_lost(self) -> None:
        handle = ConnectionHandle(execution_id="E1", user_id="u", state=ConnectionState.LOST, attempt=5)
        status = ConnectionStatus.from_handle(handle)
        assert status.connection_lost is True
        assert status.message is not None

    def test_summary(self, tracker: ExecutionTracker) -> None:
        summary = tracker.summary()
        assert summary["execution_id"] == "E1"
        assert summary["status"] == "initializing"
        assert summary["connection_state"] == "idle"
