"""Shared test fixtures for backend tests.

Provides fake executor streams, a controllable reconnect scheduler, agent
directory fixtures and event factories so tests never touch a real executor.
"""

import asyncio
import sys
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from tracking.steps import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import EventType, ExecutionEvent  # noqa: E402
from tracking.connection import StreamClosedError, StreamConnectError  # noqa: E402
from tracking.skeleton import HierarchyConfig  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Fake executor stream
# ---------------------------------------------------------------------------


class FakeStreamConnection:
    """In-memory stream. Tests push messages and close frames into it."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue[str | StreamClosedError] = asyncio.Queue()

    def push(self, raw: str) -> None:
        self._inbox.put_nowait(raw)

    def drop(self, code: int = 1006) -> None:
        """Simulate an abnormal close."""
        self._inbox.put_nowait(StreamClosedError("dropped", clean=False, code=code))

    def close_cleanly(self) -> None:
        self._inbox.put_nowait(StreamClosedError("closed", clean=True, code=1000))

    async def send_json(self, data: dict[str, Any]) -> None:
        self.sent.append(data)

    async def receive(self) -> str:
        item = await self._inbox.get()
        if isinstance(item, StreamClosedError):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Connector returning scripted outcomes, then fresh connections.

    Args:
        script: Outcomes for successive calls. A FakeStreamConnection is
            returned; an exception instance is raised.
    """

    def __init__(self, script: list[FakeStreamConnection | Exception] | None = None) -> None:
        self.script = list(script or [])
        self.calls: list[tuple[str, str]] = []
        self.connections: list[FakeStreamConnection] = []

    async def __call__(self, execution_id: str, user_id: str) -> FakeStreamConnection:
        self.calls.append((execution_id, user_id))
        outcome = self.script.pop(0) if self.script else FakeStreamConnection()
        if isinstance(outcome, Exception):
            raise outcome
        self.connections.append(outcome)
        return outcome

    @property
    def latest(self) -> FakeStreamConnection:
        return self.connections[-1]


def connect_failure() -> StreamConnectError:
    return StreamConnectError("connection refused")


# ---------------------------------------------------------------------------
# Fake scheduler
# ---------------------------------------------------------------------------


class FakeTimer:
    def __init__(self, delay: float, callback: Any, args: tuple[Any, ...]) -> None:
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Records ``call_later`` requests; tests fire them explicitly."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback: Any, *args: Any) -> FakeTimer:
        timer = FakeTimer(delay, callback, args)
        self.timers.append(timer)
        return timer

    @property
    def delays(self) -> list[float]:
        return [timer.delay for timer in self.timers]

    @property
    def pending(self) -> list[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled]

    def fire_next(self) -> None:
        timer = self.pending[0]
        timer.cancelled = True
        timer.callback(*timer.args)


async def settle(rounds: int = 20) -> None:
    """Let background stream tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


# ---------------------------------------------------------------------------
# Agent directory
# ---------------------------------------------------------------------------


def make_hierarchy_payload() -> dict[str, Any]:
    """Hierarchy config in the executor's wire format."""
    return {
        "experienceLayer": {"id": 1, "companyName": "Acme Insurance"},
        "metaBrainLayer": {"id": 1, "orchestratorName": "Meta Orchestrator"},
        "layers": [
            {
                "layer": "Role",
                "agents": [
                    {"id": 10, "name": "Rachel Thompson (AUW)", "description": "Underwriter assistant"},
                    {"id": 11, "name": "John Stevens (IT Support)", "description": "IT support lead"},
                    {"id": 12, "name": "JARVIS Admin", "description": "Administrator"},
                ],
            },
            {
                "layer": "Process",
                "agents": [
                    {"id": 20, "name": "Diagnostics Runner", "persona": "ops",
                     "specialization": "System diagnostics", "capabilities": ["diagnose"]},
                    {"id": 21, "name": "Claims Intake", "persona": "rachel",
                     "description": "Claims intake processing"},
                ],
            },
            {
                "layer": "System",
                "agents": [
                    {"id": 30, "name": "Health Probe", "persona": "ops", "description": "Probes services"},
                    {"id": 31, "name": "Log Scanner", "persona": "ops", "description": "Scans logs for errors"},
                    {"id": 32, "name": "Patch Checker", "persona": "ops", "description": "Checks patch levels"},
                    {"id": 33, "name": "Disk Auditor", "persona": "ops", "description": "Audits disk usage"},
                ],
            },
            {
                "layer": "Interface",
                "agents": [
                    {"id": 40, "name": "Email Gateway", "config": {"persona": "ops"}},
                ],
            },
        ],
        "agentVisibilityRules": {},
    }


@pytest.fixture()
def hierarchy_payload() -> dict[str, Any]:
    return make_hierarchy_payload()


@pytest.fixture()
def hierarchy(hierarchy_payload: dict[str, Any]) -> HierarchyConfig:
    return HierarchyConfig.from_payload(hierarchy_payload)


# ---------------------------------------------------------------------------
# Event factories
# ---------------------------------------------------------------------------


def make_event(
    event_type: EventType,
    execution_id: str = "E1",
    timestamp: float = 1700000000.0,
    **fields: Any,
) -> ExecutionEvent:
    """Create an ExecutionEvent using snake_case field names."""
    return ExecutionEvent(type=event_type, execution_id=execution_id, timestamp=timestamp, **fields)


def step_started(step_id: str, layer: str | None, step_order: int | None = None, **fields: Any) -> ExecutionEvent:
    return make_event(EventType.STEP_STARTED, step_id=step_id, layer=layer, step_order=step_order, **fields)


def step_completed(step_id: str, layer: str | None, step_order: int | None = None, **fields: Any) -> ExecutionEvent:
    return make_event(EventType.STEP_COMPLETED, step_id=step_id, layer=layer, step_order=step_order, **fields)
