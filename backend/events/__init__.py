"""Event system for execution tracking.

This package holds both directions of event traffic:

Inbound (executor -> tracker):
    - EnvelopeType / EventType: Stream message and execution event types
    - ExecutionEvent: Normalized event produced from either envelope shape
    - parse: Envelope parser that drops handshakes and malformed messages

Outbound (tracker -> dashboard):
    - ViewUpdate / UpdateKind: Published execution views and close sentinels
    - EventBus: Async pub/sub of view updates per execution id

Usage:
    >>> from events import parse, get_event_bus
    >>>
    >>> event = parse('{"type": "agent-event", "executionId": "exec_1", '
    ...               '"eventType": "execution_started", "eventData": {}}')
    >>> event.type
    <EventType.EXECUTION_STARTED: 'execution_started'>
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("exec_1")

Event Flow:
    1. The Connection Manager receives a raw message from the executor stream
    2. parse() normalizes it into an ExecutionEvent (or drops it)
    3. The execution's tracker applies it and renders a new view
    4. The view is published on the EventBus to dashboard WebSockets
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.parser import parse
from events.types import (
    EnvelopeType,
    EventType,
    ExecutionEvent,
    UpdateKind,
    ViewUpdate,
)

__all__ = [
    # Event types
    "EnvelopeType",
    "EventType",
    "ExecutionEvent",
    "UpdateKind",
    "ViewUpdate",
    # Parsing
    "parse",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
