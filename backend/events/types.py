"""Event type definitions for the execution tracker.

This module defines the events consumed from the workflow executor's stream
and the view updates re-published to dashboard subscribers. Inbound events
arrive in camelCase (the executor's wire format) and are exposed with
snake_case attributes.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class EnvelopeType(StrEnum):
    """Top-level ``type`` values of stream messages."""

    SUBSCRIBE_EXECUTION = "subscribe-execution"
    AGENT_EVENT = "agent-event"
    CONNECTION_ESTABLISHED = "connection-established"


class EventType(StrEnum):
    """Execution event types consumed by the tracker.

    Any other ``eventType`` seen on the stream is ignored.
    """

    EXECUTION_STARTED = "execution_started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_ERROR = "execution_error"


STEP_EVENT_TYPES = frozenset({EventType.STEP_STARTED, EventType.STEP_COMPLETED})


class ExecutionEvent(BaseModel):
    """A normalized event from the executor's stream.

    Both envelope shapes (nested ``eventData`` and flat) are parsed into this
    single model by ``events.parser.parse``. Only ``type`` and
    ``execution_id`` are required; every other field is optional and is
    present only when the producer supplied it.

    Payload fields by event type:

    EXECUTION_STARTED:
        - status, message

    STEP_STARTED / STEP_COMPLETED:
        - step_id, step_order, layer: step identity and position
        - agent_name, agent_type, specialization, description, capabilities, action
        - status
        - group_id, is_parallel, total_in_group, index_in_group: parallel group
        - duration, output_data: completion only

    EXECUTION_COMPLETED:
        - message, total_duration, layers_executed, result

    EXECUTION_ERROR:
        - message, error_details
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    type: EventType
    execution_id: str = Field(min_length=1)
    timestamp: float = Field(default_factory=time.time)

    # Step payload
    step_id: str | None = None
    step_order: int | None = None
    layer: str | None = None
    agent_name: str | None = None
    agent_type: str | None = None
    specialization: str | None = None
    description: str | None = None
    capabilities: list[str] | None = None
    action: str | None = None
    status: str | None = None
    duration: float | None = None
    output_data: Any = None
    group_id: str | None = None
    is_parallel: bool | None = None
    total_in_group: int | None = None
    index_in_group: int | None = None

    # Execution payload
    message: str | None = None
    total_duration: float | None = None
    layers_executed: int | None = None
    result: Any = None
    error_details: Any = None

    @field_validator("step_id", "group_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, v: Any) -> str | None:
        """Accept numeric identifiers; the executor emits both forms."""
        if v is None or v == "":
            return None
        if isinstance(v, bool):
            raise ValueError("identifier must be a string or number")
        if isinstance(v, (int, float)):
            return str(int(v)) if float(v).is_integer() else str(v)
        return v

    @field_validator("capabilities", mode="before")
    @classmethod
    def _coerce_capabilities(cls, v: Any) -> list[str] | None:
        """Normalize capabilities to a list of strings."""
        if v is None:
            return None
        if isinstance(v, str):
            return [v] if v else []
        if isinstance(v, (list, tuple)):
            return [str(item) for item in v if item is not None]
        if isinstance(v, dict):
            return [str(key) for key in v]
        return None

    @field_validator("layer", "agent_name", "agent_type", "specialization",
                     "description", "action", "status", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        """Treat empty strings as absent so they never overwrite known values."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def is_step_event(self) -> bool:
        """Whether this event is routed to the step store."""
        return self.type in STEP_EVENT_TYPES


class UpdateKind(StrEnum):
    """Kinds of updates published to dashboard subscribers."""

    VIEW = "view"
    CLOSED = "closed"


class ViewUpdate(BaseModel):
    """A view change published on the view bus.

    ``view`` is the JSON form of the tracker's ``ExecutionView``. ``CLOSED``
    is the sentinel put into subscriber queues when tracking of an execution
    stops; it carries no view.
    """

    kind: UpdateKind
    execution_id: str
    timestamp: float = Field(default_factory=time.time)
    view: dict[str, Any] | None = None
