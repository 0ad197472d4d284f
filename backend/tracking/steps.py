"""Step reconciliation store.

Keeps one ``StepRecord`` per step identity and folds ``step_started`` and
``step_completed`` events into it. Events may arrive out of order or more
than once; every upsert is a field-level merge, so a field known from an
earlier event survives a later event that omits it.

Identity is the compound key ``(step_id, layer)`` in both handlers; a missing
layer becomes ``"unknown"``.
"""

import itertools
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from events.types import EventType, ExecutionEvent

logger = structlog.get_logger(__name__)

UNKNOWN_LAYER = "unknown"

StepKey = tuple[str, str]


class StepStatus(StrEnum):
    """Status of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = frozenset({
    StepStatus.COMPLETED,
    StepStatus.ERROR,
    StepStatus.SKIPPED,
})


class StepRecord(BaseModel):
    """Reconciled state of one step.

    ``synthesized`` marks a record created from a ``step_completed`` that
    arrived before any ``step_started`` for the same key.
    """

    model_config = ConfigDict(frozen=True)

    step_id: str
    layer: str
    step_order: int
    agent_name: str = ""
    agent_type: str = ""
    specialization: str = ""
    description: str = ""
    capabilities: list[str] = []
    action: str = ""
    status: StepStatus = StepStatus.PENDING
    started_at: float | None = None
    completed_at: float | None = None
    duration: float | None = None
    output_data: Any = None
    group_id: str | None = None
    is_parallel: bool = False
    total_in_group: int | None = None
    index_in_group: int | None = None
    synthesized: bool = False

    @property
    def key(self) -> StepKey:
        """Compound identity of this record."""
        return (self.step_id, self.layer)


def step_key(event: ExecutionEvent) -> StepKey | None:
    """Compute the identity key of a step event, or None without a step id."""
    if event.step_id is None:
        return None
    return (event.step_id, event.layer or UNKNOWN_LAYER)


def _completion_status(event: ExecutionEvent) -> StepStatus:
    if event.status in (StepStatus.ERROR, StepStatus.SKIPPED):
        return StepStatus(event.status)
    return StepStatus.COMPLETED


def _descriptive_updates(event: ExecutionEvent) -> dict[str, Any]:
    """Fields an event may enrich; absent fields are left out entirely."""
    candidates: dict[str, Any] = {
        "agent_name": event.agent_name,
        "agent_type": event.agent_type,
        "specialization": event.specialization,
        "description": event.description,
        "capabilities": event.capabilities or None,
        "action": event.action,
        "group_id": event.group_id,
        "is_parallel": event.is_parallel,
        "total_in_group": event.total_in_group,
        "index_in_group": event.index_in_group,
    }
    return {name: value for name, value in candidates.items() if value is not None}


class StepStore:
    """Keyed table of step records for one execution.

    Usage:
        >>> store = StepStore()
        >>> store.upsert(started_event)
        >>> store.upsert(completed_event)
        >>> [record.status for record in store.snapshot()]
        ['completed']
    """

    def __init__(self, execution_id: str = "") -> None:
        self.execution_id = execution_id
        self._records: dict[StepKey, StepRecord] = {}
        self._inserted_at: dict[StepKey, int] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._records)

    def get(self, step_id: str, layer: str | None = None) -> StepRecord | None:
        """Look up a record by its compound key."""
        return self._records.get((step_id, layer or UNKNOWN_LAYER))

    def upsert(self, event: ExecutionEvent) -> StepRecord | None:
        """Fold a step event into the store.

        Args:
            event: A ``step_started`` or ``step_completed`` event.

        Returns:
            The record after the merge, or None if the event was not applied
            (not a step event, or no step id).
        """
        if not event.is_step_event:
            return None

        key = step_key(event)
        if key is None:
            logger.warning(
                "step_event_missing_step_id",
                execution_id=self.execution_id,
                event_type=event.type.value,
                layer=event.layer,
            )
            return None

        existing = self._records.get(key)
        if event.type == EventType.STEP_STARTED:
            record = self._apply_started(key, existing, event)
        else:
            record = self._apply_completed(key, existing, event)

        if existing is None:
            self._inserted_at[key] = next(self._counter)
        self._records[key] = record
        return record

    def _new_record(self, key: StepKey, event: ExecutionEvent, **fields: Any) -> StepRecord:
        step_order = event.step_order if event.step_order is not None else len(self._records) + 1
        return StepRecord(
            step_id=key[0],
            layer=key[1],
            step_order=step_order,
            **{**_descriptive_updates(event), **fields},
        )

    def _apply_started(
        self,
        key: StepKey,
        existing: StepRecord | None,
        event: ExecutionEvent,
    ) -> StepRecord:
        if existing is None:
            return self._new_record(
                key, event, status=StepStatus.RUNNING, started_at=event.timestamp
            )

        update = _descriptive_updates(event)
        if existing.started_at is None:
            update["started_at"] = event.timestamp
        # A late or replayed start never moves a finished step back to running
        if existing.status not in TERMINAL_STEP_STATUSES:
            update["status"] = StepStatus.RUNNING
        return existing.model_copy(update=update)

    def _apply_completed(
        self,
        key: StepKey,
        existing: StepRecord | None,
        event: ExecutionEvent,
    ) -> StepRecord:
        completion: dict[str, Any] = {
            "status": _completion_status(event),
            "completed_at": event.timestamp,
        }
        if event.duration is not None:
            completion["duration"] = event.duration
        if event.output_data is not None:
            completion["output_data"] = event.output_data

        if existing is None:
            logger.warning(
                "step_completed_without_start",
                execution_id=self.execution_id,
                step_id=key[0],
                layer=key[1],
            )
            return self._new_record(key, event, synthesized=True, **completion)

        if existing.status in TERMINAL_STEP_STATUSES:
            # Duplicate completion: keep the first completion stamp
            completion.pop("completed_at")
            completion["status"] = existing.status
        return existing.model_copy(update={**_descriptive_updates(event), **completion})

    def snapshot(self) -> list[StepRecord]:
        """Return all records ordered by step order, then insertion order."""
        return sorted(
            self._records.values(),
            key=lambda r: (r.step_order, self._inserted_at[r.key]),
        )
