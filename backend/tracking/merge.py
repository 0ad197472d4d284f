"""Overlay of live step records onto the six-layer skeleton."""

from collections.abc import Sequence
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

from tracking.skeleton import (
    KNOWN_LAYER_NAMES,
    SKELETON_SIZE,
    AgentDescriptor,
    SkeletonEntry,
    normalize_layer_name,
)
from tracking.steps import StepRecord, StepStatus


class Provenance(StrEnum):
    SKELETON_ONLY = "skeleton-only"
    LIVE_ENRICHED = "live-enriched"


class MergedStepView(BaseModel):
    """One rendered layer: skeleton structure with live fields on top."""

    model_config = ConfigDict(frozen=True)

    position: int
    layer: str
    layer_name: str
    agent: str
    action: str
    status: StepStatus
    is_parallel: bool = False
    agents: tuple[AgentDescriptor, ...] = ()
    description: str = ""
    capabilities: tuple[str, ...] = ()
    timeout_ms: int = 5000
    provenance: Provenance = Provenance.SKELETON_ONLY
    step_id: str | None = None
    agent_type: str | None = None
    specialization: str | None = None
    started_at: float | None = None
    completed_at: float | None = None
    duration: float | None = None
    output_data: Any = None
    result: str | None = None
    synthesized: bool = False
    group_id: str | None = None
    total_in_group: int | None = None
    index_in_group: int | None = None


def _from_skeleton(entry: SkeletonEntry) -> dict[str, Any]:
    return dict(entry)


def _overlay(entry: SkeletonEntry, record: StepRecord) -> MergedStepView:
    fields = _from_skeleton(entry)
    agent = record.agent_name or entry.agent
    fields.update(
        agent=agent,
        action=record.action or entry.action,
        status=record.status,
        description=record.description or entry.description,
        capabilities=tuple(record.capabilities) or entry.capabilities,
        provenance=Provenance.LIVE_ENRICHED,
        step_id=record.step_id,
        agent_type=record.agent_type or None,
        specialization=record.specialization or None,
        started_at=record.started_at,
        completed_at=record.completed_at,
        duration=record.duration,
        output_data=record.output_data,
        synthesized=record.synthesized,
        group_id=record.group_id,
        total_in_group=record.total_in_group,
        index_in_group=record.index_in_group,
    )
    if record.is_parallel:
        fields["is_parallel"] = True
    if record.status == StepStatus.COMPLETED:
        fields["result"] = f"{agent} completed successfully"
    return MergedStepView(**fields)


def merge(
    skeleton: Sequence[SkeletonEntry],
    live_steps: Sequence[StepRecord],
) -> list[MergedStepView]:
    """Overlay live step records onto the skeleton.

    Each skeleton entry at position ``i`` takes the first unused record whose
    layer names the entry's layer. Failing that, it takes the first unused
    record with ``step_order == i + 1`` whose layer is none of the six known
    layers, so that a step reported under an unrecognized layer still lands
    somewhere sensible without stealing another layer's slot. A record
    enriches at most one entry.

    Args:
        skeleton: Exactly six skeleton entries in layer order.
        live_steps: Step records in snapshot order.

    Returns:
        Six merged views in skeleton order.

    Raises:
        ValueError: If the skeleton does not have exactly six entries.
    """
    if len(skeleton) != SKELETON_SIZE:
        raise ValueError(f"skeleton must have {SKELETON_SIZE} entries, got {len(skeleton)}")

    used: set[int] = set()
    merged = []
    for index, entry in enumerate(skeleton):
        target = normalize_layer_name(entry.layer_name)
        match = next(
            (
                i for i, record in enumerate(live_steps)
                if i not in used and normalize_layer_name(record.layer) == target
            ),
            None,
        )
        if match is None:
            match = next(
                (
                    i for i, record in enumerate(live_steps)
                    if i not in used
                    and record.step_order == index + 1
                    and normalize_layer_name(record.layer) not in KNOWN_LAYER_NAMES
                ),
                None,
            )

        if match is None:
            merged.append(MergedStepView(**_from_skeleton(entry)))
        else:
            used.add(match)
            merged.append(_overlay(entry, live_steps[match]))

    assert len(merged) == SKELETON_SIZE
    return merged


def progress(live_steps: Sequence[StepRecord]) -> float:
    """Percentage of live steps that have completed."""
    if not live_steps:
        return 0.0
    done = sum(1 for record in live_steps if record.status == StepStatus.COMPLETED)
    return done / len(live_steps) * 100
