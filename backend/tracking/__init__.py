"""Execution tracking core.

Modules:
    - connection: Stream lifecycle with backoff reconnect
    - aggregate: Execution status state machine
    - steps: Step reconciliation store
    - skeleton: Six-layer skeleton builder and agent filtering
    - merge: Overlay of live steps onto the skeleton
    - tracker: Per-execution session rendering ExecutionView
"""

from tracking.aggregate import (
    ExecutionAggregate,
    ExecutionStatus,
    apply_event,
    cancel,
    new_aggregate,
)
from tracking.connection import (
    BackoffPolicy,
    ConnectionHandle,
    ConnectionManager,
    ConnectionState,
    StreamClosedError,
    StreamConnectError,
    StreamConnection,
    StreamError,
    backoff_delay,
)
from tracking.merge import MergedStepView, Provenance, merge
from tracking.skeleton import (
    LAYERS,
    AgentDescriptor,
    AgentDirectory,
    HierarchyConfig,
    SkeletonBuilder,
    SkeletonEntry,
    VisibilityRule,
    VisibilityRules,
    build_skeleton,
    filter_agents,
    workflow_title,
)
from tracking.steps import StepRecord, StepStatus, StepStore
from tracking.tracker import ConnectionStatus, ExecutionTracker, ExecutionView

__all__ = [
    # Aggregate
    "ExecutionAggregate",
    "ExecutionStatus",
    "apply_event",
    "cancel",
    "new_aggregate",
    # Connection
    "BackoffPolicy",
    "ConnectionHandle",
    "ConnectionManager",
    "ConnectionState",
    "StreamClosedError",
    "StreamConnectError",
    "StreamConnection",
    "StreamError",
    "backoff_delay",
    # Steps
    "StepRecord",
    "StepStatus",
    "StepStore",
    # Skeleton
    "LAYERS",
    "AgentDescriptor",
    "AgentDirectory",
    "HierarchyConfig",
    "SkeletonBuilder",
    "SkeletonEntry",
    "VisibilityRule",
    "VisibilityRules",
    "build_skeleton",
    "filter_agents",
    "workflow_title",
    # Merge
    "MergedStepView",
    "Provenance",
    "merge",
    # Tracker
    "ConnectionStatus",
    "ExecutionTracker",
    "ExecutionView",
]
