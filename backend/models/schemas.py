"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API and WebSocket
handlers. The rendered execution state itself (``ExecutionView``) lives in
``tracking.tracker`` and is returned as-is.
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from tracking.aggregate import ExecutionStatus
from tracking.connection import ConnectionState


class OrchestrationStrategy(StrEnum):
    """Orchestration strategies understood by the executor."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HYBRID = "hybrid"


class StartExecutionRequest(BaseModel):
    """Request body for starting and tracking a new execution."""

    model_config = ConfigDict(populate_by_name=True)

    persona: str = Field(
        min_length=1,
        max_length=100,
        description="Persona requesting the execution",
        examples=["rachel", "john", "admin"],
    )
    command: str = Field(
        min_length=1,
        max_length=2000,
        description="Command to execute",
        examples=["Run Diagnostics"],
    )
    orchestration_strategy: OrchestrationStrategy | None = Field(
        default=None,
        alias="orchestrationStrategy",
        description="Orchestration strategy passed to the executor",
    )
    user_id: str | None = Field(
        default=None,
        alias="userId",
        max_length=200,
        description="User id sent when opening the event stream",
    )


class ExecutionResponse(BaseModel):
    """Response for starting or retrying an execution."""

    execution_id: str = Field(
        description="Execution identifier assigned by the executor",
        examples=["exec_1718000000000_ab12cd"],
    )
    websocket_url: str = Field(
        description="WebSocket URL for live execution views",
        examples=["/ws/executions/exec_1718000000000_ab12cd"],
    )
    status: ExecutionStatus = Field(
        description="Current execution status",
    )
    title: str = Field(
        description="Workflow title",
        examples=["Enterprise Run Diagnostics Execution"],
    )


class ExecutionSummaryResponse(BaseModel):
    """Summary information for listing tracked executions."""

    execution_id: str = Field(description="Execution identifier")
    persona: str = Field(description="Requesting persona")
    command: str = Field(description="Requested command")
    status: ExecutionStatus = Field(description="Current execution status")
    title: str = Field(description="Workflow title")
    created_at: float = Field(description="Unix timestamp when tracking began")
    connection_state: ConnectionState = Field(
        description="State of the execution's event stream",
    )


class HealthResponse(BaseModel):
    """Health check response with tracker status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    tracked_executions: int = Field(
        default=0,
        description="Number of executions currently tracked",
    )
    open_streams: int = Field(
        default=0,
        description="Number of executor streams currently supervised",
    )
