"""Models module for Pydantic schemas.

This module exposes all request/response models used by the API.
"""

from models.schemas import (
    ExecutionResponse,
    ExecutionSummaryResponse,
    HealthResponse,
    OrchestrationStrategy,
    StartExecutionRequest,
)

__all__ = [
    "ExecutionResponse",
    "ExecutionSummaryResponse",
    "HealthResponse",
    "OrchestrationStrategy",
    "StartExecutionRequest",
]
