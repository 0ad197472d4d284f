"""Tests for models/schemas.py -- Pydantic request/response models.

Validates request validation rules, the camelCase aliases the dashboard
sends, and response defaults.
"""

import pytest
from pydantic import ValidationError

from models.schemas import (
    ExecutionResponse,
    ExecutionSummaryResponse,
    HealthResponse,
    OrchestrationStrategy,
    StartExecutionRequest,
)
from tracking.aggregate import ExecutionStatus
from tracking.connection import ConnectionState

# =========================================================================
# OrchestrationStrategy enum
# =========================================================================


class TestOrchestrationStrategy:
    def test_values(self) -> None:
        assert set(OrchestrationStrategy) == {"sequential", "parallel", "hybrid"}


# =========================================================================
# StartExecutionRequest
# =========================================================================


class TestStartExecutionRequest:
    """Request validation for POST /api/executions."""

    def test_minimal(self) -> None:
        req = StartExecutionRequest(persona="ops", command="Run Diagnostics")
        assert req.orchestration_strategy is None
        assert req.user_id is None

    def test_camel_case_aliases(self) -> None:
        req = StartExecutionRequest.model_validate({
            "persona": "ops",
            "command": "Run Diagnostics",
            "orchestrationStrategy": "hybrid",
            "userId": "user_1",
        })
        assert req.orchestration_strategy == OrchestrationStrategy.HYBRID
        assert req.user_id == "user_1"

    def test_snake_case_accepted(self) -> None:
        req = StartExecutionRequest(persona="ops", command="Run", orchestration_strategy="parallel")
        assert req.orchestration_strategy == OrchestrationStrategy.PARALLEL

    def test_empty_command_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StartExecutionRequest(persona="ops", command="")

    def test_empty_persona_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StartExecutionRequest(persona="", command="Run")

    def test_unknown_strategy_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StartExecutionRequest(persona="ops", command="Run", orchestration_strategy="random")


# =========================================================================
# Responses
# =========================================================================


class TestResponses:
    def test_execution_response(self) -> None:
        resp = ExecutionResponse(
            execution_id="exec_1",
            websocket_url="/ws/executions/exec_1",
            status=ExecutionStatus.RUNNING,
            title="Enterprise Run Diagnostics Execution",
        )
        assert resp.model_dump(mode="json")["status"] == "running"

    def test_summary_response(self) -> None:
        resp = ExecutionSummaryResponse(
            execution_id="exec_1",
            persona="ops",
            command="Run Diagnostics",
            status="completed",
            title="t",
            created_at=1700000000.0,
            connection_state="lost",
        )
        assert resp.status == ExecutionStatus.COMPLETED
        assert resp.connection_state == ConnectionState.LOST

    def test_health_defaults(self) -> None:
        resp = HealthResponse(status="healthy", timestamp=1.0)
        assert resp.version == "0.1.0"
        assert resp.tracked_executions == 0
        assert resp.open_streams == 0

    def test_health_invalid_status(self) -> None:
        with pytest.raises(ValidationError):
            HealthResponse(status="degraded", timestamp=1.0)
