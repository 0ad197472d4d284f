"""HTTP API routes for the execution tracker.

This module defines all HTTP endpoints for starting, inspecting and
controlling tracked executions, plus health checks. Live views are pushed
via WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from executor_client import ExecutorError
from execution_manager import ExecutionNotFoundError, InvalidExecutionStateError
from models.schemas import (
    ExecutionResponse,
    ExecutionSummaryResponse,
    HealthResponse,
    StartExecutionRequest,
)
from tracking.tracker import ExecutionTracker, ExecutionView

if TYPE_CHECKING:
    from execution_manager import ExecutionManager

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _not_found(execution_id: str) -> HTTPException:
    logger.warning("execution_not_found", execution_id=execution_id)
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Execution {execution_id} not found",
    )


def _conflict(execution_id: str, error: InvalidExecutionStateError) -> HTTPException:
    logger.warning("execution_invalid_state", execution_id=execution_id, error=str(error))
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=str(error),
    )


def _bad_gateway(error: ExecutorError) -> HTTPException:
    logger.error("executor_request_failed", error=str(error), executor_status=error.status)
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Executor request failed: {error}",
    )


def _execution_response(tracker: ExecutionTracker) -> ExecutionResponse:
    return ExecutionResponse(
        execution_id=tracker.execution_id,
        websocket_url=f"/ws/executions/{tracker.execution_id}",
        status=tracker.aggregate.status,
        title=tracker.title,
    )


# Execution manager dependency (set during application startup)
_execution_manager: ExecutionManager | None = None


def set_execution_manager(manager: ExecutionManager) -> None:
    """Set the execution manager instance for the routes.

    This should be called during application startup to inject the
    execution manager dependency.

    Args:
        manager: The ExecutionManager instance to use for all routes.
    """
    global _execution_manager
    _execution_manager = manager
    logger.info("execution_manager_configured")


def get_execution_manager() -> ExecutionManager:
    """Get the execution manager instance.

    Returns:
        The configured ExecutionManager instance.

    Raises:
        RuntimeError: If the execution manager has not been configured.
    """
    if _execution_manager is None:
        logger.error("execution_manager_not_configured")
        raise RuntimeError(
            "ExecutionManager not configured. Call set_execution_manager() during startup."
        )
    return _execution_manager


# -----------------------------------------------------------------------------
# Executions
# -----------------------------------------------------------------------------


@router.post(
    "/api/executions",
    response_model=ExecutionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start an execution",
    description="Start a workflow on the executor and begin tracking it.",
)
async def start_execution(request: StartExecutionRequest) -> ExecutionResponse:
    """Start a new execution and return connection details for live views.

    Args:
        request: Persona, command and optional orchestration strategy.

    Returns:
        ExecutionResponse with execution_id, websocket_url and initial status.

    Raises:
        HTTPException: 502 if the executor does not start the run.
    """
    execution_manager = get_execution_manager()

    try:
        tracker = await execution_manager.start_execution(
            persona=request.persona,
            command=request.command,
            orchestration_strategy=request.orchestration_strategy,
            user_id=request.user_id,
        )
    except ExecutorError as e:
        raise _bad_gateway(e) from e

    logger.info(
        "execution_created",
        execution_id=tracker.execution_id,
        persona=request.persona,
        command_length=len(request.command),
    )
    return _execution_response(tracker)


@router.get(
    "/api/executions",
    response_model=list[ExecutionSummaryResponse],
    summary="List executions",
    description="List tracked executions, most recent first.",
)
async def list_executions(
    limit: Annotated[int, Query(description="Maximum executions to return", ge=1, le=200)] = 25,
) -> list[ExecutionSummaryResponse]:
    execution_manager = get_execution_manager()
    return [
        ExecutionSummaryResponse(**tracker.summary())
        for tracker in execution_manager.list_trackers()[:limit]
    ]


@router.get(
    "/api/executions/{execution_id}",
    response_model=ExecutionView,
    summary="Get execution view",
    description="Get the current rendered view of an execution: status, six layers and stream health.",
)
async def get_execution(
    execution_id: Annotated[str, Path(description="The execution ID")]
) -> ExecutionView:
    execution_manager = get_execution_manager()
    try:
        return execution_manager.get_view(execution_id)
    except ExecutionNotFoundError:
        raise _not_found(execution_id) from None


@router.post(
    "/api/executions/{execution_id}/cancel",
    response_model=ExecutionView,
    summary="Cancel an execution",
    description="Mark an execution cancelled and stop its event stream.",
)
async def cancel_execution(
    execution_id: Annotated[str, Path(description="The execution ID")]
) -> ExecutionView:
    """Cancel a running execution.

    Raises:
        HTTPException: 404 if not tracked, 409 if it has already finished.
    """
    execution_manager = get_execution_manager()
    try:
        view = await execution_manager.cancel_execution(execution_id)
    except ExecutionNotFoundError:
        raise _not_found(execution_id) from None
    except InvalidExecutionStateError as e:
        raise _conflict(execution_id, e) from e

    logger.info("execution_cancelled_via_api", execution_id=execution_id)
    return view


@router.post(
    "/api/executions/{execution_id}/restart",
    response_model=ExecutionView,
    summary="Restart the event stream",
    description="Reconnect the event stream of an execution after the connection was lost.",
)
async def restart_connection(
    execution_id: Annotated[str, Path(description="The execution ID")]
) -> ExecutionView:
    execution_manager = get_execution_manager()
    try:
        return await execution_manager.restart_connection(execution_id)
    except ExecutionNotFoundError:
        raise _not_found(execution_id) from None
    except InvalidExecutionStateError as e:
        raise _conflict(execution_id, e) from e


@router.post(
    "/api/executions/{execution_id}/retry",
    response_model=ExecutionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Retry an execution",
    description=(
        "Start a failed or cancelled execution again. The retry runs under "
        "a new execution id with fresh state."
    ),
)
async def retry_execution(
    execution_id: Annotated[str, Path(description="The execution ID")]
) -> ExecutionResponse:
    execution_manager = get_execution_manager()
    try:
        tracker = await execution_manager.retry_execution(execution_id)
    except ExecutionNotFoundError:
        raise _not_found(execution_id) from None
    except InvalidExecutionStateError as e:
        raise _conflict(execution_id, e) from e
    except ExecutorError as e:
        raise _bad_gateway(e) from e

    logger.info(
        "execution_retried",
        previous_execution_id=execution_id,
        execution_id=tracker.execution_id,
    )
    return _execution_response(tracker)


@router.delete(
    "/api/executions/{execution_id}",
    status_code=status.HTTP_200_OK,
    summary="Stop tracking an execution",
    description="Close the execution's stream, disconnect its subscribers and forget it.",
)
async def stop_tracking(
    execution_id: Annotated[str, Path(description="The execution ID")]
) -> dict[str, str]:
    execution_manager = get_execution_manager()
    try:
        await execution_manager.stop_tracking(execution_id)
    except ExecutionNotFoundError:
        raise _not_found(execution_id) from None

    return {"message": f"Execution {execution_id} no longer tracked"}


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with tracked execution and stream counts.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Reports unhealthy until the execution manager has been configured.
    """
    try:
        execution_manager = get_execution_manager()
    except RuntimeError:
        # ExecutionManager not configured yet (e.g., during startup)
        return HealthResponse(status="unhealthy", timestamp=time.time())

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        tracked_executions=len(execution_manager.list_trackers()),
        open_streams=execution_manager.connections.active_count,
    )
