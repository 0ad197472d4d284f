"""WebSocket handler for live execution views.

This module handles WebSocket connections that push rendered execution views
to the dashboard and receive commands (cancel, restart, ping) from it.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import UpdateKind, get_event_bus
from execution_manager import ExecutionNotFoundError, InvalidExecutionStateError

if TYPE_CHECKING:
    from execution_manager import ExecutionManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_execution_manager: "ExecutionManager | None" = None


def set_execution_manager(manager: "ExecutionManager") -> None:
    """Set the execution manager used by WebSocket command handlers."""
    global _execution_manager
    _execution_manager = manager
    logger.info("websocket_execution_manager_configured")


def get_execution_manager() -> "ExecutionManager":
    """Return configured execution manager for WebSocket command handlers."""
    if _execution_manager is None:
        raise RuntimeError(
            "ExecutionManager not configured for WebSocket handlers. "
            "Call set_execution_manager() during startup."
        )
    return _execution_manager


@websocket_router.websocket("/ws/executions/{execution_id}")
async def websocket_endpoint(websocket: WebSocket, execution_id: str) -> None:
    """WebSocket endpoint for live execution views.

    This endpoint handles bidirectional communication:
    - Server -> Client: ViewUpdate messages, starting with the latest view
    - Client -> Server: Commands (cancel, restart, ping)

    Args:
        websocket: The WebSocket connection.
        execution_id: The execution to follow.
    """
    await websocket.accept()

    logger.info("websocket_connected", execution_id=execution_id)

    # The bus hands the latest view to a new subscriber straight away, so a
    # dashboard that (re)connects starts from the current state.
    event_bus = get_event_bus()
    queue = event_bus.subscribe(execution_id)

    try:

        async def send_views() -> None:
            """Forward view updates from the event bus to the WebSocket client."""
            try:
                while True:
                    update = await queue.get()
                    await websocket.send_json(update.model_dump(mode="json"))
                    # CLOSED is a sentinel from close_execution; stop sending.
                    if update.kind == UpdateKind.CLOSED:
                        logger.info("execution_closed_sentinel", execution_id=execution_id)
                        break
                    logger.debug("view_sent", execution_id=execution_id)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", execution_id=execution_id)
            except Exception as e:
                logger.error("websocket_send_error", execution_id=execution_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the WebSocket client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", execution_id=execution_id)
                        continue
                    command_type = data.get("type")

                    logger.info(
                        "command_received",
                        execution_id=execution_id,
                        command_type=command_type,
                    )

                    if command_type == "cancel":
                        await handle_command(websocket, execution_id, "cancel")
                    elif command_type == "restart":
                        await handle_command(websocket, execution_id, "restart")
                    elif command_type == "ping":
                        # Respond to ping with pong
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            execution_id=execution_id,
                            command_type=command_type,
                        )
                        await _send_error(websocket, f"Unknown command: {command_type}")
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", execution_id=execution_id)
            except Exception as e:
                logger.error("websocket_receive_error", execution_id=execution_id, error=str(e))

        # Run both tasks concurrently
        send_task = asyncio.create_task(send_views())
        receive_task = asyncio.create_task(receive_commands())

        # Wait for either task to complete (usually due to disconnect)
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # Cancel any pending tasks
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", execution_id=execution_id)
    except Exception as e:
        logger.error("websocket_error", execution_id=execution_id, error=str(e))
    finally:
        # Clean up subscription
        event_bus.unsubscribe(execution_id, queue)
        logger.info(
            "websocket_cleanup_complete",
            execution_id=execution_id,
            remaining_subscribers=event_bus.get_subscriber_count(execution_id),
        )


async def _send_error(websocket: WebSocket, message: str) -> None:
    payload: dict[str, Any] = {"type": "error", "message": message}
    await websocket.send_json(payload)


async def handle_command(websocket: WebSocket, execution_id: str, command: str) -> None:
    """Apply a cancel or restart command from the WebSocket client.

    Successful commands show up as a new view on the bus; failures are
    reported back to this client only.

    Args:
        websocket: The client that sent the command.
        execution_id: The execution the command targets.
        command: "cancel" or "restart".
    """
    logger.info("command_processing", execution_id=execution_id, command=command)

    execution_manager = get_execution_manager()
    try:
        if command == "cancel":
            await execution_manager.cancel_execution(execution_id)
        else:
            await execution_manager.restart_connection(execution_id)
    except ExecutionNotFoundError:
        logger.warning("command_execution_not_found", execution_id=execution_id, command=command)
        await _send_error(websocket, f"Execution {execution_id} not found")
    except InvalidExecutionStateError as e:
        logger.warning("command_rejected", execution_id=execution_id, command=command, error=str(e))
        await _send_error(websocket, str(e))
