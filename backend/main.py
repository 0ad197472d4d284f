"""FastAPI application entry point for the execution tracker backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_execution_manager as set_routes_execution_manager
from api.websocket import (
    set_execution_manager as set_websocket_execution_manager,
)
from api.websocket import (
    websocket_router,
)
from config import configure_logging, settings
from events import get_event_bus
from execution_manager import ExecutionManager
from executor_client import ExecutorClient

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Handles initialization and cleanup of the executor client, the execution
    manager and its streams.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        executor_base_url=settings.executor_base_url,
    )

    # Initialize resources
    executor_client = ExecutorClient()
    event_bus = get_event_bus()
    execution_manager = ExecutionManager(executor_client, event_bus)

    # Register execution manager with routes
    set_routes_execution_manager(execution_manager)
    set_websocket_execution_manager(execution_manager)

    # Store on app.state for access
    app.state.execution_manager = execution_manager
    app.state.executor_client = executor_client

    logger.info("resources_initialized")
    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await app.state.execution_manager.cleanup_all()
    await app.state.executor_client.close()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Execution Tracker",
    description="Tracks multi-layer agent workflow executions and serves a "
    "six-layer live view of each run.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["executions"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Execution Tracker API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
