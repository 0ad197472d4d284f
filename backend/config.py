"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the execution
tracker. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_str_list(v: Any, default: list[str]) -> list[str]:
    """Parse a list setting given as a JSON array, comma-separated string or list."""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in v.split(",") if item.strip()]
    return default


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        executor_base_url: Base URL of the workflow executor's HTTP API.
        executor_ws_url: Base URL for the executor's WebSocket feed. Derived
            from executor_base_url when left empty.
        start_execution_path: Path of the start-execution call.
        hierarchy_config_path: Path of the unified hierarchy config call.
        stream_path: Path of the executor's execution event stream.
        executor_request_timeout_seconds: Timeout for executor HTTP calls.
        user_id: User identifier sent when opening a stream.
        default_orchestration_strategy: Strategy requested when none is given.
        reconnect_base_delay_seconds: First reconnect delay.
        reconnect_max_delay_seconds: Upper bound on any reconnect delay.
        max_reconnect_attempts: Consecutive failed reconnects before the
            connection is reported lost.
        default_max_agents_per_layer: Agent cap used when no visibility rule applies.
        admin_personas: Personas that see every agent in every layer.
        role_agent_names: Persona to Role-layer agent name exact-match rules.
        default_company_name: Company name used in titles when the executor
            does not report one.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Executor
    executor_base_url: str = "http://localhost:5000"
    executor_ws_url: str = ""
    start_execution_path: str = "/api/agent-executions"
    hierarchy_config_path: str = "/api/hierarchy/config"
    stream_path: str = "/api/agent-executions/ws"
    executor_request_timeout_seconds: float = 10.0
    user_id: str = "anonymous"
    default_orchestration_strategy: str = "sequential"

    # Reconnect backoff
    reconnect_base_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 30.0
    max_reconnect_attempts: int = 5

    # Skeleton
    default_max_agents_per_layer: int = 3
    admin_personas: str | list[str] = ["admin"]
    role_agent_names: dict[str, str] = {
        "admin": "JARVIS Admin",
        "rachel": "Rachel Thompson (AUW)",
        "john": "John Stevens (IT Support)",
    }
    default_company_name: str = "Enterprise"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        return _parse_str_list(v, ["http://localhost:3000"])

    @field_validator("admin_personas", mode="before")
    @classmethod
    def parse_admin_personas(cls, v: Any) -> list[str]:
        """Parse admin personas from string or list, lower-cased."""
        return [p.lower() for p in _parse_str_list(v, ["admin"])]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def stream_base_url(self) -> str:
        """WebSocket base URL of the executor."""
        if self.executor_ws_url:
            return self.executor_ws_url.rstrip("/")
        base = self.executor_base_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://"):]
        if base.startswith("http://"):
            return "ws://" + base[len("http://"):]
        return base


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

# Create a logger for this module
logger = structlog.get_logger(__name__)
