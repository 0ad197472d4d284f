"""Connection manager for executor event streams.

Owns at most one live stream per execution id. Each stream is consumed by a
single asyncio task that hands every inbound message to ``on_message``
before reading the next, so events for one execution are never reconciled
concurrently.

Failure handling:
    A stream that ends without a clean close (close frame with code 1000)
    is a failure. Failures schedule a reconnect after
    ``min(base * 2**attempt, cap)`` seconds; the timer calls ``reconnect()``.
    Once ``max_attempts`` reconnects have failed in a row, the handle moves
    to ``lost`` and stays there until the caller invokes ``restart()``.
    A successful open resets the attempt counter to 0.

``close()`` is terminal: it cancels any pending timer and never leads to a
reconnect.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

import structlog

from events.types import EnvelopeType

logger = structlog.get_logger(__name__)

CLEAN_CLOSE_CODE = 1000


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class StreamError(Exception):
    """Base class for stream failures."""


class StreamConnectError(StreamError):
    """The stream could not be opened."""


class StreamClosedError(StreamError):
    """The stream ended.

    Attributes:
        clean: Whether the peer closed normally.
        code: Close code, if one was received.
    """

    def __init__(self, message: str = "stream closed", *, clean: bool = False, code: int | None = None):
        super().__init__(message)
        self.clean = clean
        self.code = code


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------


class StreamConnection(Protocol):
    """An open bidirectional message stream."""

    async def send_json(self, data: dict[str, Any]) -> None: ...

    async def receive(self) -> str:
        """Return the next text message or raise ``StreamClosedError``."""
        ...

    async def close(self) -> None: ...


Connector = Callable[[str, str], Awaitable[StreamConnection]]
MessageHandler = Callable[[str, str], None]
StateHandler = Callable[["ConnectionHandle"], None]
Scheduler = Callable[..., asyncio.TimerHandle]


class ConnectionState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RETRYING = "retrying"
    CLOSED = "closed"
    LOST = "lost"


@dataclass(frozen=True)
class BackoffPolicy:
    """Reconnect backoff parameters, in seconds."""

    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.max_delay)


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay before reconnect number ``attempt + 1``."""
    return min(base * 2 ** attempt, cap)


@dataclass(eq=False)
class ConnectionHandle:
    """Live connection state for one execution id."""

    execution_id: str
    user_id: str
    state: ConnectionState = ConnectionState.IDLE
    attempt: int = 0
    next_retry_delay: float | None = None
    last_error: str | None = None
    closed: bool = False
    task: asyncio.Task[None] | None = field(default=None, repr=False)
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)
    connection: StreamConnection | None = field(default=None, repr=False)

    @property
    def connection_lost(self) -> bool:
        return self.state == ConnectionState.LOST


# -----------------------------------------------------------------------------
# Manager
# -----------------------------------------------------------------------------


class ConnectionManager:
    """Opens, supervises and tears down executor streams.

    Args:
        connector: Coroutine function opening a stream for
            ``(execution_id, user_id)``. Must raise ``StreamError`` or
            ``OSError`` on failure.
        on_message: Called with ``(execution_id, raw_message)`` for every
            inbound message.
        on_state_change: Called with the handle whenever its state changes.
        policy: Backoff policy.
        call_later: Timer scheduler with ``loop.call_later`` semantics.
            Defaults to the running loop's.
    """

    def __init__(
        self,
        connector: Connector,
        on_message: MessageHandler,
        on_state_change: StateHandler | None = None,
        policy: BackoffPolicy | None = None,
        call_later: Scheduler | None = None,
    ) -> None:
        self._connector = connector
        self._on_message = on_message
        self._on_state_change = on_state_change
        self.policy = policy or BackoffPolicy()
        self._call_later = call_later
        self._handles: dict[str, ConnectionHandle] = {}

    def get(self, execution_id: str) -> ConnectionHandle | None:
        return self._handles.get(execution_id)

    @property
    def active_count(self) -> int:
        return len(self._handles)

    async def open(self, execution_id: str, user_id: str) -> ConnectionHandle:
        """Start streaming events for an execution.

        An existing handle for the same id is closed first.
        """
        existing = self._handles.get(execution_id)
        if existing is not None:
            logger.info("connection_replaced", execution_id=execution_id)
            await self.close(existing)

        handle = ConnectionHandle(execution_id=execution_id, user_id=user_id)
        self._handles[execution_id] = handle
        self._start(handle)
        return handle

    def reconnect(self, handle: ConnectionHandle) -> None:
        """Start a new connection attempt for a handle.

        Driven by the backoff timer; a pending timer is cancelled first.
        """
        if handle.closed:
            return
        self._cancel_timer(handle)
        if handle.task is not None and not handle.task.done():
            logger.debug("reconnect_deferred_task_running", execution_id=handle.execution_id)
            handle.task.add_done_callback(lambda _task: self.reconnect(handle))
            return
        logger.info("stream_reconnecting", execution_id=handle.execution_id, attempt=handle.attempt)
        self._start(handle)

    def restart(self, handle: ConnectionHandle) -> None:
        """Resume a handle after the connection was lost.

        Resets the attempt counter and connects immediately.

        Raises:
            ValueError: If the handle was closed.
        """
        if handle.closed:
            raise ValueError(f"connection for {handle.execution_id} is closed")
        self._cancel_timer(handle)
        handle.attempt = 0
        handle.next_retry_delay = None
        handle.last_error = None
        logger.info("stream_restart_requested", execution_id=handle.execution_id)
        if handle.task is None or handle.task.done():
            self._start(handle)

    async def close(self, handle: ConnectionHandle) -> None:
        """Tear down a handle. Never triggers a reconnect."""
        if handle.closed:
            return
        handle.closed = True
        self._cancel_timer(handle)
        if self._handles.get(handle.execution_id) is handle:
            del self._handles[handle.execution_id]

        task = handle.task
        # The stream task may be closing its own handle from on_message
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if handle.connection is not None:
            connection, handle.connection = handle.connection, None
            await connection.close()

        handle.next_retry_delay = None
        self._set_state(handle, ConnectionState.CLOSED)
        logger.info("stream_closed", execution_id=handle.execution_id)

    async def close_all(self) -> None:
        for handle in list(self._handles.values()):
            await self.close(handle)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _start(self, handle: ConnectionHandle) -> None:
        handle.task = asyncio.create_task(
            self._run(handle), name=f"stream-{handle.execution_id}"
        )

    def _cancel_timer(self, handle: ConnectionHandle) -> None:
        if handle.timer is not None:
            handle.timer.cancel()
            handle.timer = None

    def _set_state(self, handle: ConnectionHandle, state: ConnectionState) -> None:
        handle.state = state
        if self._on_state_change is not None:
            self._on_state_change(handle)

    async def _run(self, handle: ConnectionHandle) -> None:
        self._set_state(handle, ConnectionState.CONNECTING)
        try:
            connection = await self._connector(handle.execution_id, handle.user_id)
        except (StreamError, OSError, asyncio.TimeoutError) as exc:
            self._on_failure(handle, f"connect failed: {exc}")
            return

        if handle.closed:
            await connection.close()
            return
        handle.connection = connection

        try:
            await connection.send_json({
                "type": EnvelopeType.SUBSCRIBE_EXECUTION.value,
                "executionId": handle.execution_id,
            })
            handle.attempt = 0
            handle.next_retry_delay = None
            handle.last_error = None
            self._set_state(handle, ConnectionState.OPEN)
            logger.info("stream_opened", execution_id=handle.execution_id)

            while not handle.closed:
                raw = await connection.receive()
                self._dispatch(handle, raw)
        except StreamClosedError as exc:
            # Release before deciding so the next attempt never finds this task running
            await self._release(handle, connection)
            if exc.clean:
                self._finish_clean(handle, exc.code)
            else:
                self._on_failure(handle, f"closed abnormally (code {exc.code})")
        except (StreamError, OSError) as exc:
            await self._release(handle, connection)
            self._on_failure(handle, str(exc) or type(exc).__name__)
        finally:
            await self._release(handle, connection)

    async def _release(self, handle: ConnectionHandle, connection: StreamConnection) -> None:
        if handle.connection is connection:
            handle.connection = None
            await connection.close()

    def _dispatch(self, handle: ConnectionHandle, raw: str) -> None:
        try:
            self._on_message(handle.execution_id, raw)
        except Exception:
            logger.exception("stream_message_handler_failed", execution_id=handle.execution_id)

    def _finish_clean(self, handle: ConnectionHandle, code: int | None) -> None:
        logger.info("stream_closed_by_peer", execution_id=handle.execution_id, code=code)
        if not handle.closed:
            handle.closed = True
            if self._handles.get(handle.execution_id) is handle:
                del self._handles[handle.execution_id]
            self._set_state(handle, ConnectionState.CLOSED)

    def _on_failure(self, handle: ConnectionHandle, reason: str) -> None:
        if handle.closed:
            return
        handle.last_error = reason

        if handle.attempt >= self.policy.max_attempts:
            handle.next_retry_delay = None
            logger.error(
                "stream_connection_lost",
                execution_id=handle.execution_id,
                attempts=handle.attempt,
                reason=reason,
            )
            self._set_state(handle, ConnectionState.LOST)
            return

        delay = self.policy.delay(handle.attempt)
        handle.next_retry_delay = delay
        call_later = self._call_later or asyncio.get_running_loop().call_later
        handle.timer = call_later(delay, self._fire_reconnect, handle)
        logger.warning(
            "stream_reconnect_scheduled",
            execution_id=handle.execution_id,
            attempt=handle.attempt + 1,
            delay=delay,
            reason=reason,
        )
        self._set_state(handle, ConnectionState.RETRYING)

    def _fire_reconnect(self, handle: ConnectionHandle) -> None:
        handle.timer = None
        if handle.closed:
            return
        handle.attempt += 1
        self.reconnect(handle)
