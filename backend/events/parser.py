"""Envelope parser for the executor's execution event stream.

The executor wraps every execution event in an ``agent-event`` envelope, in
one of two shapes:

    Nested: {"type": "agent-event", "executionId": ..., "eventType": ...,
             "eventData": {...}}
    Flat:   {"type": "agent-event", "executionId": ..., "eventType": ..., ...}

Both are normalized into a single ``ExecutionEvent``. The connection handshake
(``connection-established``) is logged and dropped. Malformed messages are
dropped without raising; the stream keeps flowing.
"""

import json
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from events.types import EnvelopeType, EventType, ExecutionEvent

logger = structlog.get_logger(__name__)

_KNOWN_EVENT_TYPES = frozenset(t.value for t in EventType)


def _parse_timestamp(value: Any) -> float | None:
    """Convert an ISO-8601 string or epoch number into a Unix timestamp."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Values this large are millisecond epochs
        return value / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


def _decode(raw: str | bytes | dict[str, Any]) -> dict[str, Any] | None:
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
        logger.debug("stream_message_malformed", error=str(e))
        return None
    if not isinstance(data, dict):
        logger.debug("stream_message_not_object", payload_type=type(data).__name__)
        return None
    return data


def parse(raw: str | bytes | dict[str, Any]) -> ExecutionEvent | None:
    """Parse one stream message into an ``ExecutionEvent``.

    Args:
        raw: The message as received (text, bytes) or an already decoded dict.

    Returns:
        The normalized event, or None when the message is a handshake, is
        malformed, is not an execution event, or has an unknown event type.
    """
    envelope = _decode(raw)
    if envelope is None:
        return None

    envelope_type = envelope.get("type")

    if envelope_type == EnvelopeType.CONNECTION_ESTABLISHED:
        logger.info("stream_connection_established", client_id=envelope.get("clientId"))
        return None

    if envelope_type != EnvelopeType.AGENT_EVENT:
        logger.debug("stream_message_ignored", envelope_type=envelope_type)
        return None

    execution_id = envelope.get("executionId")
    if not isinstance(execution_id, str) or not execution_id:
        logger.debug("stream_message_missing_execution_id")
        return None

    nested = envelope.get("eventData")
    if isinstance(nested, dict):
        payload = dict(nested)
        event_type = envelope.get("eventType") or nested.get("type")
    else:
        payload = {k: v for k, v in envelope.items() if k != "eventData"}
        event_type = envelope.get("eventType")

    if event_type not in _KNOWN_EVENT_TYPES:
        logger.debug(
            "stream_event_type_ignored",
            execution_id=execution_id,
            event_type=event_type,
        )
        return None

    timestamp = _parse_timestamp(payload.get("timestamp"))
    if timestamp is None:
        timestamp = _parse_timestamp(envelope.get("timestamp"))

    payload["type"] = event_type
    payload["executionId"] = execution_id
    payload.pop("execution_id", None)
    payload.pop("timestamp", None)
    if timestamp is not None:
        payload["timestamp"] = timestamp

    try:
        return ExecutionEvent.model_validate(payload)
    except ValidationError as e:
        logger.debug(
            "stream_event_invalid",
            execution_id=execution_id,
            event_type=event_type,
            error_count=e.error_count(),
        )
        return None
