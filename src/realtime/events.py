"""Event envelope types, broker message decoding and SSE framing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
from typing import Any, Dict, List, Optional, Union


CONVERSATION_CHANNEL_TEMPLATE = "chat-updates:{conversation_id}"
WORKSPACE_CHANNEL_TEMPLATE = "workspace-updates:{workspace_id}"

FRAME_CONNECTION_READY = "connection_ready"
FRAME_UNKNOWN_EVENT = "unknown_event"
FRAME_ERROR = "error"
KEEPALIVE_FRAME = ": keep-alive\n\n"

INVALID_FORMAT_DETAIL = "Invalid message format received from broker"


class EventType(str, Enum):
    NEW_MESSAGE = "new_message"
    MESSAGE_STATUS_UPDATE = "message_status_update"
    AI_STATUS_UPDATED = "ai_status_updated"
    CONVERSATION_UPDATED = "conversation_updated"


def conversation_channel(conversation_id: str) -> str:
    return CONVERSATION_CHANNEL_TEMPLATE.format(conversation_id=conversation_id)


def workspace_channel(workspace_id: str) -> str:
    return WORKSPACE_CHANNEL_TEMPLATE.format(workspace_id=workspace_id)


def _json(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


@dataclass(frozen=True)
class TypedEvent:
    """A well-formed ``{type, payload}`` envelope; ``kind`` is set for known types."""

    type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[EventType]:
        try:
            return EventType(self.type)
        except ValueError:
            return None

    def frame(self) -> str:
        return encode_sse_frame(self.type, self.payload)

    def envelope(self) -> str:
        return _json({"type": self.type, "payload": self.payload})


@dataclass(frozen=True)
class RawEvent:
    """A JSON object or array that is not a type/payload envelope; forwarded as-is."""

    payload: Union[Dict[str, Any], List[Any]] = field(default_factory=dict)

    def frame(self) -> str:
        return encode_sse_frame(FRAME_UNKNOWN_EVENT, self.payload)


@dataclass(frozen=True)
class ErrorEvent:
    detail: str

    def frame(self) -> str:
        return encode_sse_frame(FRAME_ERROR, {"error": self.detail})


BrokerEvent = Union[TypedEvent, RawEvent, ErrorEvent]


def decode_broker_message(raw: Union[str, bytes]) -> BrokerEvent:
    """Decode one broker payload; never raises."""

    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return ErrorEvent(detail=INVALID_FORMAT_DETAIL)

    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return ErrorEvent(detail=INVALID_FORMAT_DETAIL)

    if isinstance(parsed, list):
        return RawEvent(payload=parsed)
    if not isinstance(parsed, dict):
        return ErrorEvent(detail=INVALID_FORMAT_DETAIL)

    event_type = parsed.get("type")
    payload = parsed.get("payload")
    if isinstance(event_type, str) and event_type.strip() and isinstance(payload, dict):
        return TypedEvent(type=event_type.strip(), payload=payload)
    return RawEvent(payload=parsed)


def encode_sse_frame(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {_json(data)}\n\n"


def connection_ready_frame(channel: str) -> str:
    return encode_sse_frame(FRAME_CONNECTION_READY, {"channel": channel})
