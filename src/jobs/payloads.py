"""Queue payload contracts for conversation processing and inactivity follow-ups."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping


INACTIVITY_JOB_ID_TEMPLATE = "inactive-followup-{conversation_id}"
PROCESSING_JOB_ID_TEMPLATE = "process-message-{message_id}"

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"

SKIP_AI_INACTIVE = "ai inactive"
SKIP_NO_NEW_CLIENT_MESSAGES = "no new client messages"
SKIP_SUPERSEDED_BY_LATER_MESSAGE = "superseded by later message"
SKIP_ALREADY_DISPATCHED = "already dispatched"
SKIP_NOT_FOUND = "not found"
SKIP_CONVERSATION_NOT_ACTIVE = "conversation not active"
SKIP_SUPERSEDED = "superseded"
SKIP_NO_FOLLOW_UP_RULE = "no follow-up rule"
SKIP_DELIVERY_CREDENTIALS_MISSING = "delivery credentials missing"


class JobPayloadError(ValueError):
    """Raised when a queue payload cannot be decoded; such jobs are never retried."""


def inactivity_job_id(conversation_id: str) -> str:
    return INACTIVITY_JOB_ID_TEMPLATE.format(conversation_id=conversation_id)


def processing_job_id(message_id: str) -> str:
    return PROCESSING_JOB_ID_TEMPLATE.format(message_id=message_id)


def _require(payload: Mapping[str, Any], *names: str) -> str:
    for name in names:
        value = payload.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    raise JobPayloadError(f"missing_field:{names[0]}")


def parse_timestamp(value: Any) -> datetime:
    """Accept ISO-8601 strings, epoch milliseconds or datetimes; always return aware UTC."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        normalized = value.strip()
        if normalized.isdigit():
            return parse_timestamp(int(normalized))
        try:
            parsed = datetime.fromisoformat(normalized.replace("Z", "+00:00"))
        except ValueError as exc:
            raise JobPayloadError(f"invalid_timestamp:{normalized}") from exc
    else:
        raise JobPayloadError("invalid_timestamp")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ProcessingJob:
    conversation_id: str
    client_id: str
    triggering_message_id: str
    workspace_id: str
    received_timestamp: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "clientId": self.client_id,
            "triggeringMessageId": self.triggering_message_id,
            "workspaceId": self.workspace_id,
            "receivedTimestamp": format_timestamp(self.received_timestamp),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProcessingJob":
        return cls(
            conversation_id=_require(payload, "conversationId"),
            client_id=_require(payload, "clientId"),
            triggering_message_id=_require(payload, "triggeringMessageId", "newMessageId"),
            workspace_id=_require(payload, "workspaceId"),
            received_timestamp=parse_timestamp(payload.get("receivedTimestamp")),
        )


@dataclass(frozen=True)
class InactivityJob:
    conversation_id: str
    workspace_id: str
    ai_message_timestamp: datetime

    @property
    def job_id(self) -> str:
        return inactivity_job_id(self.conversation_id)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "workspaceId": self.workspace_id,
            "aiMessageTimestamp": format_timestamp(self.ai_message_timestamp),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "InactivityJob":
        return cls(
            conversation_id=_require(payload, "conversationId"),
            workspace_id=_require(payload, "workspaceId"),
            ai_message_timestamp=parse_timestamp(payload.get("aiMessageTimestamp")),
        )


@dataclass(frozen=True)
class JobOutcome:
    status: str
    reason: str | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.status == STATUS_SKIPPED

    @classmethod
    def completed(cls, **details: Any) -> "JobOutcome":
        return cls(status=STATUS_COMPLETED, details=dict(details))

    @classmethod
    def skip(cls, reason: str, **details: Any) -> "JobOutcome":
        return cls(status=STATUS_SKIPPED, reason=reason, details=dict(details))

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "reason": self.reason, "details": dict(self.details)}
