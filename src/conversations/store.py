"""Persistence queries shared by ingress, the batch coordinator and the follow-up scheduler.

Functions here never commit; the caller owns the transaction so that a
reply, its dispatch claim and the activity bump land together.
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Dict, List, Optional

from sqlalchemy import asc, desc, or_, select, update
from sqlalchemy.orm import Session

from src.storage.models import (
    SENDER_AI,
    SENDER_CLIENT,
    Conversation,
    FollowUpRule,
    Message,
)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize DB values; SQLite hands back naive datetimes that are UTC by convention."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_conversation(session: Session, conversation_id: str) -> Optional[Conversation]:
    return session.get(Conversation, conversation_id)


def find_latest_ai_message(session: Session, *, conversation_id: str) -> Optional[Message]:
    return session.scalar(
        select(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_type == SENDER_AI,
        )
        .order_by(desc(Message.timestamp), desc(Message.id))
        .limit(1)
    )


def list_client_messages_after(session: Session, *, conversation_id: str, after: datetime) -> List[Message]:
    """Client messages strictly newer than ``after``, oldest first.

    Ties on timestamp are broken by id so every concurrent reader agrees on
    which message is last.
    """

    return list(
        session.scalars(
            select(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.sender_type == SENDER_CLIENT,
                Message.timestamp > after,
            )
            .order_by(asc(Message.timestamp), asc(Message.id))
        ).all()
    )


def load_history(session: Session, *, conversation_id: str, limit: int) -> List[Message]:
    rows = list(
        session.scalars(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(desc(Message.timestamp), desc(Message.id))
            .limit(max(1, limit))
        ).all()
    )
    rows.reverse()
    return rows


def find_message_by_channel_id(
    session: Session,
    *,
    conversation_id: str,
    channel_message_id: str,
) -> Optional[Message]:
    return session.scalar(
        select(Message).where(
            Message.conversation_id == conversation_id,
            Message.channel_message_id == channel_message_id,
        )
    )


def record_message(
    session: Session,
    *,
    conversation_id: str,
    sender_type: str,
    content: Optional[str],
    timestamp: datetime,
    status: str,
    channel_message_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Message:
    message = Message(
        conversation_id=conversation_id,
        sender_type=sender_type,
        content=content,
        timestamp=timestamp,
        status=status,
        channel_message_id=channel_message_id,
        metadata_json=json.dumps(metadata or {}, separators=(",", ":"), sort_keys=True),
    )
    session.add(message)
    session.flush()
    return message


def bump_last_message_at(session: Session, *, conversation_id: str, timestamp: datetime) -> bool:
    """Advance ``last_message_at``; a value never moves backwards."""

    result = session.execute(
        update(Conversation)
        .where(
            Conversation.id == conversation_id,
            or_(Conversation.last_message_at.is_(None), Conversation.last_message_at < timestamp),
        )
        .values(last_message_at=timestamp, updated_at=timestamp)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def claim_dispatch(session: Session, *, conversation_id: str, message_id: str) -> bool:
    """Compare-and-swap the conversation's dispatch marker to ``message_id``.

    Returns False when a reply for this representative message was already
    recorded, e.g. on a redelivered job.
    """

    result = session.execute(
        update(Conversation)
        .where(
            Conversation.id == conversation_id,
            or_(
                Conversation.last_dispatched_message_id.is_(None),
                Conversation.last_dispatched_message_id != message_id,
            ),
        )
        .values(last_dispatched_message_id=message_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def get_first_follow_up_rule(session: Session, *, workspace_id: str) -> Optional[FollowUpRule]:
    return session.scalar(
        select(FollowUpRule)
        .where(FollowUpRule.workspace_id == workspace_id)
        .order_by(asc(FollowUpRule.delay_milliseconds), asc(FollowUpRule.created_at), asc(FollowUpRule.id))
        .limit(1)
    )


def update_message_status(
    session: Session,
    *,
    message: Message,
    status: str,
    provider_message_id: Optional[str] = None,
    error_detail: Optional[str] = None,
) -> Message:
    message.status = status
    if provider_message_id is not None:
        message.provider_message_id = provider_message_id
    if error_detail is not None:
        message.error_detail = error_detail[:500]
    session.add(message)
    session.flush()
    return message


def set_ai_active(session: Session, *, conversation: Conversation, is_active: bool) -> Conversation:
    conversation.is_ai_active = bool(is_active)
    conversation.updated_at = utc_now()
    session.add(conversation)
    session.flush()
    return conversation


def parse_message_metadata(message: Message) -> Dict[str, Any]:
    try:
        parsed = json.loads(message.metadata_json or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
