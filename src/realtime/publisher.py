"""Publish persisted state changes to broker channels."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from src.conversations.store import as_utc, parse_message_metadata
from src.core.logger import get_logger
from src.jobs.payloads import format_timestamp
from src.realtime.events import EventType, TypedEvent, conversation_channel, workspace_channel
from src.storage.models import Conversation, Message
from src.storage.redis_client import get_client


logger = get_logger("relaydesk.realtime.publisher")


def _iso(value: Any) -> Optional[str]:
    normalized = as_utc(value)
    return format_timestamp(normalized) if normalized is not None else None


def serialize_message(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_type": message.sender_type,
        "content": message.content,
        "timestamp": _iso(message.timestamp),
        "status": message.status,
        "channel_message_id": message.channel_message_id,
        "provider_message_id": message.provider_message_id,
        "metadata": parse_message_metadata(message),
    }


def conversation_summary(conversation: Conversation, message: Optional[Message] = None) -> Dict[str, Any]:
    client = conversation.client
    summary: Dict[str, Any] = {
        "conversationId": conversation.id,
        "workspaceId": conversation.workspace_id,
        "channel": conversation.channel,
        "status": conversation.status,
        "is_ai_active": conversation.is_ai_active,
        "last_message_at": _iso(conversation.last_message_at),
        "clientId": conversation.client_id,
        "clientName": client.name if client is not None else None,
        "clientPhone": client.phone_number if client is not None else None,
    }
    if message is not None:
        summary.update(
            {
                "lastMessageTimestamp": _iso(message.timestamp),
                "lastMessageContent": message.content,
                "lastMessageSenderType": message.sender_type,
            }
        )
        # Bulk bumps do not refresh the loaded row.
        if summary["last_message_at"] is None or summary["last_message_at"] < summary["lastMessageTimestamp"]:
            summary["last_message_at"] = summary["lastMessageTimestamp"]
    return summary


class EventPublisher:
    """Best-effort publisher; a broker outage never fails the write that triggered it."""

    def __init__(self, redis_client: Redis) -> None:
        self._redis = redis_client

    def publish(self, channel: str, event: TypedEvent) -> bool:
        try:
            receivers = self._redis.publish(channel, event.envelope())
        except RedisError as exc:
            logger.error("event_publish_failed", channel=channel, event_type=event.type, error=str(exc))
            return False
        logger.debug("event_published", channel=channel, event_type=event.type, receivers=receivers)
        return True

    def publish_message(self, conversation: Conversation, message: Message) -> None:
        self.publish(
            conversation_channel(conversation.id),
            TypedEvent(type=EventType.NEW_MESSAGE.value, payload=serialize_message(message)),
        )
        self._publish_conversation_update(conversation, message)

    def publish_message_status(self, conversation: Conversation, message: Message) -> None:
        self.publish(
            conversation_channel(conversation.id),
            TypedEvent(
                type=EventType.MESSAGE_STATUS_UPDATE.value,
                payload={
                    "messageId": message.id,
                    "conversationId": conversation.id,
                    "status": message.status,
                    "providerMessageId": message.provider_message_id,
                    "errorDetail": message.error_detail,
                },
            ),
        )

    def publish_ai_status(self, conversation: Conversation) -> None:
        payload = {
            "conversationId": conversation.id,
            "workspaceId": conversation.workspace_id,
            "is_ai_active": conversation.is_ai_active,
        }
        event = TypedEvent(type=EventType.AI_STATUS_UPDATED.value, payload=payload)
        self.publish(conversation_channel(conversation.id), event)
        if conversation.workspace_id:
            self.publish(workspace_channel(conversation.workspace_id), event)

    def _publish_conversation_update(self, conversation: Conversation, message: Message) -> None:
        if not conversation.workspace_id:
            return
        self.publish(
            workspace_channel(conversation.workspace_id),
            TypedEvent(
                type=EventType.CONVERSATION_UPDATED.value,
                payload=conversation_summary(conversation, message),
            ),
        )


@lru_cache(maxsize=1)
def get_event_publisher() -> EventPublisher:
    return EventPublisher(get_client())
