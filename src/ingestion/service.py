"""Inbound client message ingestion: upsert, persist, publish, enqueue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.conversations.store import (
    as_utc,
    bump_last_message_at,
    find_message_by_channel_id,
    record_message,
    utc_now,
)
from src.core.logger import get_logger
from src.jobs.payloads import ProcessingJob, format_timestamp, processing_job_id
from src.queue.job_queue import JobQueue
from src.realtime.publisher import EventPublisher
from src.storage.models import (
    CONVERSATION_STATUS_ACTIVE,
    MESSAGE_STATUS_RECEIVED,
    SENDER_CLIENT,
    Client,
    Conversation,
    Message,
    Workspace,
)


logger = get_logger("relaydesk.ingestion")

CLIENT_ORDER_GAP = timedelta(milliseconds=1)


class WorkspaceNotFoundError(LookupError):
    """Raised when an inbound event targets an unknown workspace."""


@dataclass(frozen=True)
class IngestResult:
    workspace_id: str
    client_id: str
    conversation_id: str
    message_id: Optional[str]
    duplicate: bool
    job_id: Optional[str] = None


def _upsert_client(
    session: Session,
    *,
    workspace_id: str,
    external_id: str,
    channel: str,
    name: Optional[str],
    phone_number: Optional[str],
) -> Client:
    client = session.scalar(
        select(Client).where(
            Client.workspace_id == workspace_id,
            Client.external_id == external_id,
            Client.channel == channel,
        )
    )
    if client is None:
        client = Client(
            workspace_id=workspace_id,
            external_id=external_id,
            channel=channel,
            name=name,
            phone_number=phone_number,
        )
        session.add(client)
        session.flush()
        return client

    if name and name != client.name:
        client.name = name
    if phone_number and phone_number != client.phone_number:
        client.phone_number = phone_number
    session.flush()
    return client


def _upsert_conversation(
    session: Session,
    *,
    workspace_id: str,
    client_id: str,
    channel: str,
    channel_conversation_id: Optional[str],
    now: datetime,
) -> Conversation:
    conversation = session.scalar(
        select(Conversation).where(
            Conversation.workspace_id == workspace_id,
            Conversation.client_id == client_id,
            Conversation.channel == channel,
        )
    )
    if conversation is None:
        conversation = Conversation(
            workspace_id=workspace_id,
            client_id=client_id,
            channel=channel,
            status=CONVERSATION_STATUS_ACTIVE,
            is_ai_active=True,
            channel_conversation_id=channel_conversation_id,
            created_at=now,
            updated_at=now,
        )
        session.add(conversation)
        session.flush()
        return conversation

    if conversation.status != CONVERSATION_STATUS_ACTIVE:
        logger.info("conversation_reopened", conversation_id=conversation.id, previous_status=conversation.status)
        conversation.status = CONVERSATION_STATUS_ACTIVE
    if channel_conversation_id:
        conversation.channel_conversation_id = channel_conversation_id
    conversation.updated_at = now
    session.flush()
    return conversation


def ingest_client_message(
    session: Session,
    *,
    workspace_id: str,
    external_id: str,
    content: str,
    queue: JobQueue,
    publisher: EventPublisher,
    name: Optional[str] = None,
    phone_number: Optional[str] = None,
    channel: str = "WHATSAPP",
    channel_conversation_id: Optional[str] = None,
    channel_message_id: Optional[str] = None,
    received_at: Optional[datetime] = None,
    clock: Callable[[], datetime] = utc_now,
) -> IngestResult:
    workspace = session.get(Workspace, workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(f"workspace_not_found:{workspace_id}")

    now = clock()
    channel = channel.strip().upper() or "WHATSAPP"
    client = _upsert_client(
        session,
        workspace_id=workspace.id,
        external_id=external_id.strip(),
        channel=channel,
        name=(name or "").strip() or None,
        phone_number=(phone_number or "").strip() or None,
    )
    conversation = _upsert_conversation(
        session,
        workspace_id=workspace.id,
        client_id=client.id,
        channel=channel,
        channel_conversation_id=(channel_conversation_id or "").strip() or None,
        now=now,
    )

    if channel_message_id:
        existing = find_message_by_channel_id(
            session,
            conversation_id=conversation.id,
            channel_message_id=channel_message_id,
        )
        if existing is not None:
            session.commit()
            # A redelivery after a failed enqueue must still get its job.
            job_id = _enqueue_processing(queue, conversation=conversation, message=existing, replace=False)
            logger.info(
                "ingress_duplicate_message_ignored",
                conversation_id=conversation.id,
                channel_message_id=channel_message_id,
                job_id=job_id,
            )
            return IngestResult(
                workspace_id=workspace.id,
                client_id=client.id,
                conversation_id=conversation.id,
                message_id=existing.id,
                duplicate=True,
                job_id=job_id,
            )

    # Server time, never before the conversation's last activity.
    timestamp = now
    last_activity = as_utc(conversation.last_message_at)
    if last_activity is not None and timestamp < last_activity + CLIENT_ORDER_GAP:
        timestamp = last_activity + CLIENT_ORDER_GAP

    metadata = {"providerReceivedAt": format_timestamp(received_at)} if received_at is not None else None
    message = record_message(
        session,
        conversation_id=conversation.id,
        sender_type=SENDER_CLIENT,
        content=content,
        timestamp=timestamp,
        status=MESSAGE_STATUS_RECEIVED,
        channel_message_id=channel_message_id,
        metadata=metadata,
    )
    bump_last_message_at(session, conversation_id=conversation.id, timestamp=timestamp)
    session.commit()
    session.refresh(conversation)

    publisher.publish_message(conversation, message)

    job_id = _enqueue_processing(queue, conversation=conversation, message=message)
    logger.info(
        "ingress_message_accepted",
        conversation_id=conversation.id,
        message_id=message.id,
        job_id=job_id,
    )
    return IngestResult(
        workspace_id=workspace.id,
        client_id=client.id,
        conversation_id=conversation.id,
        message_id=message.id,
        duplicate=False,
        job_id=job_id,
    )


def _enqueue_processing(
    queue: JobQueue,
    *,
    conversation: Conversation,
    message: Message,
    replace: bool = True,
) -> str:
    job = ProcessingJob(
        conversation_id=conversation.id,
        client_id=conversation.client_id,
        triggering_message_id=message.id,
        workspace_id=conversation.workspace_id,
        received_timestamp=as_utc(message.timestamp),
    )
    return queue.enqueue(job.to_payload(), job_id=processing_job_id(message.id), replace=replace)
