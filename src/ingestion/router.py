"""Inbound channel webhook routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from src.ingestion.service import WorkspaceNotFoundError, ingest_client_message
from src.queue.job_queue import JobQueue, get_processing_queue
from src.realtime.publisher import EventPublisher, get_event_publisher
from src.schemas.ingestion import InboundMessageRequest, InboundMessageResponse
from src.storage.db import get_session
from src.storage.tenant import set_workspace_context


router = APIRouter(prefix="/webhooks/ingress", tags=["ingestion"])


@router.post(
    "/{workspace_id}/messages",
    response_model=InboundMessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def receive_client_message(
    workspace_id: str,
    payload: InboundMessageRequest,
    session: Session = Depends(get_session),
    queue: JobQueue = Depends(get_processing_queue),
    publisher: EventPublisher = Depends(get_event_publisher),
) -> InboundMessageResponse:
    set_workspace_context(session, workspace_id)
    try:
        result = ingest_client_message(
            session,
            workspace_id=workspace_id,
            external_id=payload.external_id,
            content=payload.content,
            name=payload.name,
            phone_number=payload.phone_number,
            channel=payload.channel,
            channel_conversation_id=payload.channel_conversation_id,
            channel_message_id=payload.channel_message_id,
            received_at=payload.received_at,
            queue=queue,
            publisher=publisher,
        )
    except WorkspaceNotFoundError as exc:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found") from exc
    except RedisError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="queue_unavailable") from exc

    return InboundMessageResponse(
        workspace_id=result.workspace_id,
        client_id=result.client_id,
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        duplicate=result.duplicate,
        job_id=result.job_id,
    )
