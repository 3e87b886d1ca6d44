"""Conversation control routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from src.conversations.store import get_conversation, set_ai_active
from src.core.logger import get_logger
from src.realtime.publisher import EventPublisher, get_event_publisher
from src.schemas.conversation import AIStatusResponse, AIStatusUpdateRequest
from src.storage.db import get_session
from src.storage.tenant import set_workspace_context


router = APIRouter(prefix="/conversations", tags=["conversations"])

logger = get_logger("relaydesk.conversations")


@router.patch("/{conversation_id}/ai-status", response_model=AIStatusResponse)
def update_ai_status(
    conversation_id: str,
    payload: AIStatusUpdateRequest,
    session: Session = Depends(get_session),
    publisher: EventPublisher = Depends(get_event_publisher),
    workspace_id: Optional[str] = Header(default=None, alias="X-Workspace-Id"),
) -> AIStatusResponse:
    if workspace_id:
        set_workspace_context(session, workspace_id)

    conversation = get_conversation(session, conversation_id)
    if conversation is None or (workspace_id and conversation.workspace_id != workspace_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")

    set_ai_active(session, conversation=conversation, is_active=payload.is_ai_active)
    session.commit()
    logger.info(
        "conversation_ai_status_updated",
        conversation_id=conversation.id,
        is_ai_active=conversation.is_ai_active,
    )
    publisher.publish_ai_status(conversation)

    return AIStatusResponse(
        conversation_id=conversation.id,
        workspace_id=conversation.workspace_id,
        is_ai_active=conversation.is_ai_active,
    )
