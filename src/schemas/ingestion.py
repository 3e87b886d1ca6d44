"""Pydantic schemas for inbound message ingestion."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class InboundMessageRequest(BaseModel):
    external_id: str = Field(min_length=1, max_length=128)
    content: str = Field(min_length=1, max_length=10000)
    name: Optional[str] = Field(default=None, max_length=160)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    channel: str = Field(default="WHATSAPP", min_length=1, max_length=32)
    channel_conversation_id: Optional[str] = Field(default=None, max_length=128)
    channel_message_id: Optional[str] = Field(default=None, max_length=128)
    received_at: Optional[datetime] = None


class InboundMessageResponse(BaseModel):
    workspace_id: str
    client_id: str
    conversation_id: str
    message_id: Optional[str]
    duplicate: bool
    job_id: Optional[str]
