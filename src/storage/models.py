"""SQLAlchemy ORM models for workspaces, conversations and follow-up rules."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.storage.db import Base


CONVERSATION_STATUS_ACTIVE = "ACTIVE"
CONVERSATION_STATUS_CLOSED = "CLOSED"

SENDER_CLIENT = "CLIENT"
SENDER_AI = "AI"
SENDER_SYSTEM = "SYSTEM"
SENDER_AGENT = "AGENT"
SENDER_AUTOMATION = "AUTOMATION"

MESSAGE_STATUS_RECEIVED = "RECEIVED"
MESSAGE_STATUS_PENDING = "PENDING"
MESSAGE_STATUS_SENT = "SENT"
MESSAGE_STATUS_DELIVERED = "DELIVERED"
MESSAGE_STATUS_READ = "READ"
MESSAGE_STATUS_FAILED = "FAILED"


def _uuid() -> str:
    return str(uuid.uuid4())


class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    ai_default_system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_model_preference: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    lumibot_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lumibot_api_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    follow_up_rules: Mapped[list[FollowUpRule]] = relationship("FollowUpRule", back_populates="workspace")


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    channel: Mapped[str] = mapped_column(String(32), nullable=False, default="WHATSAPP")
    name: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("workspace_id", "external_id", "channel", name="uq_clients_workspace_external_channel"),
    )


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    client_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
    )
    channel: Mapped[str] = mapped_column(String(32), nullable=False, default="WHATSAPP")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=CONVERSATION_STATUS_ACTIVE)
    is_ai_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    channel_conversation_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_dispatched_message_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    workspace: Mapped[Workspace] = relationship("Workspace")
    client: Mapped[Client] = relationship("Client")

    __table_args__ = (
        UniqueConstraint("workspace_id", "client_id", "channel", name="uq_conversations_workspace_client_channel"),
        Index("ix_conversations_workspace_last_message_at", "workspace_id", "last_message_at"),
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MESSAGE_STATUS_PENDING)
    channel_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_detail: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    __table_args__ = (
        Index("ix_messages_conversation_timestamp", "conversation_id", "timestamp"),
        Index("ix_messages_conversation_sender_timestamp", "conversation_id", "sender_type", "timestamp"),
    )


class FollowUpRule(Base):
    __tablename__ = "ai_follow_up_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    delay_milliseconds: Mapped[int] = mapped_column(Integer, nullable=False)
    message_content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    workspace: Mapped[Workspace] = relationship("Workspace", back_populates="follow_up_rules")

    __table_args__ = (Index("ix_ai_follow_up_rules_workspace_delay", "workspace_id", "delay_milliseconds"),)
