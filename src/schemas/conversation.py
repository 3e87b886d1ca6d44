"""Pydantic schemas for conversation controls."""

from __future__ import annotations

from pydantic import BaseModel


class AIStatusUpdateRequest(BaseModel):
    is_ai_active: bool


class AIStatusResponse(BaseModel):
    conversation_id: str
    workspace_id: str
    is_ai_active: bool
