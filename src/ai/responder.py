"""AI reply generation against an OpenAI-compatible chat completions API."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from src.core.config import get_settings
from src.storage.models import SENDER_CLIENT


class AIResponderError(RuntimeError):
    """Raised when the completion provider fails; callers let the job retry."""


@dataclass(frozen=True)
class HistoryMessage:
    sender_type: str
    content: str


class AIResponder(Protocol):
    def complete(
        self,
        history: Sequence[HistoryMessage],
        *,
        system_prompt: str | None = None,
        model: str | None = None,
    ) -> str:
        raise NotImplementedError


def to_chat_messages(history: Sequence[HistoryMessage], *, system_prompt: str) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
    for item in history:
        content = (item.content or "").strip()
        if not content:
            continue
        role = "user" if item.sender_type == SENDER_CLIENT else "assistant"
        messages.append({"role": role, "content": content})
    return messages


class OpenAIChatResponder:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        default_model: str = "gpt-4o-mini",
        default_system_prompt: str = "You are a helpful assistant.",
        max_tokens: int = 1500,
        timeout_seconds: int = 60,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._default_system_prompt = default_system_prompt
        self._max_tokens = max(1, max_tokens)
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise AIResponderError("ai_api_key_missing")
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def complete(
        self,
        history: Sequence[HistoryMessage],
        *,
        system_prompt: str | None = None,
        model: str | None = None,
    ) -> str:
        prompt = (system_prompt or "").strip() or self._default_system_prompt
        payload: Dict[str, Any] = {
            "model": (model or "").strip() or self._default_model,
            "messages": to_chat_messages(history, system_prompt=prompt),
            "max_tokens": self._max_tokens,
        }

        url = f"{self._base_url}/chat/completions"
        try:
            if self._client is not None:
                response = self._client.post(url, headers=self._headers(), json=payload)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise AIResponderError(f"ai_provider_unreachable detail={exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 200:
                detail = detail[:200] + "..."
            raise AIResponderError(f"ai_provider_request_failed status={response.status_code} detail={detail}")

        try:
            body = response.json()
        except ValueError as exc:
            raise AIResponderError("ai_provider_invalid_json_response") from exc

        return _extract_text(body)


def _extract_text(body: Any) -> str:
    if not isinstance(body, dict):
        raise AIResponderError("ai_provider_invalid_payload")
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content.strip() if isinstance(content, str) else ""


@lru_cache(maxsize=1)
def get_ai_responder() -> OpenAIChatResponder:
    settings = get_settings()
    return OpenAIChatResponder(
        api_key=settings.ai_api_key,
        base_url=settings.ai_api_base_url,
        default_model=settings.ai_default_model,
        default_system_prompt=settings.ai_default_system_prompt,
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=settings.ai_timeout_seconds,
    )
