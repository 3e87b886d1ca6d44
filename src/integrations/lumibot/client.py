"""Lumibot (Chatwoot-compatible) API client for outbound conversation messages."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

import httpx

from src.core.config import get_settings


class LumibotClientError(RuntimeError):
    """Raised when Lumibot provider operations fail."""


class LumibotClient:
    def __init__(
        self,
        *,
        base_url: str = "https://app.lumibot.com.br",
        timeout_seconds: int = 20,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def send_text(
        self,
        *,
        account_id: str,
        api_token: str,
        conversation_id: str,
        content: str,
    ) -> Dict[str, Any]:
        if not account_id.strip():
            raise LumibotClientError("lumibot_account_id_missing")
        if not api_token.strip():
            raise LumibotClientError("lumibot_api_token_missing")
        if not conversation_id.strip():
            raise LumibotClientError("lumibot_conversation_id_missing")
        if not content.strip():
            raise LumibotClientError("lumibot_content_missing")

        url = (
            f"{self._base_url}/api/v1/accounts/{account_id.strip()}"
            f"/conversations/{conversation_id.strip()}/messages"
        )
        headers = {
            "Content-Type": "application/json",
            "api_access_token": api_token.strip(),
        }
        payload = {"content": content, "message_type": "outgoing"}

        try:
            if self._client is not None:
                response = self._client.post(url, headers=headers, json=payload)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise LumibotClientError(f"lumibot_unreachable detail={exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 200:
                detail = detail[:200] + "..."
            raise LumibotClientError(f"lumibot_request_failed status={response.status_code} detail={detail}")

        try:
            body = response.json()
        except ValueError as exc:
            raise LumibotClientError("lumibot_invalid_json_response") from exc

        if not isinstance(body, dict):
            raise LumibotClientError("lumibot_invalid_payload")
        return body


@lru_cache(maxsize=1)
def get_lumibot_client() -> LumibotClient:
    settings = get_settings()
    return LumibotClient(
        base_url=settings.lumibot_api_base_url,
        timeout_seconds=settings.lumibot_timeout_seconds,
    )
