"""Shared outbound delivery contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from src.storage.models import Workspace


@dataclass(frozen=True)
class DeliveryCredentials:
    account_id: str
    api_token: str

    @property
    def complete(self) -> bool:
        return bool(self.account_id.strip() and self.api_token.strip())

    @classmethod
    def from_workspace(cls, workspace: Optional[Workspace]) -> "DeliveryCredentials":
        if workspace is None:
            return cls(account_id="", api_token="")
        return cls(
            account_id=workspace.lumibot_account_id or "",
            api_token=workspace.lumibot_api_token or "",
        )


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    provider_message_id: str | None = None
    error_detail: str | None = None

    @classmethod
    def sent(cls, provider_message_id: str | None) -> "DeliveryResult":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, error_detail: str) -> "DeliveryResult":
        return cls(success=False, error_detail=error_detail)


class DeliveryChannel(Protocol):
    """Send text to an end user; provider failures come back as results, not exceptions."""

    def send(self, credentials: DeliveryCredentials, destination: str, text: str) -> DeliveryResult:
        raise NotImplementedError
