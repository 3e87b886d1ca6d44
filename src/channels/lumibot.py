"""Lumibot-backed delivery channel."""

from __future__ import annotations

from src.channels.base import DeliveryCredentials, DeliveryResult
from src.core.logger import get_logger
from src.integrations.lumibot.client import LumibotClient, LumibotClientError


logger = get_logger("relaydesk.channels.lumibot")


class LumibotDeliveryChannel:
    channel = "lumibot"

    def __init__(self, *, client: LumibotClient) -> None:
        self._client = client

    def send(self, credentials: DeliveryCredentials, destination: str, text: str) -> DeliveryResult:
        if not credentials.complete:
            return DeliveryResult.failed("delivery_credentials_missing")
        if not (destination or "").strip():
            return DeliveryResult.failed("delivery_destination_missing")

        try:
            body = self._client.send_text(
                account_id=credentials.account_id,
                api_token=credentials.api_token,
                conversation_id=destination,
                content=text,
            )
        except LumibotClientError as exc:
            logger.warning(
                "lumibot_delivery_failed",
                account_id=credentials.account_id,
                destination=destination,
                error=str(exc),
            )
            return DeliveryResult.failed(str(exc))

        provider_id = body.get("id")
        return DeliveryResult.sent(str(provider_id) if provider_id is not None else None)
