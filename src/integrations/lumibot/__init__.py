"""Lumibot delivery provider integration."""

from src.integrations.lumibot.client import LumibotClient, LumibotClientError, get_lumibot_client

__all__ = ["LumibotClient", "LumibotClientError", "get_lumibot_client"]
