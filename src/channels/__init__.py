"""Outbound delivery channels and contracts."""

from src.channels.base import DeliveryChannel, DeliveryCredentials, DeliveryResult
from src.channels.lumibot import LumibotDeliveryChannel

__all__ = ["DeliveryChannel", "DeliveryCredentials", "DeliveryResult", "LumibotDeliveryChannel"]
