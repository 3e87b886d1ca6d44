"""Conversation processing pipeline: reply batching and inactivity follow-ups."""

from src.pipeline.batch_coordinator import BatchCoordinator, ConversationBusyError
from src.pipeline.inactivity import InactivityDeliveryError, InactivityFollowUpScheduler
from src.pipeline.locks import ConversationLockManager

__all__ = [
    "BatchCoordinator",
    "ConversationBusyError",
    "ConversationLockManager",
    "InactivityDeliveryError",
    "InactivityFollowUpScheduler",
]
