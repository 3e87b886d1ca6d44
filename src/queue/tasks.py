"""rq job functions for the two relaydesk queues."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Mapping

from src.ai.responder import get_ai_responder
from src.channels.lumibot import LumibotDeliveryChannel
from src.core.config import get_settings
from src.integrations.lumibot.client import get_lumibot_client
from src.pipeline.batch_coordinator import BatchCoordinator
from src.pipeline.inactivity import InactivityFollowUpScheduler
from src.pipeline.locks import ConversationLockManager
from src.queue.job_queue import get_inactivity_queue
from src.queue.worker import run_job
from src.realtime.publisher import get_event_publisher
from src.storage.db import get_session_factory, load_models
from src.storage.redis_client import get_client


@lru_cache(maxsize=1)
def get_batch_coordinator() -> BatchCoordinator:
    settings = get_settings()
    load_models()
    return BatchCoordinator(
        session_factory=get_session_factory(),
        ai_responder=get_ai_responder(),
        delivery_channel=LumibotDeliveryChannel(client=get_lumibot_client()),
        inactivity_queue=get_inactivity_queue(),
        publisher=get_event_publisher(),
        lock_manager=ConversationLockManager(
            get_client(),
            ttl_seconds=settings.conversation_lock_ttl_seconds,
        ),
        buffer_seconds=settings.batch_buffer_seconds,
        history_limit=settings.history_limit,
    )


@lru_cache(maxsize=1)
def get_inactivity_scheduler() -> InactivityFollowUpScheduler:
    load_models()
    return InactivityFollowUpScheduler(
        session_factory=get_session_factory(),
        delivery_channel=LumibotDeliveryChannel(client=get_lumibot_client()),
        publisher=get_event_publisher(),
    )


def process_client_message(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return run_job(
        get_settings().processing_queue_name,
        payload,
        lambda data: get_batch_coordinator().handle_payload(data),
    )


def send_inactivity_followup(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return run_job(
        get_settings().inactivity_queue_name,
        payload,
        lambda data: get_inactivity_scheduler().handle_payload(data),
    )
