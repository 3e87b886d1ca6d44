"""Redis pub/sub broker shared by every SSE connection in the process."""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional

from redis import Redis
from redis.client import PubSub, PubSubWorkerThread

from src.core.logger import get_logger
from src.realtime.bridge import BrokerHandler


logger = get_logger("relaydesk.realtime.broker")


class RedisPubSubBroker:
    """Owns one subscriber connection; the listener thread starts on first subscribe."""

    def __init__(self, redis_client: Redis, *, poll_sleep_seconds: float = 0.01) -> None:
        self._redis = redis_client
        self._poll_sleep_seconds = max(0.001, poll_sleep_seconds)
        self._pubsub: Optional[PubSub] = None
        self._thread: Optional[PubSubWorkerThread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, channel: str, handler: BrokerHandler) -> None:
        def _dispatch(message: Dict[str, Any]) -> None:
            handler(message["channel"], message["data"])

        with self._lock:
            if self._pubsub is None:
                self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(**{channel: _dispatch})
            if self._thread is None:
                self._thread = self._pubsub.run_in_thread(
                    sleep_time=self._poll_sleep_seconds,
                    daemon=True,
                    exception_handler=self._on_listener_error,
                )
                logger.info("broker_listener_started")

    def unsubscribe(self, channel: str) -> None:
        with self._lock:
            if self._pubsub is None:
                return
            self._pubsub.unsubscribe(channel)

    def close(self) -> None:
        with self._lock:
            if self._thread is not None:
                self._thread.stop()
                self._thread = None
            if self._pubsub is not None:
                self._pubsub.close()
                self._pubsub = None
        logger.info("broker_closed")

    def _on_listener_error(self, exc: BaseException, pubsub: PubSub, thread: PubSubWorkerThread) -> None:
        del pubsub, thread
        logger.error("broker_listener_error", error_type=type(exc).__name__, error=str(exc))
        # The connection reconnects on the next read.
        time.sleep(1.0)
