"""Reference-counted fan-out from broker channels to live UI connections.

One bridge is constructed per process and shared by every connection
handler. Each channel is either unsubscribed (absent from the registry) or
subscribed (present with at least one sink). The broker is asked to
subscribe only on the first sink and to unsubscribe only when the last
sink leaves; both calls happen while the registry lock is held so that
concurrent register/unregister calls cannot double-subscribe.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Protocol, Set, Union

from src.core.logger import get_logger
from src.core.metrics import record_broker_call, record_sink_write_failure, set_active_channels
from src.realtime.events import ErrorEvent, TypedEvent, decode_broker_message


BrokerHandler = Callable[[str, Union[str, bytes]], None]

logger = get_logger("relaydesk.realtime.bridge")


class BrokerSubscriptionError(RuntimeError):
    """Raised when the broker refuses a subscribe; the sink is left unregistered."""


class Sink(Protocol):
    def write(self, frame: str) -> None:
        raise NotImplementedError


class Broker(Protocol):
    def subscribe(self, channel: str, handler: BrokerHandler) -> None:
        raise NotImplementedError

    def unsubscribe(self, channel: str) -> None:
        raise NotImplementedError


class EventFanoutBridge:
    def __init__(self, broker: Broker) -> None:
        self._broker = broker
        self._channels: Dict[str, Set[Sink]] = {}
        self._lock = threading.Lock()

    def register_sink(self, channel: str, sink: Sink) -> None:
        with self._lock:
            sinks = self._channels.get(channel)
            if sinks is not None:
                if sink in sinks:
                    return
                sinks.add(sink)
                logger.debug("sink_registered", channel=channel, sinks=len(sinks))
                return

            self._channels[channel] = {sink}
            try:
                self._broker.subscribe(channel, self.on_broker_message)
            except Exception as exc:
                del self._channels[channel]
                logger.error("broker_subscribe_failed", channel=channel, error=str(exc))
                raise BrokerSubscriptionError(f"subscribe_failed channel={channel}") from exc
            record_broker_call(action="subscribe")
            set_active_channels(len(self._channels))
            logger.info("broker_channel_subscribed", channel=channel)

    def unregister_sink(self, channel: str, sink: Sink) -> None:
        with self._lock:
            sinks = self._channels.get(channel)
            if sinks is None or sink not in sinks:
                logger.warning("sink_unregister_unknown", channel=channel)
                return
            sinks.discard(sink)
            if sinks:
                logger.debug("sink_unregistered", channel=channel, sinks=len(sinks))
                return

            del self._channels[channel]
            set_active_channels(len(self._channels))
            try:
                self._broker.unsubscribe(channel)
            except Exception as exc:
                logger.error("broker_unsubscribe_failed", channel=channel, error=str(exc))
                return
            record_broker_call(action="unsubscribe")
            logger.info("broker_channel_unsubscribed", channel=channel)

    def on_broker_message(self, channel: str, raw: Union[str, bytes]) -> int:
        """Write one broker message to every sink on ``channel``; returns successful writes."""

        with self._lock:
            sinks: List[Sink] = list(self._channels.get(channel, ()))
        if not sinks:
            logger.warning("broker_message_without_sinks", channel=channel)
            return 0

        event = decode_broker_message(raw)
        if isinstance(event, ErrorEvent):
            logger.error("broker_message_unparseable", channel=channel)
        elif not isinstance(event, TypedEvent):
            logger.warning("broker_message_untyped", channel=channel)

        frame = event.frame()
        delivered = 0
        for sink in sinks:
            try:
                sink.write(frame)
            except Exception as exc:
                record_sink_write_failure(channel=channel)
                logger.warning("sink_write_failed", channel=channel, error=str(exc))
                continue
            delivered += 1
        return delivered

    def sink_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, ()))

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {channel: len(sinks) for channel, sinks in sorted(self._channels.items())}
