from __future__ import annotations

import asyncio
import threading

import pytest

from src.realtime.bridge import EventFanoutBridge
from src.realtime.events import KEEPALIVE_FRAME
from src.realtime.sse import AsyncQueueSink, stream_channel_events


class _NoopBroker:
    def __init__(self) -> None:
        self.subscribed = []
        self.unsubscribed = []

    def subscribe(self, channel, handler) -> None:
        self.subscribed.append(channel)

    def unsubscribe(self, channel) -> None:
        self.unsubscribed.append(channel)


def test_stream_yields_ready_frame_events_and_keepalives() -> None:
    broker = _NoopBroker()
    bridge = EventFanoutBridge(broker)
    channel = "chat-updates:c-1"

    async def scenario():
        frames = []
        stream = stream_channel_events(bridge, channel, keepalive_seconds=0.05)
        frames.append(await stream.__anext__())
        assert bridge.sink_count(channel) == 1

        publisher = threading.Thread(
            target=bridge.on_broker_message,
            args=(channel, '{"type":"new_message","payload":{"id":"m-1"}}'),
        )
        publisher.start()
        publisher.join()
        frames.append(await stream.__anext__())
        frames.append(await stream.__anext__())

        await stream.aclose()
        return frames

    frames = asyncio.run(scenario())

    assert frames[0] == 'event: connection_ready\ndata: {"channel":"chat-updates:c-1"}\n\n'
    assert frames[1] == 'event: new_message\ndata: {"id":"m-1"}\n\n'
    assert frames[2] == KEEPALIVE_FRAME
    assert bridge.snapshot() == {}
    assert broker.subscribed == [channel]
    assert broker.unsubscribed == [channel]


def test_two_streams_share_one_subscription() -> None:
    broker = _NoopBroker()
    bridge = EventFanoutBridge(broker)
    channel = "workspace-updates:ws-1"

    async def scenario():
        first = stream_channel_events(bridge, channel, keepalive_seconds=0.05)
        second = stream_channel_events(bridge, channel, keepalive_seconds=0.05)
        await first.__anext__()
        await second.__anext__()
        shared = bridge.sink_count(channel)
        await first.aclose()
        remaining = bridge.sink_count(channel)
        await second.aclose()
        return shared, remaining

    shared, remaining = asyncio.run(scenario())

    assert (shared, remaining) == (2, 1)
    assert broker.subscribed == [channel]
    assert broker.unsubscribed == [channel]


def test_closed_sink_rejects_writes() -> None:
    async def scenario():
        sink = AsyncQueueSink(asyncio.get_running_loop())
        sink.close()
        with pytest.raises(RuntimeError):
            sink.write("event: x\ndata: {}\n\n")

    asyncio.run(scenario())


def test_full_sink_drops_frames() -> None:
    async def scenario():
        sink = AsyncQueueSink(asyncio.get_running_loop(), maxsize=1)
        sink.write("one")
        sink.write("two")
        await asyncio.sleep(0)
        first = await sink.next_frame(0.05)
        second = await sink.next_frame(0.05)
        return first, second

    assert asyncio.run(scenario()) == ("one", None)


class _BlockingBroker(_NoopBroker):
    """Holds subscribe until released, like a broker round trip that stalls."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def subscribe(self, channel, handler) -> None:
        self.entered.set()
        self.release.wait(timeout=2)
        super().subscribe(channel, handler)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        assert asyncio.get_running_loop().time() < deadline
        await asyncio.sleep(0.005)


def test_slow_subscribe_does_not_block_the_event_loop() -> None:
    broker = _BlockingBroker()
    bridge = EventFanoutBridge(broker)
    channel = "chat-updates:c-1"

    async def scenario():
        stream = stream_channel_events(bridge, channel, keepalive_seconds=0.05)
        opening = asyncio.ensure_future(stream.__anext__())
        await _wait_for(broker.entered.is_set)
        ticks = 0
        for _ in range(5):
            await asyncio.sleep(0.001)
            ticks += 1
        pending = not opening.done()
        broker.release.set()
        frame = await opening
        await stream.aclose()
        return ticks, pending, frame

    ticks, pending, frame = asyncio.run(scenario())

    assert ticks == 5
    assert pending is True
    assert frame.startswith("event: connection_ready\n")
    assert broker.subscribed == [channel]
    assert broker.unsubscribed == [channel]
    assert bridge.snapshot() == {}


def test_cancel_during_subscribe_still_releases_the_sink() -> None:
    broker = _BlockingBroker()
    bridge = EventFanoutBridge(broker)
    channel = "chat-updates:c-2"

    async def scenario():
        stream = stream_channel_events(bridge, channel, keepalive_seconds=0.05)
        opening = asyncio.ensure_future(stream.__anext__())
        await _wait_for(broker.entered.is_set)
        opening.cancel()
        with pytest.raises(asyncio.CancelledError):
            await opening
        broker.release.set()
        await _wait_for(lambda: broker.unsubscribed == [channel])

    asyncio.run(scenario())

    assert broker.subscribed == [channel]
    assert bridge.snapshot() == {}
