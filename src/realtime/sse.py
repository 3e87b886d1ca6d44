"""Server-sent event streaming on top of the fan-out bridge."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from src.core.logger import get_logger
from src.realtime.bridge import EventFanoutBridge
from src.realtime.events import KEEPALIVE_FRAME, connection_ready_frame


SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

logger = get_logger("relaydesk.realtime.sse")


class AsyncQueueSink:
    """Bridge sink that hands frames from the broker thread to an asyncio queue."""

    def __init__(self, loop: asyncio.AbstractEventLoop, *, maxsize: int = 1000) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def write(self, frame: str) -> None:
        if self._closed:
            raise RuntimeError("sink_closed")
        self._loop.call_soon_threadsafe(self._put, frame)

    def _put(self, frame: str) -> None:
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("sse_sink_queue_full_dropping_frame")

    async def next_frame(self, timeout: float) -> Optional[str]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self._closed = True


async def stream_channel_events(
    bridge: EventFanoutBridge,
    channel: str,
    *,
    keepalive_seconds: float = 15.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for ``channel`` until the client disconnects.

    Register and unregister may block on the broker, so both run in a
    worker thread. The sink is always unregistered when the generator is
    closed or cancelled, including a cancellation that lands while the
    registration is still in flight.
    """

    loop = asyncio.get_running_loop()
    sink = AsyncQueueSink(loop)
    registration = asyncio.ensure_future(asyncio.to_thread(bridge.register_sink, channel, sink))
    try:
        await asyncio.shield(registration)
    except asyncio.CancelledError:
        registration.add_done_callback(lambda done: _release_after(done, bridge, channel, sink))
        raise
    logger.info("sse_stream_opened", channel=channel)
    try:
        yield connection_ready_frame(channel)
        while True:
            frame = await sink.next_frame(keepalive_seconds)
            yield frame if frame is not None else KEEPALIVE_FRAME
    finally:
        sink.close()
        await asyncio.shield(asyncio.to_thread(bridge.unregister_sink, channel, sink))
        logger.info("sse_stream_closed", channel=channel)


def _release_after(
    registration: "asyncio.Future[None]",
    bridge: EventFanoutBridge,
    channel: str,
    sink: AsyncQueueSink,
) -> None:
    sink.close()
    if registration.cancelled() or registration.exception() is not None:
        return
    asyncio.get_running_loop().run_in_executor(None, bridge.unregister_sink, channel, sink)
