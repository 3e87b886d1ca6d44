"""Server-sent event routes for conversation and workspace updates."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from src.core.config import get_settings
from src.realtime.bridge import BrokerSubscriptionError, EventFanoutBridge
from src.realtime.events import conversation_channel, workspace_channel
from src.realtime.sse import SSE_HEADERS, stream_channel_events


router = APIRouter(tags=["realtime"])


def get_bridge(request: Request) -> EventFanoutBridge:
    bridge = getattr(request.app.state, "bridge", None)
    if bridge is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="realtime_unavailable")
    return bridge


async def _stream(bridge: EventFanoutBridge, channel: str) -> StreamingResponse:
    events = stream_channel_events(
        bridge,
        channel,
        keepalive_seconds=get_settings().sse_keepalive_seconds,
    )
    try:
        # Subscribe before the response starts so broker failures map to 503.
        first_frame = await events.__anext__()
    except BrokerSubscriptionError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="realtime_unavailable") from exc

    async def _frames():
        try:
            yield first_frame
            async for frame in events:
                yield frame
        finally:
            await events.aclose()

    return StreamingResponse(_frames(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/sse/conversations/{conversation_id}")
async def conversation_events(
    conversation_id: str,
    bridge: EventFanoutBridge = Depends(get_bridge),
) -> StreamingResponse:
    return await _stream(bridge, conversation_channel(conversation_id))


@router.get("/sse")
async def workspace_events(
    workspace_id: Optional[str] = Query(default=None, alias="workspaceId"),
    bridge: EventFanoutBridge = Depends(get_bridge),
) -> StreamingResponse:
    if not workspace_id or not workspace_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing workspaceId parameter")
    return await _stream(bridge, workspace_channel(workspace_id.strip()))


@router.get("/realtime/status")
def realtime_status(bridge: EventFanoutBridge = Depends(get_bridge)) -> dict[str, object]:
    channels = bridge.snapshot()
    return {
        "channels": channels,
        "channel_count": len(channels),
        "sink_count": sum(channels.values()),
    }
