"""
Server-sent event stream of agent activity.

Frames:
    data: {"type": "connected", ...}      once, on connect
    data: {"type": "agent_event", ...}    every persisted agent event
    data: {"type": "status_change", ...}  every run status change
    : heartbeat                           every STREAM_HEARTBEAT_SECONDS
"""

import json
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.api.deps import get_broadcaster
from app.core.config import settings
from app.services.event_stream import EventBroadcaster

logger = structlog.get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(message: dict) -> str:
    return f"data: {json.dumps(message, default=str)}\n\n"


async def event_frames(
    request: Request,
    broadcaster: EventBroadcaster,
    heartbeat_seconds: float,
    max_messages: Optional[int] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames until the client disconnects (or max_messages is reached)."""
    subscription = broadcaster.subscribe()
    sent = 0
    try:
        yield format_sse(
            {
                "type": "connected",
                "data": {"subscriptionId": subscription.id},
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        while max_messages is None or sent < max_messages:
            if await request.is_disconnected():
                break
            message = await subscription.get(timeout=heartbeat_seconds)
            if message is None:
                yield ": heartbeat\n\n"
                continue
            yield format_sse(message)
            sent += 1
    finally:
        broadcaster.unsubscribe(subscription)
        logger.debug("Stream closed", subscription_id=subscription.id, sent=sent)


@router.get("/stream")
async def stream_events(request: Request, broadcaster: EventBroadcaster = Depends(get_broadcaster)):
    return StreamingResponse(
        event_frames(request, broadcaster, settings.STREAM_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
