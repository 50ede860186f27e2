"""
Server-Sent Event Stream
========================

Turns EventBus callbacks for one conversation into an SSE byte stream.

The bus delivers synchronously on the publisher's thread, so the sink only
hands events over to the stream's own loop through ``call_soon_threadsafe``.
Frames look like:

    event: agent_start
    data: {"agentId": "...", "agentName": "...", ...}

Usage:
    return StreamingResponse(event_stream(conversation_id, event_bus, 30.0),
                             media_type="text/event-stream")
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Optional

from agentmafia.events import Event, EventBus, EventType

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


async def event_stream(
    conversation_id: str,
    bus: EventBus,
    heartbeat_seconds: float = 30.0,
    max_events: Optional[int] = None,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for a conversation until the client goes away.

    A ``connected`` frame is sent first and a ``heartbeat`` frame whenever
    nothing was published for ``heartbeat_seconds``. The bus subscription is
    removed when the generator closes. ``max_events`` ends the stream after
    that many bus events.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Event] = asyncio.Queue()

    def sink(event: Event) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    unsubscribe = bus.subscribe(conversation_id, sink)
    logger.debug("SSE client subscribed to %s", conversation_id)
    delivered = 0
    try:
        yield format_sse(EventType.CONNECTED.value, {"conversationId": conversation_id})
        while max_events is None or delivered < max_events:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield format_sse(EventType.HEARTBEAT.value, {})
                continue
            delivered += 1
            yield format_sse(event.event_type, event.data)
    finally:
        unsubscribe()
        logger.debug("SSE client left %s", conversation_id)
