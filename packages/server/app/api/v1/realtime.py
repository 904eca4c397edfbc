"""
Live update streams.

GET /api/realtime/{module}/stream — SSE stream of row changes for one view
                                    (pr_radar, standups, arcade), scoped to
                                    the caller's organization
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator, Awaitable, Callable

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse, ServerSentEvent

from app.core.auth import CurrentMember, require_member
from app.core.realtime import RealtimeProvider, TopicSubscription, get_realtime_provider
from app.services.live_updates import STREAM_MODULES, stream_subscription

log = structlog.get_logger()

router = APIRouter()

HEARTBEAT_INTERVAL = 30  # seconds


async def row_event_stream(
    provider: RealtimeProvider,
    module: str,
    org_id: Any,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_interval: float = HEARTBEAT_INTERVAL,
) -> AsyncGenerator[dict | ServerSentEvent, None]:
    """
    Yield SSE events for one module's rows.

    - Emits ``ready`` once the topic is registered
    - One event per delivered row, named after the handler (``pr_added`` ...)
    - ``: heartbeat`` comment after ``heartbeat_interval`` seconds of silence
    - The topic subscription is released when the client goes away
    """
    queue: asyncio.Queue[dict] = asyncio.Queue()

    def emit(event_name: str, row: BaseModel) -> None:
        queue.put_nowait({"event": event_name, "data": row.model_dump_json()})

    handle = TopicSubscription(provider, stream_subscription(module, emit))
    handle.update(org_id)
    try:
        yield {"event": "ready", "data": json.dumps({"topic": handle.topic_key})}

        while True:
            if await is_disconnected():
                break
            try:
                item = await asyncio.wait_for(queue.get(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                yield ServerSentEvent(comment="heartbeat")
                continue
            yield item
    except asyncio.CancelledError:
        log.info("realtime.stream_cancelled", module=module, org_id=str(org_id))
        raise
    finally:
        handle.close()


@router.get("/{module}/stream")
async def stream_module(
    module: str,
    request: Request,
    current: CurrentMember = Depends(require_member),
    provider: RealtimeProvider = Depends(get_realtime_provider),
):
    """Stream live row changes for a view in the caller's organization."""
    if module not in STREAM_MODULES:
        raise HTTPException(status_code=404, detail=f"Unknown module: {module}")

    return EventSourceResponse(
        row_event_stream(provider, module, current.org_id, request.is_disconnected)
    )
