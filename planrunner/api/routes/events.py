"""Event API routes.

Endpoints:
    GET /v1/events          Recent events (optionally after a sequence number)
    GET /v1/events/stream   Server-sent events, live
"""

import json
from typing import Any, Iterator, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from planrunner.api.deps import get_runtime, require_token
from planrunner.events.schemas import LifecycleEvent
from planrunner.events.subscribers import EventLog
from planrunner.runtime import PlanRunner

router = APIRouter(prefix="/events", tags=["events"], dependencies=[Depends(require_token)])

KEEPALIVE_SECONDS = 15.0


def _sse(event: str, data: Any, event_id: Optional[int] = None) -> str:
    head = f"id: {event_id}\n" if event_id is not None else ""
    return f"{head}event: {event}\ndata: {json.dumps(data)}\n\n"


def _stream(
    log: EventLog,
    since: int,
    execution_id: Optional[str],
    limit: Optional[int],
    poll_s: float,
) -> Iterator[str]:
    yield _sse("hello", {"ok": True, "since": since})

    last = since
    sent = 0
    idle = 0.0
    while limit is None or sent < limit:
        events = log.wait_since(last, timeout=poll_s)
        if not events:
            idle += poll_s
            if idle >= KEEPALIVE_SECONDS:
                idle = 0.0
                yield ": keepalive\n\n"
            continue
        idle = 0.0
        for event in events:
            last = event.sequence
            if execution_id is not None and event.execution_id != execution_id:
                continue
            yield _sse(event.event_type.value, event.model_dump(mode="json"), event.sequence)
            sent += 1
            if limit is not None and sent >= limit:
                return


@router.get("", response_model=list[LifecycleEvent])
async def recent_events(
    since: Optional[int] = Query(default=None, ge=0, description="Only events after this sequence number"),
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: PlanRunner = Depends(get_runtime),
):
    if since is not None:
        return runtime.event_log.since(since)[:limit]
    return runtime.event_log.recent(limit)


@router.get("/stream")
def stream_events(
    since: int = Query(default=0, ge=0),
    execution_id: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1, description="Close the stream after this many events"),
    poll_s: float = Query(default=1.0, gt=0, le=30),
    runtime: PlanRunner = Depends(get_runtime),
):
    """SSE stream of lifecycle events."""
    return StreamingResponse(
        _stream(runtime.event_log, since, execution_id, limit, poll_s),
        media_type="text/event-stream",
    )
