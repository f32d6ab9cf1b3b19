from __future__ import annotations

import uuid
from collections.abc import Iterator, Sequence

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from fatural.core.db import db_session
from fatural.modules.processing.events import (
    StatusChannel,
    StatusEvent,
    Subscription,
    get_status_channel,
)
from fatural.modules.processing.orchestrator import (
    ProcessingOutcome,
    RejectReason,
    dispatch_processing,
    request_processing,
)
from fatural.modules.processing.schemas import ProcessingOut
from fatural.modules.receipts.models import ReceiptStatus
from fatural.modules.receipts.service import get_receipt

router = APIRouter(tags=["processing"])

_SETTLED_STATUSES = frozenset(
    {ReceiptStatus.COMPLETED, ReceiptStatus.FAILED, ReceiptStatus.COMMITTED}
)
_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@router.post(
    "/receipts/{receipt_id}/process",
    response_model=ProcessingOut,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_processing(
    receipt_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    session: Session = Depends(db_session),
) -> ProcessingOut:
    result = request_processing(session, receipt_id=receipt_id)
    if result.outcome == ProcessingOutcome.REJECTED:
        code = (
            status.HTTP_404_NOT_FOUND
            if result.reason == RejectReason.NOT_FOUND
            else status.HTTP_409_CONFLICT
        )
        raise HTTPException(status_code=code, detail=result.detail)
    if result.accepted:
        # Runs after the response is sent.
        background_tasks.add_task(
            dispatch_processing, receipt_id=receipt_id, attempt=result.attempt
        )
    return ProcessingOut(
        receipt_id=receipt_id, outcome=result.outcome.value, attempt=result.attempt
    )


@router.get("/receipts/{receipt_id}/events")
def receipt_events(
    receipt_id: uuid.UUID,
    follow: bool = False,
    heartbeat: float = Query(15.0, gt=0, le=60),
    session: Session = Depends(db_session),
) -> StreamingResponse:
    channel = get_status_channel()
    sub = channel.subscribe(receipt_id=receipt_id)
    try:
        receipt = get_receipt(session, receipt_id=receipt_id)
    except HTTPException:
        channel.unsubscribe(sub)
        raise
    snapshot = StatusEvent(
        receipt_id=receipt.id,
        user_id=receipt.user_id,
        status=receipt.status,
        attempt=receipt.processing_attempts,
        error_message=receipt.error_message,
    )
    sub.mark_seen(snapshot)
    return StreamingResponse(
        status_event_stream(
            channel,
            sub,
            initial=[snapshot],
            close_when_settled=not follow,
            heartbeat=heartbeat,
        ),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/users/{user_id}/receipt-events")
def user_receipt_events(
    user_id: uuid.UUID,
    heartbeat: float = Query(15.0, gt=0, le=60),
) -> StreamingResponse:
    channel = get_status_channel()
    sub = channel.subscribe(user_id=user_id)
    return StreamingResponse(
        status_event_stream(channel, sub, heartbeat=heartbeat),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


def status_event_stream(
    channel: StatusChannel,
    sub: Subscription,
    *,
    initial: Sequence[StatusEvent] = (),
    close_when_settled: bool = False,
    heartbeat: float = 15.0,
) -> Iterator[str]:
    try:
        for event in initial:
            yield format_sse(event)
            if close_when_settled and event.status in _SETTLED_STATUSES:
                return
        while True:
            event = sub.get(timeout=heartbeat)
            if event is None:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
            if close_when_settled and event.status in _SETTLED_STATUSES:
                return
    finally:
        channel.unsubscribe(sub)


def format_sse(event: StatusEvent) -> str:
    attempt, rank = event.version
    return f"id: {attempt}-{rank}\nevent: status\ndata: {event.to_json()}\n\n"
