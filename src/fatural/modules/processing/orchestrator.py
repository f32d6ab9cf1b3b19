from __future__ import annotations

import enum
import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from fatural.core.logging import get_logger, log_event, log_exception
from fatural.core.models import utcnow
from fatural.modules.extraction.schemas import RawExtractedItem
from fatural.modules.processing.events import StatusEvent, publish_status
from fatural.modules.receipts.models import STARTABLE_STATUSES, Receipt, ReceiptStatus

logger = get_logger(__name__)

_MAX_ERROR_MESSAGE = 2000


class ProcessingOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    ALREADY_IN_PROGRESS = "already-in-progress"
    REJECTED = "rejected"


class RejectReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    MISSING_BLOB = "missing_blob"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class ProcessingRequest:
    receipt_id: uuid.UUID
    outcome: ProcessingOutcome
    attempt: int | None = None
    reason: RejectReason | None = None
    detail: str | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == ProcessingOutcome.ACCEPTED


@dataclass
class ProcessingJob:
    receipt_id: uuid.UUID
    attempt: int
    state: ReceiptStatus = ReceiptStatus.PROCESSING
    updated_at: datetime = field(default_factory=utcnow)


class JobRegistry:
    """Attempts currently running in this process, keyed by receipt."""

    def __init__(self) -> None:
        self._jobs: dict[uuid.UUID, ProcessingJob] = {}
        self._lock = threading.Lock()

    def start(self, receipt_id: uuid.UUID, attempt: int) -> ProcessingJob | None:
        with self._lock:
            if receipt_id in self._jobs:
                return None
            job = ProcessingJob(receipt_id=receipt_id, attempt=attempt)
            self._jobs[receipt_id] = job
            return job

    def finish(self, receipt_id: uuid.UUID, attempt: int) -> None:
        with self._lock:
            job = self._jobs.get(receipt_id)
            if job is not None and job.attempt == attempt:
                del self._jobs[receipt_id]

    def get(self, receipt_id: uuid.UUID) -> ProcessingJob | None:
        with self._lock:
            return self._jobs.get(receipt_id)

    def active(self) -> list[ProcessingJob]:
        with self._lock:
            return list(self._jobs.values())

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()


_registry = JobRegistry()


def get_job_registry() -> JobRegistry:
    return _registry


def request_processing(session: Session, *, receipt_id: uuid.UUID) -> ProcessingRequest:
    log_event(logger, "processing.requested", receipt_id=str(receipt_id))

    receipt = session.get(Receipt, receipt_id)
    if receipt is None:
        return _reject(receipt_id, RejectReason.NOT_FOUND, "Receipt not found")
    if not receipt.storage_key:
        return _reject(receipt_id, RejectReason.MISSING_BLOB, "Receipt has no stored document")

    result = session.execute(
        update(Receipt)
        .where(
            Receipt.id == receipt_id,
            Receipt.status.in_(STARTABLE_STATUSES),
        )
        .values(
            status=ReceiptStatus.PROCESSING,
            error_message=None,
            processing_attempts=Receipt.processing_attempts + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        session.rollback()
        session.refresh(receipt)
        if receipt.status == ReceiptStatus.PROCESSING:
            log_event(
                logger,
                "processing.already_in_progress",
                receipt_id=str(receipt_id),
                attempt=receipt.processing_attempts,
            )
            return ProcessingRequest(
                receipt_id=receipt_id,
                outcome=ProcessingOutcome.ALREADY_IN_PROGRESS,
                attempt=receipt.processing_attempts,
            )
        return _reject(
            receipt_id,
            RejectReason.ALREADY_PROCESSED,
            f"Receipt is already {receipt.status.value.lower()}",
        )

    session.commit()
    session.refresh(receipt)
    attempt = receipt.processing_attempts
    log_event(logger, "processing.accepted", receipt_id=str(receipt_id), attempt=attempt)
    publish_status(
        StatusEvent(
            receipt_id=receipt.id,
            user_id=receipt.user_id,
            status=ReceiptStatus.PROCESSING,
            attempt=attempt,
        )
    )
    return ProcessingRequest(
        receipt_id=receipt_id, outcome=ProcessingOutcome.ACCEPTED, attempt=attempt
    )


def dispatch_processing(*, receipt_id: uuid.UUID, attempt: int) -> None:
    """Hand an accepted attempt to the worker; a dispatch failure fails the attempt."""
    from fatural.core.db import SessionLocal
    from fatural.worker.tasks import process_receipt_task

    try:
        async_result = process_receipt_task.delay(str(receipt_id), attempt)
    except Exception as e:  # noqa: BLE001
        log_exception(
            logger, "processing.dispatch.error", receipt_id=str(receipt_id), attempt=attempt
        )
        with SessionLocal() as session:
            mark_failed(
                session,
                receipt_id=receipt_id,
                attempt=attempt,
                message=f"Could not start processing: {e}",
            )
        return
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="process_receipt",
        celery_task_id=getattr(async_result, "id", None),
        receipt_id=str(receipt_id),
        attempt=attempt,
    )


def mark_completed(
    session: Session,
    *,
    receipt_id: uuid.UUID,
    attempt: int,
    page_count: int,
    items: Sequence[RawExtractedItem],
) -> bool:
    return _finish_attempt(
        session,
        receipt_id=receipt_id,
        attempt=attempt,
        status=ReceiptStatus.COMPLETED,
        values={
            "page_count": page_count,
            "extracted_items": [item.model_dump(mode="json") for item in items],
            "error_message": None,
        },
    )


def mark_failed(session: Session, *, receipt_id: uuid.UUID, attempt: int, message: str) -> bool:
    message = (message or "").strip() or "Processing failed"
    return _finish_attempt(
        session,
        receipt_id=receipt_id,
        attempt=attempt,
        status=ReceiptStatus.FAILED,
        values={"error_message": message[:_MAX_ERROR_MESSAGE]},
    )


def _finish_attempt(
    session: Session,
    *,
    receipt_id: uuid.UUID,
    attempt: int,
    status: ReceiptStatus,
    values: dict,
) -> bool:
    result = session.execute(
        update(Receipt)
        .where(
            Receipt.id == receipt_id,
            Receipt.status == ReceiptStatus.PROCESSING,
            Receipt.processing_attempts == attempt,
        )
        .values(status=status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        session.rollback()
        log_event(
            logger,
            "processing.transition.stale",
            receipt_id=str(receipt_id),
            attempt=attempt,
            to_status=status.value,
        )
        return False
    session.commit()

    receipt = session.get(Receipt, receipt_id)
    session.refresh(receipt)
    log_event(
        logger,
        "receipt.status.changed",
        receipt_id=str(receipt_id),
        from_status=ReceiptStatus.PROCESSING.value,
        to_status=status.value,
        attempt=attempt,
    )
    publish_status(
        StatusEvent(
            receipt_id=receipt_id,
            user_id=receipt.user_id,
            status=status,
            attempt=attempt,
            error_message=receipt.error_message,
        )
    )
    return True


def _reject(receipt_id: uuid.UUID, reason: RejectReason, detail: str) -> ProcessingRequest:
    log_event(
        logger,
        "processing.rejected",
        receipt_id=str(receipt_id),
        reason=reason.value,
        detail=detail,
    )
    return ProcessingRequest(
        receipt_id=receipt_id,
        outcome=ProcessingOutcome.REJECTED,
        reason=reason,
        detail=detail,
    )
