from __future__ import annotations

import time
import uuid

from sqlalchemy.orm import Session

from fatural.core.db import SessionLocal
from fatural.core.errors import PipelineError
from fatural.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_receipt_context,
    set_receipt_context,
)
from fatural.core.storage import StorageError
from fatural.modules.extraction.oracle import extract_items
from fatural.modules.extraction.rasterizer import rasterize
from fatural.modules.processing.orchestrator import get_job_registry, mark_completed, mark_failed
from fatural.modules.receipts.models import Receipt, ReceiptStatus

logger = get_logger(__name__)


def run_processing(*, receipt_id: str, attempt: int) -> None:
    """Run one accepted attempt; any exception ends it as FAILED."""
    rid = uuid.UUID(receipt_id)
    token = set_receipt_context(receipt_id)
    try:
        with SessionLocal() as session:
            receipt = session.get(Receipt, rid)
            if receipt is None:
                log_event(logger, "pipeline.skipped", reason="not_found", attempt=attempt)
                return
            if receipt.status != ReceiptStatus.PROCESSING or receipt.processing_attempts != attempt:
                log_event(
                    logger,
                    "pipeline.skipped",
                    reason="stale_attempt",
                    attempt=attempt,
                    current_attempt=receipt.processing_attempts,
                    receipt_status=receipt.status.value,
                )
                return

            registry = get_job_registry()
            if registry.start(rid, attempt) is None:
                # Redelivered task while the first delivery is still running here.
                log_event(logger, "pipeline.skipped", reason="already_running", attempt=attempt)
                return
            try:
                _run_attempt(session, receipt, attempt, active_jobs=len(registry.active()))
            finally:
                registry.finish(rid, attempt)
    finally:
        reset_receipt_context(token)


def _run_attempt(session: Session, receipt: Receipt, attempt: int, *, active_jobs: int) -> None:
    start = time.monotonic()
    log_event(
        logger,
        "pipeline.start",
        attempt=attempt,
        active_jobs=active_jobs,
        filename=receipt.filename,
        content_type=receipt.content_type,
        byte_size=receipt.byte_size,
        storage_key=receipt.storage_key,
    )
    try:
        pages = list(
            rasterize(
                receipt.storage_key,
                receipt.content_type,
                filename=receipt.filename,
            )
        )
        log_event(
            logger,
            "pipeline.rasterized",
            attempt=attempt,
            page_count=len(pages),
            duration_ms=monotonic_ms(start),
        )

        items = extract_items(pages)
        log_event(
            logger,
            "pipeline.extracted",
            attempt=attempt,
            item_count=len(items),
            duration_ms=monotonic_ms(start),
        )

        mark_completed(
            session,
            receipt_id=receipt.id,
            attempt=attempt,
            page_count=len(pages),
            items=items,
        )
        log_event(
            logger,
            "pipeline.finish",
            attempt=attempt,
            status="success",
            item_count=len(items),
            duration_ms=monotonic_ms(start),
        )
    except Exception as e:  # noqa: BLE001
        receipt_id = receipt.id
        session.rollback()
        log_exception(
            logger,
            "pipeline.error",
            attempt=attempt,
            error_type=type(e).__name__,
            duration_ms=monotonic_ms(start),
        )
        mark_failed(session, receipt_id=receipt_id, attempt=attempt, message=failure_message(e))


def failure_message(error: Exception) -> str:
    detail = str(error).strip()
    if isinstance(error, PipelineError):
        return detail or type(error).__name__
    if isinstance(error, StorageError):
        prefix = "Could not read the stored document"
    else:
        prefix = f"Unexpected processing error ({type(error).__name__})"
    return f"{prefix}: {detail}" if detail else prefix
