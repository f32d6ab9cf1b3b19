from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import fatural.models  # noqa: F401
# isort: on

import time

from fatural.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from fatural.worker.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(name="process_receipt", bind=True)
def process_receipt_task(self, receipt_id: str, attempt: int) -> None:
    from fatural.modules.processing.pipeline import run_processing

    task_id = getattr(self.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    log_event(
        logger,
        "celery.task.start",
        task_name="process_receipt",
        celery_task_id=task_id,
        receipt_id=receipt_id,
        attempt=attempt,
    )
    try:
        run_processing(receipt_id=receipt_id, attempt=attempt)
        log_event(
            logger,
            "celery.task.finish",
            task_name="process_receipt",
            celery_task_id=task_id,
            receipt_id=receipt_id,
            attempt=attempt,
            duration_ms=monotonic_ms(start),
        )
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="process_receipt",
            celery_task_id=task_id,
            receipt_id=receipt_id,
            attempt=attempt,
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_task_context(token)
