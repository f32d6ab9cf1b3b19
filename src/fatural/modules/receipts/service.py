from __future__ import annotations

import hashlib
import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from fatural.core.config import settings
from fatural.core.logging import get_logger, log_event
from fatural.core.storage import StorageError, get_storage
from fatural.modules.expenses.models import ExpenseBatch
from fatural.modules.extraction.schemas import RawExtractedItem
from fatural.modules.processing.events import StatusEvent, publish_status
from fatural.modules.receipts.models import Receipt, ReceiptStatus

logger = get_logger(__name__)

_REVIEWABLE_STATUSES = (ReceiptStatus.COMPLETED, ReceiptStatus.COMMITTED)


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sanitize_filename(name: str) -> str:
    # Strip any path components and normalize whitespace.
    name = name.replace("\\", "/").split("/")[-1].strip()
    return " ".join(name.split())


def create_receipt(
    session: Session,
    *,
    user_id: uuid.UUID,
    batch_id: uuid.UUID | None,
    filename: str,
    content_type: str | None,
    body: bytes,
) -> Receipt:
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Upload is empty")
    if batch_id is not None and session.get(ExpenseBatch, batch_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")

    filename = _sanitize_filename(filename) or "upload.bin"
    key = f"receipts/{user_id}/{uuid.uuid4()}-{filename}"
    stored = get_storage().put(key=key, body=body)

    receipt = Receipt(
        user_id=user_id,
        batch_id=batch_id,
        filename=filename,
        content_type=content_type,
        byte_size=stored.byte_size,
        sha256=_sha256_hex(body),
        storage_key=stored.key,
        status=ReceiptStatus.UPLOADED,
        processing_attempts=0,
    )
    session.add(receipt)
    session.commit()
    session.refresh(receipt)
    log_event(
        logger,
        "receipt.uploaded",
        receipt_id=str(receipt.id),
        user_id=str(user_id),
        filename=filename,
        content_type=content_type,
        byte_size=receipt.byte_size,
        sha256=receipt.sha256,
    )
    publish_status(
        StatusEvent(
            receipt_id=receipt.id,
            user_id=receipt.user_id,
            status=ReceiptStatus.UPLOADED,
            attempt=0,
        )
    )
    return receipt


def get_receipt(session: Session, *, receipt_id: uuid.UUID) -> Receipt:
    receipt = session.get(Receipt, receipt_id)
    if not receipt:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")
    return receipt


def list_receipts(session: Session, *, user_id: uuid.UUID) -> list[Receipt]:
    return list(
        session.scalars(
            select(Receipt).where(Receipt.user_id == user_id).order_by(Receipt.created_at.desc())
        )
    )


def receipt_items(receipt: Receipt) -> list[RawExtractedItem]:
    if receipt.status not in _REVIEWABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Receipt has no extraction results (status {receipt.status.value})",
        )
    return [RawExtractedItem.model_validate(data) for data in receipt.extracted_items or []]


def document_url(receipt: Receipt) -> tuple[str, int]:
    if not receipt.storage_key:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Receipt has no stored document"
        )
    ttl = int(settings.signed_url_ttl_seconds)
    try:
        url = get_storage().signed_url(key=receipt.storage_key, ttl_seconds=ttl)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return url, ttl
