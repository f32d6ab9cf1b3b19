from __future__ import annotations

import mimetypes
import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from fatural.core.config import settings
from fatural.core.db import db_session
from fatural.core.logging import get_logger, log_event
from fatural.core.storage import StorageError, get_storage, verify_local_signature
from fatural.modules.receipts.schemas import DocumentUrlOut, ReceiptItemsOut, ReceiptOut
from fatural.modules.receipts.service import (
    create_receipt,
    document_url,
    get_receipt,
    list_receipts,
    receipt_items,
)

router = APIRouter(tags=["receipts"])
logger = get_logger(__name__)


@router.post("/receipts", response_model=ReceiptOut, status_code=status.HTTP_201_CREATED)
async def upload_receipt(
    upload: UploadFile = File(...),
    user_id: uuid.UUID = Form(...),
    batch_id: uuid.UUID | None = Form(None),
    session: Session = Depends(db_session),
) -> ReceiptOut:
    body = await upload.read()
    log_event(
        logger,
        "upload.received",
        user_id=str(user_id),
        filename=upload.filename or "upload.bin",
        content_type=upload.content_type,
        byte_size=len(body),
    )
    receipt = create_receipt(
        session,
        user_id=user_id,
        batch_id=batch_id,
        filename=upload.filename or "upload.bin",
        content_type=upload.content_type,
        body=body,
    )
    return ReceiptOut.model_validate(receipt, from_attributes=True)


@router.get("/receipts/{receipt_id}", response_model=ReceiptOut)
def get_receipt_endpoint(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> ReceiptOut:
    receipt = get_receipt(session, receipt_id=receipt_id)
    return ReceiptOut.model_validate(receipt, from_attributes=True)


@router.get("/users/{user_id}/receipts", response_model=list[ReceiptOut])
def list_receipts_endpoint(
    user_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> list[ReceiptOut]:
    return [
        ReceiptOut.model_validate(r, from_attributes=True)
        for r in list_receipts(session, user_id=user_id)
    ]


@router.get("/receipts/{receipt_id}/items", response_model=ReceiptItemsOut)
def get_receipt_items(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> ReceiptItemsOut:
    receipt = get_receipt(session, receipt_id=receipt_id)
    items = receipt_items(receipt)
    return ReceiptItemsOut(
        receipt_id=receipt.id,
        status=receipt.status,
        page_count=receipt.page_count,
        nothing_extracted=not items,
        items=items,
    )


@router.get("/receipts/{receipt_id}/document-url", response_model=DocumentUrlOut)
def get_document_url(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> DocumentUrlOut:
    receipt = get_receipt(session, receipt_id=receipt_id)
    url, ttl = document_url(receipt)
    return DocumentUrlOut(receipt_id=receipt.id, url=url, expires_in=ttl)


@router.get("/blobs/{key:path}")
def download_blob(
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
) -> Response:
    if settings.storage_backend != "local":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if not verify_local_signature(key, expires, signature):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired link")
    try:
        body = get_storage().get(key=key)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found") from e
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=body, media_type=media_type)
