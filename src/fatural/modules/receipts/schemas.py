from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field

from fatural.modules.extraction.schemas import RawExtractedItem
from fatural.modules.receipts.models import ReceiptStatus


class ReceiptOut(BaseModel):
    receipt_id: uuid.UUID = Field(validation_alias=AliasChoices("receipt_id", "id"))
    user_id: uuid.UUID
    batch_id: uuid.UUID | None
    filename: str
    content_type: str | None
    byte_size: int
    sha256: str | None
    status: ReceiptStatus
    error_message: str | None
    processing_attempts: int
    page_count: int | None
    created_at: datetime
    updated_at: datetime


class ReceiptItemsOut(BaseModel):
    receipt_id: uuid.UUID
    status: ReceiptStatus
    page_count: int | None
    nothing_extracted: bool
    items: list[RawExtractedItem]


class DocumentUrlOut(BaseModel):
    receipt_id: uuid.UUID
    url: str
    expires_in: int
