from __future__ import annotations

import enum
import uuid

from sqlalchemy import JSON, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fatural.core.models import Base, Timestamped, UUIDPrimaryKey


class ReceiptStatus(str, enum.Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    COMMITTED = "COMMITTED"


# Statuses from which a new processing attempt may start.
STARTABLE_STATUSES = (ReceiptStatus.UPLOADED, ReceiptStatus.FAILED)


class Receipt(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "receipts_receipt"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), index=True)
    batch_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("expenses_batch.id"), nullable=True, index=True
    )

    filename: Mapped[str] = mapped_column(String(512))
    content_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    byte_size: Mapped[int] = mapped_column(Integer, default=0)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    storage_key: Mapped[str | None] = mapped_column(String(1024), unique=True, nullable=True)

    status: Mapped[ReceiptStatus] = mapped_column(
        Enum(ReceiptStatus, native_enum=False), index=True, default=ReceiptStatus.UPLOADED
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_attempts: Mapped[int] = mapped_column(Integer, default=0)

    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    extracted_items: Mapped[list | None] = mapped_column(JSON, nullable=True)

    batch = relationship("ExpenseBatch")
