from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from fatural.modules.extraction.vocabulary import DEFAULT_UNIT, NO_VAT
from fatural.modules.reconciliation.engine import ReconciledItem


class BatchCreateIn(BaseModel):
    user_id: uuid.UUID
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None


class BatchOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    description: str | None
    total_amount: Decimal
    created_at: datetime
    updated_at: datetime


class ExpenseIn(BaseModel):
    """A reviewed item as sent by the reconciliation screen."""

    temp_id: str | None = None
    receipt_id: uuid.UUID
    page_number: int = Field(ge=1)
    name: str
    category: str
    amount: Decimal
    date: date
    merchant: str | None = None
    vat_code: str = NO_VAT
    quantity: Decimal = Decimal("1")
    unit: str = DEFAULT_UNIT
    description: str | None = None
    nui: str | None = None
    fiscal_number: str | None = None
    vat_number: str | None = None

    def to_item(self) -> ReconciledItem:
        data = self.model_dump(exclude={"temp_id"})
        item = ReconciledItem(**data)
        if self.temp_id:
            item.temp_id = self.temp_id
        return item


class ExpenseOut(BaseModel):
    id: uuid.UUID
    batch_id: uuid.UUID
    receipt_id: uuid.UUID | None
    page_number: int | None
    name: str
    category: str
    amount: Decimal
    expense_date: date
    merchant: str | None
    vat_code: str
    vat_percentage: int
    quantity: Decimal
    unit: str
    description: str | None
    nui: str | None
    fiscal_number: str | None
    vat_number: str | None
    created_at: datetime


class CommitOut(BaseModel):
    batch_id: uuid.UUID
    committed: int
    batch_total: Decimal
    expense_ids: list[uuid.UUID]
