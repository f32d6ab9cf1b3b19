from __future__ import annotations

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, computed_field

from fatural.modules.extraction.vocabulary import DEFAULT_UNIT, NO_VAT, vat_percentage_for


class RawExtractedItem(BaseModel):
    """One line item exactly as the oracle reported it, after schema checks."""

    model_config = ConfigDict(frozen=True)

    name: str
    category: str
    amount: Decimal
    date: date
    merchant: str | None = None
    vat_code: str = NO_VAT
    quantity: Decimal = Decimal("1")
    unit: str = DEFAULT_UNIT
    page_number: int
    description: str | None = None
    nui: str | None = None
    fiscal_number: str | None = None
    vat_number: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def vat_percentage(self) -> int:
        return vat_percentage_for(self.vat_code)


class PageImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_number: int
    media_type: str
    data: bytes
    width: int
    height: int
