from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, NamedTuple

from fatural.core.errors import ValidationError, Violation
from fatural.modules.extraction.schemas import RawExtractedItem
from fatural.modules.extraction.vocabulary import (
    DEFAULT_CATEGORY,
    DEFAULT_UNIT,
    NO_VAT,
    is_valid_category,
    is_valid_vat_code,
    vat_percentage_for,
)
from fatural.modules.receipts.models import Receipt

_CENT = Decimal("0.01")
_QUANTITY_STEP = Decimal("0.001")

NEW_ITEM_NAME = "New Item"

EDITABLE_FIELDS = frozenset(
    {
        "name",
        "category",
        "amount",
        "date",
        "merchant",
        "vat_code",
        "quantity",
        "unit",
        "description",
        "nui",
        "fiscal_number",
        "vat_number",
    }
)

# Copied from the first item of a page group into items added to it.
_SEEDED_FIELDS = ("merchant", "vat_code", "date", "nui", "fiscal_number", "vat_number")


def _new_temp_id() -> str:
    return uuid.uuid4().hex


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def quantize_quantity(value: Decimal) -> Decimal:
    return value.quantize(_QUANTITY_STEP, rounding=ROUND_HALF_UP)


@dataclass
class ReconciledItem:
    receipt_id: uuid.UUID
    page_number: int
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
    temp_id: str = dataclasses.field(default_factory=_new_temp_id)

    def __post_init__(self) -> None:
        # Same precision as the ledger columns.
        self.amount = quantize_amount(Decimal(self.amount))
        self.quantity = quantize_quantity(Decimal(self.quantity))

    @property
    def vat_percentage(self) -> int:
        return vat_percentage_for(self.vat_code)

    @classmethod
    def from_raw(cls, raw: RawExtractedItem, *, receipt_id: uuid.UUID) -> ReconciledItem:
        return cls(
            receipt_id=receipt_id,
            page_number=raw.page_number,
            name=raw.name,
            category=raw.category,
            amount=raw.amount,
            date=raw.date,
            merchant=raw.merchant,
            vat_code=raw.vat_code,
            quantity=raw.quantity,
            unit=raw.unit,
            description=raw.description,
            nui=raw.nui,
            fiscal_number=raw.fiscal_number,
            vat_number=raw.vat_number,
        )

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["receipt_id"] = str(self.receipt_id)
        data["amount"] = str(self.amount)
        data["quantity"] = str(self.quantity)
        data["date"] = self.date.isoformat()
        data["vat_percentage"] = self.vat_percentage
        return data


class PageGroupKey(NamedTuple):
    receipt_id: uuid.UUID
    page_number: int


@dataclass(frozen=True)
class PageGroup:
    receipt_id: uuid.UUID
    page_number: int
    item_ids: tuple[str, ...]

    @property
    def key(self) -> PageGroupKey:
        return PageGroupKey(self.receipt_id, self.page_number)

    def __len__(self) -> int:
        return len(self.item_ids)


def validate_items(items: Iterable[ReconciledItem]) -> list[Violation]:
    violations: list[Violation] = []
    for item in items:
        if not (item.name or "").strip():
            violations.append(Violation(item.temp_id, "name", "Name is required"))
        if not is_valid_category(item.category):
            violations.append(
                Violation(item.temp_id, "category", f"Unknown category: {item.category!r}")
            )
        if item.amount is None or quantize_amount(item.amount) <= 0:
            violations.append(Violation(item.temp_id, "amount", "Amount must be greater than 0"))
        if item.quantity is None or quantize_quantity(item.quantity) <= 0:
            violations.append(
                Violation(item.temp_id, "quantity", "Quantity must be greater than 0")
            )
        if not (item.unit or "").strip():
            violations.append(Violation(item.temp_id, "unit", "Unit is required"))
        if not is_valid_vat_code(item.vat_code):
            violations.append(
                Violation(item.temp_id, "vat_code", f"Unknown VAT code: {item.vat_code!r}")
            )
    return violations


class ReconciliationSession:
    def __init__(self) -> None:
        self._items: dict[str, ReconciledItem] = {}
        self._groups: dict[PageGroupKey, list[str]] = {}
        self._receipt_order: list[uuid.UUID] = []

    # Construction

    def ensure_group(self, receipt_id: uuid.UUID, page_number: int) -> PageGroupKey:
        if receipt_id not in self._receipt_order:
            self._receipt_order.append(receipt_id)
        key = PageGroupKey(receipt_id, int(page_number))
        self._groups.setdefault(key, [])
        return key

    def _insert(self, item: ReconciledItem) -> ReconciledItem:
        key = self.ensure_group(item.receipt_id, item.page_number)
        self._items[item.temp_id] = item
        self._groups[key].append(item.temp_id)
        return item

    # Navigation

    def _ordered_keys(self) -> list[PageGroupKey]:
        rank = {rid: idx for idx, rid in enumerate(self._receipt_order)}
        return sorted(self._groups, key=lambda k: (rank[k.receipt_id], k.page_number))

    def groups(self) -> list[PageGroup]:
        return [self._group(key) for key in self._ordered_keys()]

    def group(self, key: PageGroupKey) -> PageGroup:
        if key not in self._groups:
            raise KeyError(f"Unknown page group: {key}")
        return self._group(key)

    def _group(self, key: PageGroupKey) -> PageGroup:
        return PageGroup(
            receipt_id=key.receipt_id,
            page_number=key.page_number,
            item_ids=tuple(self._groups[key]),
        )

    def next_group(self, key: PageGroupKey) -> PageGroup | None:
        keys = self._ordered_keys()
        idx = keys.index(key)
        return self._group(keys[idx + 1]) if idx + 1 < len(keys) else None

    def previous_group(self, key: PageGroupKey) -> PageGroup | None:
        keys = self._ordered_keys()
        idx = keys.index(key)
        return self._group(keys[idx - 1]) if idx > 0 else None

    def group_items(self, key: PageGroupKey) -> list[ReconciledItem]:
        return [self._items[item_id] for item_id in self.group(key).item_ids]

    def get_item(self, item_id: str) -> ReconciledItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise KeyError(f"Unknown item: {item_id}") from None

    def items(self) -> list[ReconciledItem]:
        return [self._items[i] for key in self._ordered_keys() for i in self._groups[key]]

    def __len__(self) -> int:
        return len(self._items)

    # Editing

    def add_item(
        self, key: PageGroupKey, template: dict[str, Any] | None = None
    ) -> ReconciledItem:
        group_ids = self._groups.get(key)
        if group_ids is None:
            raise KeyError(f"Unknown page group: {key}")

        values: dict[str, Any] = {
            "name": NEW_ITEM_NAME,
            "category": DEFAULT_CATEGORY,
            "amount": Decimal("0.00"),
            "date": date.today(),
            "quantity": Decimal("1"),
            "unit": DEFAULT_UNIT,
        }
        if group_ids:
            first = self._items[group_ids[0]]
            for name in _SEEDED_FIELDS:
                values[name] = getattr(first, name)

        item = ReconciledItem(receipt_id=key.receipt_id, page_number=key.page_number, **values)
        for name, value in (template or {}).items():
            _assign(item, name, value)
        self._items[item.temp_id] = item
        group_ids.append(item.temp_id)
        return item

    def update_item(self, item_id: str, field: str, value: Any) -> ReconciledItem:
        item = self.get_item(item_id)
        _assign(item, field, value)
        return item

    def split_item(self, item_id: str) -> tuple[ReconciledItem, ReconciledItem]:
        original = self.get_item(item_id)
        key = PageGroupKey(original.receipt_id, original.page_number)
        first_amount = quantize_amount(original.amount / 2)
        second_amount = original.amount - first_amount

        first = dataclasses.replace(
            original, amount=first_amount, quantity=Decimal("1"), temp_id=_new_temp_id()
        )
        second = dataclasses.replace(
            original, amount=second_amount, quantity=Decimal("1"), temp_id=_new_temp_id()
        )

        ids = self._groups[key]
        idx = ids.index(item_id)
        ids[idx : idx + 1] = [first.temp_id, second.temp_id]
        del self._items[item_id]
        self._items[first.temp_id] = first
        self._items[second.temp_id] = second
        return first, second

    def delete_item(self, item_id: str) -> None:
        item = self.get_item(item_id)
        self._groups[PageGroupKey(item.receipt_id, item.page_number)].remove(item_id)
        del self._items[item_id]

    # Validation

    def validate(self) -> list[Violation]:
        return validate_items(self.items())

    def ensure_valid(self) -> None:
        violations = self.validate()
        if violations:
            raise ValidationError(violations)


def group_by_page(
    extractions: Sequence[tuple[uuid.UUID, Sequence[RawExtractedItem]]],
    page_counts: dict[uuid.UUID, int] | None = None,
) -> ReconciliationSession:
    """
    Build a review session from per-receipt extraction results.

    `extractions` is in receipt arrival order. With `page_counts`, pages that
    produced no items still get an (empty) group; a receipt with no items and
    no known page count gets a single empty page-1 group.
    """
    session = ReconciliationSession()
    for receipt_id, raw_items in extractions:
        page_count = (page_counts or {}).get(receipt_id) or 0
        for page_number in range(1, page_count + 1):
            session.ensure_group(receipt_id, page_number)
        for raw in sorted(raw_items, key=lambda r: r.page_number):
            session._insert(ReconciledItem.from_raw(raw, receipt_id=receipt_id))
        if not raw_items and page_count == 0:
            session.ensure_group(receipt_id, 1)
    return session


def from_receipts(receipts: Sequence[Receipt]) -> ReconciliationSession:
    extractions = [
        (
            receipt.id,
            [RawExtractedItem.model_validate(data) for data in receipt.extracted_items or []],
        )
        for receipt in receipts
    ]
    page_counts = {r.id: r.page_count for r in receipts if r.page_count}
    return group_by_page(extractions, page_counts)


def _assign(item: ReconciledItem, name: str, value: Any) -> None:
    if name not in EDITABLE_FIELDS:
        raise ValueError(f"Field is not editable: {name}")
    if name == "amount":
        value = quantize_amount(_to_decimal(value, name))
    elif name == "quantity":
        value = quantize_quantity(_to_decimal(value, name))
    elif name == "date":
        value = _to_date(value)
    elif name in {"name", "category", "unit", "vat_code"}:
        value = "" if value is None else str(value)
    elif value is not None:
        value = str(value).strip() or None
    setattr(item, name, value)


def _to_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    try:
        parsed = Decimal(str(value).strip().replace(",", "."))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{name} must be a number") from None
    if not parsed.is_finite():
        raise ValueError(f"{name} must be a number")
    return parsed


def _to_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValueError("date must be YYYY-MM-DD") from None
