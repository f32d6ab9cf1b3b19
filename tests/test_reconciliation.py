from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

import pytest

from fatural.core.errors import ValidationError
from fatural.modules.extraction.schemas import RawExtractedItem
from fatural.modules.reconciliation.engine import (
    PageGroupKey,
    ReconciledItem,
    group_by_page,
    validate_items,
)


def _raw(page: int = 1, **overrides) -> RawExtractedItem:
    data = {
        "name": "Karburant",
        "category": "669-01 Shpenzimet e karburantit",
        "amount": Decimal("40.00"),
        "date": date(2026, 3, 1),
        "merchant": "Petrol Kosova",
        "vat_code": "[43] Blerjet vendore 18%",
        "quantity": Decimal("1"),
        "unit": "litra",
        "page_number": page,
        "nui": "811111111",
        "fiscal_number": "FN-77",
        "vat_number": "330111111",
    }
    data.update(overrides)
    return RawExtractedItem(**data)


def test_groups_follow_receipt_arrival_then_page_order():
    first, second = uuid.uuid4(), uuid.uuid4()
    session = group_by_page(
        [
            (first, [_raw(2), _raw(1), _raw(1)]),
            (second, [_raw(1)]),
        ]
    )

    assert [(g.receipt_id, g.page_number, len(g)) for g in session.groups()] == [
        (first, 1, 2),
        (first, 2, 1),
        (second, 1, 1),
    ]


def test_pages_without_items_get_empty_groups_when_page_count_known():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(3)])], page_counts={rid: 3})

    assert [(g.page_number, len(g)) for g in session.groups()] == [(1, 0), (2, 0), (3, 1)]


def test_receipt_with_nothing_extracted_gets_one_empty_group():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [])])

    (group,) = session.groups()
    assert group.key == PageGroupKey(rid, 1)
    assert group.item_ids == ()


def test_navigation_moves_between_groups():
    a, b = uuid.uuid4(), uuid.uuid4()
    session = group_by_page([(a, [_raw(1), _raw(2)]), (b, [_raw(1)])])
    first, middle, last = session.groups()

    assert session.next_group(first.key) == middle
    assert session.next_group(middle.key) == last
    assert session.next_group(last.key) is None
    assert session.previous_group(last.key) == middle
    assert session.previous_group(first.key) is None


def test_add_item_seeds_shared_fields_from_first_item_in_group():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1)])])
    key = PageGroupKey(rid, 1)

    item = session.add_item(key)

    assert item.name == "New Item"
    assert item.category == "690-09 Te tjera"
    assert item.amount == Decimal("0.00")
    assert item.quantity == Decimal("1")
    assert item.unit == "cope"
    assert item.merchant == "Petrol Kosova"
    assert item.vat_code == "[43] Blerjet vendore 18%"
    assert item.vat_percentage == 18
    assert item.date == date(2026, 3, 1)
    assert (item.nui, item.fiscal_number, item.vat_number) == ("811111111", "FN-77", "330111111")
    assert session.group(key).item_ids[-1] == item.temp_id


def test_add_item_template_values_win():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1)])])

    item = session.add_item(PageGroupKey(rid, 1), {"name": "Vaj", "amount": "12.345"})

    assert item.name == "Vaj"
    assert item.amount == Decimal("12.35")
    assert item.merchant == "Petrol Kosova"


def test_add_item_to_empty_group_uses_defaults():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [])])

    item = session.add_item(PageGroupKey(rid, 1))

    assert item.merchant is None
    assert item.vat_code == "No VAT"
    assert item.vat_percentage == 0
    assert item.date == date.today()


def test_vat_code_change_recomputes_percentage():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1)])])
    (item_id,) = session.groups()[0].item_ids

    session.update_item(item_id, "vat_code", "[45] Blerjet vendore 8%")
    assert session.get_item(item_id).vat_percentage == 8

    session.update_item(item_id, "vat_code", "[31] Blerjet dhe importet pa TVSH")
    assert session.get_item(item_id).vat_percentage == 0


def test_vat_percentage_cannot_be_set_directly():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1)])])
    (item_id,) = session.groups()[0].item_ids

    with pytest.raises(ValueError):
        session.update_item(item_id, "vat_percentage", 8)


def test_update_rejects_non_numeric_amount():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1)])])
    (item_id,) = session.groups()[0].item_ids

    with pytest.raises(ValueError):
        session.update_item(item_id, "amount", "abc")
    assert session.get_item(item_id).amount == Decimal("40.00")


def test_split_halves_amount_and_resets_quantity():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1, amount=Decimal("10.00"), quantity=Decimal("3"))])])
    (item_id,) = session.groups()[0].item_ids

    first, second = session.split_item(item_id)

    assert (first.amount, first.quantity) == (Decimal("5.00"), Decimal("1"))
    assert (second.amount, second.quantity) == (Decimal("5.00"), Decimal("1"))
    assert session.groups()[0].item_ids == (first.temp_id, second.temp_id)
    with pytest.raises(KeyError):
        session.get_item(item_id)


@pytest.mark.parametrize("amount", ["0.01", "0.03", "10.01", "99.99", "1234.57"])
def test_split_halves_sum_to_the_original(amount):
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1, amount=Decimal(amount))])])
    (item_id,) = session.groups()[0].item_ids

    first, second = session.split_item(item_id)

    assert first.amount + second.amount == Decimal(amount)
    assert abs(first.amount - second.amount) <= Decimal("0.01")


def test_split_keeps_position_within_group():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1, name="A"), _raw(1, name="B"), _raw(1, name="C")])])
    a, b, c = session.groups()[0].item_ids

    first, second = session.split_item(b)

    assert session.groups()[0].item_ids == (a, first.temp_id, second.temp_id, c)
    assert [i.name for i in session.items()] == ["A", "B", "B", "C"]


def test_split_can_be_repeated():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1, amount=Decimal("8.00"))])])
    (item_id,) = session.groups()[0].item_ids

    first, _ = session.split_item(item_id)
    session.split_item(first.temp_id)

    assert [i.amount for i in session.items()] == [
        Decimal("2.00"),
        Decimal("2.00"),
        Decimal("4.00"),
    ]


def test_delete_can_leave_a_group_empty():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1)])])
    (item_id,) = session.groups()[0].item_ids

    session.delete_item(item_id)

    assert session.groups()[0].item_ids == ()
    assert len(session) == 0


def test_validate_accepts_a_fully_populated_item():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1)])])

    assert session.validate() == []
    session.ensure_valid()


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("amount", Decimal("0")),
        ("amount", Decimal("-1.00")),
        ("name", "   "),
        ("category", "Food"),
        ("unit", ""),
        ("quantity", Decimal("0")),
    ],
)
def test_validate_reports_field_violations(field, value):
    item = ReconciledItem.from_raw(_raw(1), receipt_id=uuid.uuid4())
    setattr(item, field, value)

    violations = validate_items([item])

    assert [(v.item_id, v.field) for v in violations] == [(item.temp_id, field)]


def test_ensure_valid_raises_with_all_violations_across_groups():
    rid = uuid.uuid4()
    session = group_by_page([(rid, [_raw(1), _raw(2)])])
    one, two = [g.item_ids[0] for g in session.groups()]
    session.update_item(one, "name", "")
    session.update_item(two, "amount", "0")

    with pytest.raises(ValidationError) as exc_info:
        session.ensure_valid()

    assert {(v.item_id, v.field) for v in exc_info.value.violations} == {
        (one, "name"),
        (two, "amount"),
    }


def test_from_receipts_reads_persisted_items(make_receipt):
    from fatural.core.db import SessionLocal
    from fatural.modules.reconciliation.engine import from_receipts
    from fatural.modules.receipts.models import Receipt

    receipt = make_receipt()
    with SessionLocal() as session:
        row = session.get(Receipt, receipt.id)
        row.page_count = 2
        row.extracted_items = [_raw(2).model_dump(mode="json")]
        session.commit()
        session.refresh(row)

        review = from_receipts([row])

    assert [(g.page_number, len(g)) for g in review.groups()] == [(1, 0), (2, 1)]
    (item,) = review.items()
    assert item.receipt_id == receipt.id
    assert item.amount == Decimal("40.00")
