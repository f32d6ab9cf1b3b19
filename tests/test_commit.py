from __future__ import annotations

import copy
import threading
import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from fatural.core.db import SessionLocal
from fatural.core.errors import PersistenceError, ValidationError
from fatural.modules.expenses.models import Expense, ExpenseBatch
from fatural.modules.expenses.service import commit_expenses, create_batch
from fatural.modules.processing.events import get_status_channel
from fatural.modules.processing.orchestrator import mark_completed, request_processing
from fatural.modules.receipts.models import Receipt, ReceiptStatus
from fatural.modules.reconciliation.engine import ReconciledItem


def _completed_receipt(make_receipt, user_id: uuid.UUID) -> uuid.UUID:
    receipt = make_receipt(user_id=user_id)
    with SessionLocal() as session:
        started = request_processing(session, receipt_id=receipt.id)
        mark_completed(session, receipt_id=receipt.id, attempt=started.attempt, page_count=1, items=[])
    return receipt.id


def _item(receipt_id: uuid.UUID, amount: str, **overrides) -> ReconciledItem:
    values = {
        "receipt_id": receipt_id,
        "page_number": 1,
        "name": "Leter A4",
        "category": "665-02 Material harxhues",
        "amount": Decimal(amount),
        "date": date(2026, 2, 10),
        "merchant": "Libraria Dukagjini",
        "vat_code": "[43] Blerjet vendore 18%",
        "quantity": Decimal("2"),
        "unit": "pako",
    }
    values.update(overrides)
    return ReconciledItem(**values)


def _batch(user_id: uuid.UUID) -> uuid.UUID:
    with SessionLocal() as session:
        return create_batch(session, user_id=user_id, name="Shkurt 2026").id


def _state(batch_id: uuid.UUID) -> tuple[Decimal, int]:
    with SessionLocal() as session:
        total = session.get(ExpenseBatch, batch_id).total_amount
        count = session.scalar(select(func.count()).select_from(Expense))
        return total, count


def test_commit_writes_rows_and_increments_total(make_receipt):
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)
    receipt_id = _completed_receipt(make_receipt, user_id)
    items = [_item(receipt_id, "10.10"), _item(receipt_id, "5.25"), _item(receipt_id, "0.65")]

    with SessionLocal() as session:
        result = commit_expenses(session, batch_id=batch_id, items=items)

    assert result.committed == 3
    assert result.delta == Decimal("16.00")
    assert result.batch_total == Decimal("16.00")
    assert len(result.expense_ids) == 3
    assert _state(batch_id) == (Decimal("16.00"), 3)

    with SessionLocal() as session:
        rows = session.scalars(select(Expense).where(Expense.batch_id == batch_id)).all()
        assert {r.vat_percentage for r in rows} == {18}
        assert {r.user_id for r in rows} == {user_id}
        assert {r.receipt_id for r in rows} == {receipt_id}


def test_commit_moves_receipts_to_committed(make_receipt):
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)
    receipt_id = _completed_receipt(make_receipt, user_id)
    channel = get_status_channel()
    sub = channel.subscribe(receipt_id=receipt_id)

    with SessionLocal() as session:
        commit_expenses(session, batch_id=batch_id, items=[_item(receipt_id, "3.00")])
    channel.join()

    with SessionLocal() as session:
        receipt = session.get(Receipt, receipt_id)
        assert receipt.status == ReceiptStatus.COMMITTED
        assert receipt.batch_id == batch_id
    assert [e.status for e in sub.drain()] == [ReceiptStatus.COMMITTED]


def test_second_commit_adds_to_existing_total(make_receipt):
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)
    first = _completed_receipt(make_receipt, user_id)
    second = _completed_receipt(make_receipt, user_id)

    with SessionLocal() as session:
        commit_expenses(session, batch_id=batch_id, items=[_item(first, "12.40")])
    with SessionLocal() as session:
        result = commit_expenses(
            session, batch_id=batch_id, items=[_item(second, "7.60"), _item(second, "1.01")]
        )

    assert result.batch_total == Decimal("21.01")
    assert _state(batch_id) == (Decimal("21.01"), 3)


def test_invalid_items_are_rejected_before_anything_is_written(make_receipt):
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)
    receipt_id = _completed_receipt(make_receipt, user_id)
    good = _item(receipt_id, "4.00")
    bad = _item(receipt_id, "0.00", name="")

    with SessionLocal() as session:
        with pytest.raises(ValidationError) as exc_info:
            commit_expenses(session, batch_id=batch_id, items=[good, bad])

    assert {(v.item_id, v.field) for v in exc_info.value.violations} == {
        (bad.temp_id, "name"),
        (bad.temp_id, "amount"),
    }
    assert _state(batch_id) == (Decimal("0.00"), 0)
    with SessionLocal() as session:
        assert session.get(Receipt, receipt_id).status == ReceiptStatus.COMPLETED


def test_missing_batch_is_a_persistence_error(make_receipt):
    receipt_id = _completed_receipt(make_receipt, uuid.uuid4())

    with SessionLocal() as session:
        with pytest.raises(PersistenceError):
            commit_expenses(session, batch_id=uuid.uuid4(), items=[_item(receipt_id, "1.00")])

    with SessionLocal() as session:
        assert session.scalar(select(func.count()).select_from(Expense)) == 0
        assert session.get(Receipt, receipt_id).status == ReceiptStatus.COMPLETED


def test_unknown_receipt_rolls_back_the_whole_commit(make_receipt):
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)
    receipt_id = _completed_receipt(make_receipt, user_id)
    items = [_item(receipt_id, "2.00"), _item(uuid.uuid4(), "3.00")]

    with SessionLocal() as session:
        with pytest.raises(PersistenceError, match="Unknown receipt"):
            commit_expenses(session, batch_id=batch_id, items=items)

    assert _state(batch_id) == (Decimal("0.00"), 0)
    with SessionLocal() as session:
        assert session.get(Receipt, receipt_id).status == ReceiptStatus.COMPLETED


def test_commit_does_not_modify_callers_items(make_receipt):
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)
    receipt_id = _completed_receipt(make_receipt, user_id)
    items = [_item(receipt_id, "9.99", name="  Toner  ", unit=" cope ")]
    before = copy.deepcopy(items)

    with SessionLocal() as session:
        commit_expenses(session, batch_id=batch_id, items=items)

    assert items == before
    with SessionLocal() as session:
        row = session.scalars(select(Expense)).one()
        assert (row.name, row.unit) == ("Toner", "cope")


def test_empty_commit_leaves_total_unchanged():
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)

    with SessionLocal() as session:
        result = commit_expenses(session, batch_id=batch_id, items=[])

    assert result.committed == 0
    assert _state(batch_id) == (Decimal("0.00"), 0)


def test_sub_cent_amounts_are_rounded_before_summing(make_receipt):
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)
    receipt_id = _completed_receipt(make_receipt, user_id)
    items = [_item(receipt_id, "0.005"), _item(receipt_id, "0.005"), _item(receipt_id, "1.004")]

    with SessionLocal() as session:
        result = commit_expenses(session, batch_id=batch_id, items=items)

    assert result.delta == Decimal("1.02")
    with SessionLocal() as session:
        amounts = session.scalars(select(Expense.amount)).all()
    assert sorted(amounts) == [Decimal("0.01"), Decimal("0.01"), Decimal("1.00")]
    assert _state(batch_id) == (sum(amounts, Decimal("0.00")), 3)


@pytest.mark.parametrize(("field", "value"), [("amount", "0.004"), ("quantity", "0.0004")])
def test_values_that_round_to_zero_are_rejected(make_receipt, field, value):
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)
    receipt_id = _completed_receipt(make_receipt, user_id)
    item = _item(receipt_id, "2.00")
    setattr(item, field, Decimal(value))

    with SessionLocal() as session:
        with pytest.raises(ValidationError) as exc_info:
            commit_expenses(session, batch_id=batch_id, items=[item])

    assert [(v.item_id, v.field) for v in exc_info.value.violations] == [(item.temp_id, field)]
    assert _state(batch_id) == (Decimal("0.00"), 0)


def test_concurrent_commits_to_one_batch_lose_no_increment(make_receipt):
    user_id = uuid.uuid4()
    batch_id = _batch(user_id)
    receipt_id = _completed_receipt(make_receipt, user_id)
    n = 6
    amounts = [Decimal(f"{i}.{i}{i}") for i in range(1, n + 1)]
    barrier = threading.Barrier(n)
    errors: list[Exception] = []
    lock = threading.Lock()

    def _worker(amount: Decimal) -> None:
        barrier.wait()
        try:
            with SessionLocal() as session:
                commit_expenses(session, batch_id=batch_id, items=[_item(receipt_id, str(amount))])
        except Exception as e:  # noqa: BLE001
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=_worker, args=(a,)) for a in amounts]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert _state(batch_id) == (sum(amounts, Decimal("0.00")), n)
