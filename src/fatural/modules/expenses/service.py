from __future__ import annotations

import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fatural.core.errors import PersistenceError, ValidationError
from fatural.core.logging import get_logger, log_event, log_exception, monotonic_ms
from fatural.core.models import utcnow
from fatural.modules.expenses.models import Expense, ExpenseBatch
from fatural.modules.processing.events import StatusEvent, publish_status
from fatural.modules.receipts.models import Receipt, ReceiptStatus
from fatural.modules.reconciliation.engine import (
    ReconciledItem,
    quantize_amount,
    quantize_quantity,
    validate_items,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommitResult:
    batch_id: uuid.UUID
    committed: int
    delta: Decimal
    batch_total: Decimal
    expense_ids: list[uuid.UUID]


def create_batch(
    session: Session, *, user_id: uuid.UUID, name: str, description: str | None = None
) -> ExpenseBatch:
    name = name.strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name is required")
    batch = ExpenseBatch(
        user_id=user_id,
        name=name,
        description=(description or "").strip() or None,
        total_amount=Decimal("0.00"),
    )
    session.add(batch)
    session.commit()
    session.refresh(batch)
    log_event(logger, "batch.created", batch_id=str(batch.id), user_id=str(user_id))
    return batch


def get_batch(session: Session, *, batch_id: uuid.UUID) -> ExpenseBatch:
    batch = session.get(ExpenseBatch, batch_id)
    if not batch:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return batch


def list_expenses(session: Session, *, batch_id: uuid.UUID) -> list[Expense]:
    return list(
        session.scalars(
            select(Expense)
            .where(Expense.batch_id == batch_id)
            .order_by(Expense.expense_date, Expense.created_at)
        )
    )


def commit_expenses(
    session: Session, *, batch_id: uuid.UUID, items: Sequence[ReconciledItem]
) -> CommitResult:
    """Write reviewed items to the ledger as one unit, or not at all."""
    violations = validate_items(items)
    if violations:
        log_event(
            logger,
            "commit.rejected",
            batch_id=str(batch_id),
            item_count=len(items),
            violation_count=len(violations),
        )
        raise ValidationError(violations)

    start = time.monotonic()
    receipt_ids = sorted({item.receipt_id for item in items}, key=str)
    delta = sum((quantize_amount(item.amount) for item in items), Decimal("0.00"))

    try:
        batch = session.get(ExpenseBatch, batch_id)
        if batch is None:
            raise PersistenceError(f"Batch not found: {batch_id}")

        if receipt_ids:
            found = set(session.scalars(select(Receipt.id).where(Receipt.id.in_(receipt_ids))))
            missing = [rid for rid in receipt_ids if rid not in found]
            if missing:
                raise PersistenceError(
                    "Unknown receipt(s): " + ", ".join(str(rid) for rid in missing)
                )

        rows = [_expense_row(item, batch=batch) for item in items]
        session.add_all(rows)
        session.flush()

        result = session.execute(
            update(ExpenseBatch)
            .where(ExpenseBatch.id == batch_id)
            .values(total_amount=ExpenseBatch.total_amount + delta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise PersistenceError(f"Batch not found: {batch_id}")

        committed_receipts: list[Receipt] = []
        if receipt_ids:
            committed_receipts = list(
                session.scalars(
                    select(Receipt).where(
                        Receipt.id.in_(receipt_ids),
                        Receipt.status == ReceiptStatus.COMPLETED,
                    )
                )
            )
            if committed_receipts:
                session.execute(
                    update(Receipt)
                    .where(
                        Receipt.id.in_([r.id for r in committed_receipts]),
                        Receipt.status == ReceiptStatus.COMPLETED,
                    )
                    .values(status=ReceiptStatus.COMMITTED, batch_id=batch_id, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        events = [
            StatusEvent(
                receipt_id=r.id,
                user_id=r.user_id,
                status=ReceiptStatus.COMMITTED,
                attempt=r.processing_attempts,
            )
            for r in committed_receipts
        ]
        expense_ids = [row.id for row in rows]
        session.commit()
    except PersistenceError as e:
        session.rollback()
        log_event(logger, "commit.error", batch_id=str(batch_id), error=str(e))
        raise
    except SQLAlchemyError as e:
        session.rollback()
        log_exception(logger, "commit.error", batch_id=str(batch_id), item_count=len(items))
        raise PersistenceError(f"Could not commit expenses: {e}") from e

    batch = session.get(ExpenseBatch, batch_id)
    session.refresh(batch)
    for event in events:
        publish_status(event)
    log_event(
        logger,
        "commit.success",
        batch_id=str(batch_id),
        item_count=len(rows),
        receipt_count=len(receipt_ids),
        delta=str(delta),
        batch_total=str(batch.total_amount),
        duration_ms=monotonic_ms(start),
    )
    return CommitResult(
        batch_id=batch_id,
        committed=len(rows),
        delta=delta,
        batch_total=batch.total_amount,
        expense_ids=expense_ids,
    )


def _expense_row(item: ReconciledItem, *, batch: ExpenseBatch) -> Expense:
    return Expense(
        id=uuid.uuid4(),
        batch_id=batch.id,
        receipt_id=item.receipt_id,
        user_id=batch.user_id,
        page_number=item.page_number,
        name=item.name.strip(),
        category=item.category,
        amount=quantize_amount(item.amount),
        expense_date=item.date,
        merchant=item.merchant,
        vat_code=item.vat_code,
        vat_percentage=item.vat_percentage,
        quantity=quantize_quantity(item.quantity),
        unit=item.unit.strip(),
        description=item.description,
        nui=item.nui,
        fiscal_number=item.fiscal_number,
        vat_number=item.vat_number,
    )
