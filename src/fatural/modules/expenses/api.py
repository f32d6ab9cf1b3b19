from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from fatural.core.db import db_session
from fatural.core.errors import PersistenceError, ValidationError
from fatural.modules.expenses.schemas import (
    BatchCreateIn,
    BatchOut,
    CommitOut,
    ExpenseIn,
    ExpenseOut,
)
from fatural.modules.expenses.service import (
    commit_expenses,
    create_batch,
    get_batch,
    list_expenses,
)

router = APIRouter(tags=["expenses"])


@router.post("/batches", response_model=BatchOut, status_code=status.HTTP_201_CREATED)
def create_batch_endpoint(
    payload: BatchCreateIn,
    session: Session = Depends(db_session),
) -> BatchOut:
    batch = create_batch(
        session, user_id=payload.user_id, name=payload.name, description=payload.description
    )
    return BatchOut.model_validate(batch, from_attributes=True)


@router.get("/batches/{batch_id}", response_model=BatchOut)
def get_batch_endpoint(
    batch_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> BatchOut:
    batch = get_batch(session, batch_id=batch_id)
    return BatchOut.model_validate(batch, from_attributes=True)


@router.get("/batches/{batch_id}/expenses", response_model=list[ExpenseOut])
def list_expenses_endpoint(
    batch_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> list[ExpenseOut]:
    batch = get_batch(session, batch_id=batch_id)
    rows = list_expenses(session, batch_id=batch.id)
    return [ExpenseOut.model_validate(r, from_attributes=True) for r in rows]


@router.post(
    "/batches/{batch_id}/expenses",
    response_model=CommitOut,
    status_code=status.HTTP_201_CREATED,
)
def commit_expenses_endpoint(
    batch_id: uuid.UUID,
    payload: list[ExpenseIn],
    session: Session = Depends(db_session),
) -> CommitOut:
    items = [p.to_item() for p in payload]
    try:
        result = commit_expenses(session, batch_id=batch_id, items=items)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "Validation failed", "violations": [v.to_dict() for v in e.violations]},
        ) from e
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return CommitOut(
        batch_id=result.batch_id,
        committed=result.committed,
        batch_total=result.batch_total,
        expense_ids=result.expense_ids,
    )
