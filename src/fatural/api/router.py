from __future__ import annotations

from fastapi import APIRouter

from fatural.modules.expenses.api import router as expenses_router
from fatural.modules.processing.api import router as processing_router
from fatural.modules.receipts.api import router as receipts_router

router = APIRouter()

router.include_router(receipts_router, prefix="/api")
router.include_router(processing_router, prefix="/api")
router.include_router(expenses_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
