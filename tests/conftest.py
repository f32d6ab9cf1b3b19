from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

# Set env before any fatural imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.fatural_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("STATUS_CHANNEL_BACKEND", "memory")
os.environ.setdefault("OPENAI_API_KEY", "test-key")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import fatural.models  # noqa: F401
    from fatural.core.db import engine
    from fatural.core.models import Base
    from fatural.modules.processing.events import reset_status_channel
    from fatural.modules.processing.orchestrator import get_job_registry

    # Reset storage cache and directory
    import fatural.core.storage as storage_mod

    storage_mod._storage = None

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    reset_status_channel()
    get_job_registry().clear()

    yield

    reset_status_channel()


@pytest.fixture
def pdf_bytes():
    """Build an in-memory PDF with the given number of pages."""
    import fitz

    def _make(pages: int = 1) -> bytes:
        doc = fitz.open()
        for idx in range(pages):
            page = doc.new_page(width=300, height=400)
            page.insert_text((40, 60), f"Fatura page {idx + 1}", fontsize=14)
            page.insert_text((40, 100), "Total 12.50 EUR", fontsize=12)
        data = doc.tobytes()
        doc.close()
        return data

    return _make


@pytest.fixture
def png_bytes():
    from io import BytesIO

    from PIL import Image

    def _make(size: tuple[int, int] = (64, 48), fmt: str = "PNG") -> bytes:
        buf = BytesIO()
        Image.new("RGB", size, color=(255, 255, 255)).save(buf, format=fmt)
        return buf.getvalue()

    return _make


@pytest.fixture
def oracle_item():
    def _make(**overrides) -> dict:
        item = {
            "name": "Kafe",
            "category": "665-04 Ushqim dhe pije",
            "amount": 2.5,
            "date": "2026-03-14",
            "merchant": "Bar Prishtina",
            "vat_code": "[43] Blerjet vendore 18%",
            "quantity": 1,
            "unit": "cope",
            "page_number": 1,
            "description": None,
            "nui": "810000000",
            "fiscal_number": "F-1001",
            "vat_number": "330000000",
        }
        item.update(overrides)
        return item

    return _make


@pytest.fixture
def make_receipt():
    """Store a document and create its receipt row, as the upload endpoint does."""
    import uuid

    from fatural.core.db import SessionLocal
    from fatural.modules.receipts.service import create_receipt

    def _make(
        body: bytes = b"%PDF-placeholder",
        *,
        filename: str = "fatura.pdf",
        content_type: str | None = "application/pdf",
        user_id: uuid.UUID | None = None,
        batch_id: uuid.UUID | None = None,
    ):
        with SessionLocal() as session:
            receipt = create_receipt(
                session,
                user_id=user_id or uuid.uuid4(),
                batch_id=batch_id,
                filename=filename,
                content_type=content_type,
                body=body,
            )
            session.expunge(receipt)
            return receipt

    return _make
