from __future__ import annotations

import uuid
from typing import Literal

from pydantic import BaseModel


class ProcessingOut(BaseModel):
    receipt_id: uuid.UUID
    outcome: Literal["accepted", "already-in-progress"]
    attempt: int | None
