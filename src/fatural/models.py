"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

from fatural.modules.expenses.models import Expense, ExpenseBatch  # noqa: F401
from fatural.modules.receipts.models import Receipt  # noqa: F401
