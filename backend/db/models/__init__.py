"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.payment import PaymentRecordRow
from backend.db.models.withdrawal import WithdrawalHistoryRow, WithdrawalStateRow

logger = logging.getLogger(__name__)

__all__ = [
    "PaymentRecordRow",
    "WithdrawalHistoryRow",
    "WithdrawalStateRow",
]
