"""Fund payout history model definitions."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class PaymentRecordRow(Base):
    """Append-only confirmed payout batch with its recipient list."""

    __tablename__ = "payment_record"
    __table_args__ = (
        PrimaryKeyConstraint("fund_id", "tx_ref", name="pk_payment_record"),
        CheckConstraint(
            "length(btrim(tx_ref)) > 0",
            name="ck_payment_record_tx_not_blank",
        ),
        CheckConstraint(
            "total_value >= 0",
            name="ck_payment_record_total_nonneg",
        ),
        CheckConstraint(
            "recipient_count > 0",
            name="ck_payment_record_recipient_count_pos",
        ),
        Index("idx_payment_record_fund_recorded", "fund_id", "recorded_at"),
    )

    fund_id: Mapped[str] = mapped_column(Text, primary_key=True)
    tx_ref: Mapped[str] = mapped_column(Text, primary_key=True)
    total_value: Mapped[Decimal] = mapped_column(Numeric(38, 0), nullable=False)
    recipient_count: Mapped[int] = mapped_column(Integer, nullable=False)
    recipients: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
