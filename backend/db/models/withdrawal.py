"""Withdrawal state and withdrawal history model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    desc,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import withdrawal_status_enum

logger = logging.getLogger(__name__)


class WithdrawalStateRow(Base):
    """One investor withdrawal from one fund; at most one active row per pair."""

    __tablename__ = "withdrawal_state"
    __table_args__ = (
        PrimaryKeyConstraint("withdrawal_id", name="pk_withdrawal_state"),
        CheckConstraint(
            "length(btrim(investor_id)) > 0",
            name="ck_withdrawal_state_investor_not_blank",
        ),
        CheckConstraint(
            "length(btrim(fund_id)) > 0",
            name="ck_withdrawal_state_fund_not_blank",
        ),
        CheckConstraint(
            "fraction_bps BETWEEN 1 AND 10000",
            name="ck_withdrawal_state_fraction_range",
        ),
        CheckConstraint(
            "shares_to_burn >= 0",
            name="ck_withdrawal_state_shares_nonneg",
        ),
        CheckConstraint(
            "status <> 'FINALIZED' OR finalize_tx_ref IS NOT NULL",
            name="ck_withdrawal_state_finalized_has_tx",
        ),
        CheckConstraint(
            "updated_at >= created_at",
            name="ck_withdrawal_state_updated_after_created",
        ),
        Index(
            "uq_withdrawal_state_active",
            "investor_id",
            "fund_id",
            unique=True,
            postgresql_where=text("status IN ('REQUESTED', 'PLANNED', 'EXECUTING', 'FINALIZING')"),
        ),
        Index(
            "idx_withdrawal_state_pair_created",
            "investor_id",
            "fund_id",
            desc("created_at"),
        ),
        Index("idx_withdrawal_state_status_updated", "status", "updated_at"),
    )

    withdrawal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    investor_id: Mapped[str] = mapped_column(Text, nullable=False)
    fund_id: Mapped[str] = mapped_column(Text, nullable=False)
    fraction_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(withdrawal_status_enum, nullable=False)
    shares_to_burn: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default=text("0"),
    )
    plan: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    finalize_tx_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    swap_tx_refs: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'[]'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class WithdrawalHistoryRow(Base):
    """Append-only settled withdrawal, keyed by investor and finalize transaction."""

    __tablename__ = "withdrawal_history"
    __table_args__ = (
        PrimaryKeyConstraint("investor_id", "tx_ref", name="pk_withdrawal_history"),
        CheckConstraint(
            "length(btrim(tx_ref)) > 0",
            name="ck_withdrawal_history_tx_not_blank",
        ),
        CheckConstraint(
            "amount >= 0",
            name="ck_withdrawal_history_amount_nonneg",
        ),
        Index("idx_withdrawal_history_investor_recorded", "investor_id", "recorded_at"),
    )

    investor_id: Mapped[str] = mapped_column(Text, primary_key=True)
    fund_id: Mapped[str] = mapped_column(Text, nullable=False)
    tx_ref: Mapped[str] = mapped_column(Text, primary_key=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 0), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
