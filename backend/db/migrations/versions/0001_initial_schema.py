"""Initial schema for withdrawal settlement and payout history."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    """
    CREATE TYPE withdrawal_status_enum AS ENUM (
        'REQUESTED', 'PLANNED', 'EXECUTING', 'FINALIZING', 'FINALIZED', 'FAILED'
    );
    """,
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE withdrawal_state (
        withdrawal_id UUID NOT NULL,
        investor_id TEXT NOT NULL,
        fund_id TEXT NOT NULL,
        fraction_bps INTEGER NOT NULL,
        status withdrawal_status_enum NOT NULL,
        shares_to_burn BIGINT NOT NULL DEFAULT 0,
        plan JSONB,
        finalize_tx_ref TEXT,
        failure_reason TEXT,
        swap_tx_refs JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_withdrawal_state PRIMARY KEY (withdrawal_id),
        CONSTRAINT ck_withdrawal_state_investor_not_blank CHECK (length(btrim(investor_id)) > 0),
        CONSTRAINT ck_withdrawal_state_fund_not_blank CHECK (length(btrim(fund_id)) > 0),
        CONSTRAINT ck_withdrawal_state_fraction_range CHECK (fraction_bps BETWEEN 1 AND 10000),
        CONSTRAINT ck_withdrawal_state_shares_nonneg CHECK (shares_to_burn >= 0),
        CONSTRAINT ck_withdrawal_state_finalized_has_tx CHECK (status <> 'FINALIZED' OR finalize_tx_ref IS NOT NULL),
        CONSTRAINT ck_withdrawal_state_updated_after_created CHECK (updated_at >= created_at)
    );
    """,
    """
    CREATE TABLE withdrawal_history (
        investor_id TEXT NOT NULL,
        fund_id TEXT NOT NULL,
        tx_ref TEXT NOT NULL,
        amount NUMERIC(38,0) NOT NULL,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        recorded_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_withdrawal_history PRIMARY KEY (investor_id, tx_ref),
        CONSTRAINT ck_withdrawal_history_tx_not_blank CHECK (length(btrim(tx_ref)) > 0),
        CONSTRAINT ck_withdrawal_history_amount_nonneg CHECK (amount >= 0)
    );
    """,
    """
    CREATE TABLE payment_record (
        fund_id TEXT NOT NULL,
        tx_ref TEXT NOT NULL,
        total_value NUMERIC(38,0) NOT NULL,
        recipient_count INTEGER NOT NULL,
        recipients JSONB NOT NULL,
        recorded_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_payment_record PRIMARY KEY (fund_id, tx_ref),
        CONSTRAINT ck_payment_record_tx_not_blank CHECK (length(btrim(tx_ref)) > 0),
        CONSTRAINT ck_payment_record_total_nonneg CHECK (total_value >= 0),
        CONSTRAINT ck_payment_record_recipient_count_pos CHECK (recipient_count > 0)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    """
    CREATE UNIQUE INDEX uq_withdrawal_state_active
    ON withdrawal_state (investor_id, fund_id)
    WHERE status IN ('REQUESTED', 'PLANNED', 'EXECUTING', 'FINALIZING');
    """,
    "CREATE INDEX idx_withdrawal_state_pair_created ON withdrawal_state (investor_id, fund_id, created_at DESC);",
    "CREATE INDEX idx_withdrawal_state_status_updated ON withdrawal_state (status, updated_at);",
    "CREATE INDEX idx_withdrawal_history_investor_recorded ON withdrawal_history (investor_id, recorded_at);",
    "CREATE INDEX idx_payment_record_fund_recorded ON payment_record (fund_id, recorded_at);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_withdrawal_history_append_only
    BEFORE UPDATE OR DELETE ON withdrawal_history
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_payment_record_append_only
    BEFORE UPDATE OR DELETE ON payment_record
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE OR REPLACE FUNCTION fn_withdrawal_state_terminal_guard()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        IF OLD.status IN ('FINALIZED', 'FAILED') THEN
            RAISE EXCEPTION 'withdrawal % is terminal (%), operation % is not allowed', OLD.withdrawal_id, OLD.status, TG_OP;
        END IF;
        IF TG_OP = 'DELETE' THEN
            RAISE EXCEPTION 'withdrawal % cannot be deleted', OLD.withdrawal_id;
        END IF;
        RETURN NEW;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_withdrawal_state_terminal_guard
    BEFORE UPDATE OR DELETE ON withdrawal_state
    FOR EACH ROW EXECUTE FUNCTION fn_withdrawal_state_terminal_guard();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_withdrawal_state_terminal_guard ON withdrawal_state;",
            "DROP TRIGGER IF EXISTS trg_payment_record_append_only ON payment_record;",
            "DROP TRIGGER IF EXISTS trg_withdrawal_history_append_only ON withdrawal_history;",
            "DROP FUNCTION IF EXISTS fn_withdrawal_state_terminal_guard();",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS payment_record;",
            "DROP TABLE IF EXISTS withdrawal_history;",
            "DROP TABLE IF EXISTS withdrawal_state;",
            "DROP TYPE IF EXISTS withdrawal_status_enum;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
