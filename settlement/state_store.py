"""Withdrawal state persistence with single-active-request and compare-and-set semantics."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import json
import logging
import threading
from typing import Any, Mapping, Optional, Protocol, Sequence
import uuid

from backend.db.enums import WithdrawalStatus
from settlement.psycopg_db import SettlementDatabase
from settlement.withdrawal_state import ACTIVE_STATUSES, WithdrawalState


logger = logging.getLogger(__name__)


class WithdrawalStateStore(Protocol):
    """Persistence contract for ``WithdrawalState`` rows."""

    def create(self, state: WithdrawalState) -> bool:
        """Insert ``state``; False when an active state already exists for the pair."""

    def get(self, withdrawal_id: uuid.UUID) -> Optional[WithdrawalState]:
        """Return a state by id."""

    def get_active(self, investor_id: str, fund_id: str) -> Optional[WithdrawalState]:
        """Return the non-terminal state for the pair, if any."""

    def latest(self, investor_id: str, fund_id: str) -> Optional[WithdrawalState]:
        """Return the most recently created state for the pair, any status."""

    def compare_and_set(self, expected_status: WithdrawalStatus, state: WithdrawalState) -> bool:
        """Replace the row only if it still has ``expected_status``."""

    def list_stale(self, cutoff: datetime) -> Sequence[WithdrawalState]:
        """Return active states last updated before ``cutoff``."""


_ACTIVE_SQL = "('REQUESTED', 'PLANNED', 'EXECUTING', 'FINALIZING')"

_COLUMNS = """
    withdrawal_id,
    investor_id,
    fund_id,
    fraction_bps,
    status,
    shares_to_burn,
    plan,
    finalize_tx_ref,
    failure_reason,
    swap_tx_refs,
    created_at,
    updated_at
"""


def _state_params(state: WithdrawalState) -> dict[str, Any]:
    return {
        "withdrawal_id": state.withdrawal_id,
        "investor_id": state.investor_id,
        "fund_id": state.fund_id,
        "fraction_bps": state.fraction_bps,
        "status": state.status.value,
        "shares_to_burn": state.shares_to_burn,
        "plan": json.dumps(dict(state.plan), sort_keys=True) if state.plan is not None else None,
        "finalize_tx_ref": state.finalize_tx_ref,
        "failure_reason": state.failure_reason,
        "swap_tx_refs": json.dumps(list(state.swap_tx_refs)),
        "created_at": state.created_at,
        "updated_at": state.updated_at,
    }


def _load_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _row_to_state(row: Mapping[str, Any]) -> WithdrawalState:
    withdrawal_id = row["withdrawal_id"]
    if not isinstance(withdrawal_id, uuid.UUID):
        withdrawal_id = uuid.UUID(str(withdrawal_id))
    plan = _load_json(row.get("plan"))
    swap_tx_refs = _load_json(row.get("swap_tx_refs")) or []
    return WithdrawalState(
        withdrawal_id=withdrawal_id,
        investor_id=str(row["investor_id"]),
        fund_id=str(row["fund_id"]),
        fraction_bps=int(row["fraction_bps"]),
        status=WithdrawalStatus(str(row["status"])),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        shares_to_burn=int(row.get("shares_to_burn") or 0),
        plan=plan,
        finalize_tx_ref=row.get("finalize_tx_ref"),
        failure_reason=row.get("failure_reason"),
        swap_tx_refs=tuple(str(ref) for ref in swap_tx_refs),
    )


class SqlWithdrawalStateStore:
    """PostgreSQL-backed store; the partial unique index enforces one active row per pair."""

    def __init__(self, db: SettlementDatabase) -> None:
        self._db = db

    def create(self, state: WithdrawalState) -> bool:
        row = self._db.fetch_one(
            f"""
            INSERT INTO withdrawal_state ({_COLUMNS})
            VALUES (
                :withdrawal_id,
                :investor_id,
                :fund_id,
                :fraction_bps,
                CAST(:status AS withdrawal_status_enum),
                :shares_to_burn,
                CAST(:plan AS JSONB),
                :finalize_tx_ref,
                :failure_reason,
                CAST(:swap_tx_refs AS JSONB),
                :created_at,
                :updated_at
            )
            ON CONFLICT (investor_id, fund_id) WHERE status IN {_ACTIVE_SQL}
            DO NOTHING
            RETURNING withdrawal_id
            """,
            _state_params(state),
        )
        return row is not None

    def get(self, withdrawal_id: uuid.UUID) -> Optional[WithdrawalState]:
        row = self._db.fetch_one(
            f"SELECT {_COLUMNS} FROM withdrawal_state WHERE withdrawal_id = :withdrawal_id",
            {"withdrawal_id": withdrawal_id},
        )
        return None if row is None else _row_to_state(row)

    def get_active(self, investor_id: str, fund_id: str) -> Optional[WithdrawalState]:
        row = self._db.fetch_one(
            f"""
            SELECT {_COLUMNS}
            FROM withdrawal_state
            WHERE investor_id = :investor_id
              AND fund_id = :fund_id
              AND status IN {_ACTIVE_SQL}
            """,
            {"investor_id": investor_id, "fund_id": fund_id},
        )
        return None if row is None else _row_to_state(row)

    def latest(self, investor_id: str, fund_id: str) -> Optional[WithdrawalState]:
        row = self._db.fetch_one(
            f"""
            SELECT {_COLUMNS}
            FROM withdrawal_state
            WHERE investor_id = :investor_id
              AND fund_id = :fund_id
            ORDER BY created_at DESC
            LIMIT 1
            """,
            {"investor_id": investor_id, "fund_id": fund_id},
        )
        return None if row is None else _row_to_state(row)

    def compare_and_set(self, expected_status: WithdrawalStatus, state: WithdrawalState) -> bool:
        params = _state_params(state)
        params["expected_status"] = expected_status.value
        row = self._db.fetch_one(
            """
            UPDATE withdrawal_state
            SET status = CAST(:status AS withdrawal_status_enum),
                shares_to_burn = :shares_to_burn,
                plan = CAST(:plan AS JSONB),
                finalize_tx_ref = :finalize_tx_ref,
                failure_reason = :failure_reason,
                swap_tx_refs = CAST(:swap_tx_refs AS JSONB),
                updated_at = :updated_at
            WHERE withdrawal_id = :withdrawal_id
              AND status = CAST(:expected_status AS withdrawal_status_enum)
            RETURNING withdrawal_id
            """,
            params,
        )
        return row is not None

    def list_stale(self, cutoff: datetime) -> Sequence[WithdrawalState]:
        rows = self._db.fetch_all(
            f"""
            SELECT {_COLUMNS}
            FROM withdrawal_state
            WHERE status IN {_ACTIVE_SQL}
              AND updated_at < :cutoff
            ORDER BY updated_at ASC
            """,
            {"cutoff": cutoff},
        )
        return [_row_to_state(row) for row in rows]


class InMemoryWithdrawalStateStore:
    """Process-local store with the same uniqueness and compare-and-set rules."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[uuid.UUID, WithdrawalState] = {}

    def create(self, state: WithdrawalState) -> bool:
        with self._lock:
            for existing in self._rows.values():
                if (
                    existing.investor_id == state.investor_id
                    and existing.fund_id == state.fund_id
                    and existing.status in ACTIVE_STATUSES
                ):
                    return False
            self._rows[state.withdrawal_id] = state
            return True

    def get(self, withdrawal_id: uuid.UUID) -> Optional[WithdrawalState]:
        with self._lock:
            return self._rows.get(withdrawal_id)

    def get_active(self, investor_id: str, fund_id: str) -> Optional[WithdrawalState]:
        with self._lock:
            for state in self._rows.values():
                if state.investor_id == investor_id and state.fund_id == fund_id and state.status in ACTIVE_STATUSES:
                    return state
        return None

    def latest(self, investor_id: str, fund_id: str) -> Optional[WithdrawalState]:
        with self._lock:
            matches = [
                state
                for state in self._rows.values()
                if state.investor_id == investor_id and state.fund_id == fund_id
            ]
        if not matches:
            return None
        return max(matches, key=lambda item: item.created_at)

    def compare_and_set(self, expected_status: WithdrawalStatus, state: WithdrawalState) -> bool:
        with self._lock:
            current = self._rows.get(state.withdrawal_id)
            if current is None or current.status != expected_status:
                return False
            self._rows[state.withdrawal_id] = replace(state, created_at=current.created_at)
            return True

    def list_stale(self, cutoff: datetime) -> Sequence[WithdrawalState]:
        with self._lock:
            stale = [
                state
                for state in self._rows.values()
                if state.status in ACTIVE_STATUSES and state.updated_at < cutoff
            ]
        return sorted(stale, key=lambda item: item.updated_at)
