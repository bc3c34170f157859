"""Append-only withdrawal and payment histories keyed by transaction reference."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
import threading
from typing import Any, Mapping, Optional, Protocol, Sequence

from settlement.common import utc_iso
from settlement.psycopg_db import SettlementDatabase


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WithdrawalHistoryEntry:
    """Settled withdrawal as recorded for an investor."""

    investor_id: str
    fund_id: str
    tx_ref: str
    amount: int
    recorded_at: datetime
    details: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "investor_id": self.investor_id,
            "fund_id": self.fund_id,
            "tx_ref": self.tx_ref,
            "amount": self.amount,
            "recorded_at": utc_iso(self.recorded_at),
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class PaymentRecipient:
    wallet: str
    amount: int
    role: str = "INVESTOR"


@dataclass(frozen=True)
class PaymentRecord:
    """One confirmed payout batch appended to a fund's history."""

    fund_id: str
    tx_ref: str
    total_value: int
    recipients: tuple[PaymentRecipient, ...]
    recorded_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "fund_id": self.fund_id,
            "tx_ref": self.tx_ref,
            "total_value": self.total_value,
            "recipients": [
                {"wallet": item.wallet, "amount": item.amount, "role": item.role}
                for item in self.recipients
            ],
            "recorded_at": utc_iso(self.recorded_at),
        }


class WithdrawalHistoryStore(Protocol):
    def get(self, investor_id: str, tx_ref: str) -> Optional[WithdrawalHistoryEntry]:
        """Return the entry recorded under ``tx_ref``."""

    def insert_if_absent(self, entry: WithdrawalHistoryEntry) -> bool:
        """Append ``entry``; False when ``tx_ref`` is already recorded for the investor."""

    def list_for_investor(self, investor_id: str) -> Sequence[WithdrawalHistoryEntry]:
        """Return entries oldest first."""


class PaymentHistoryStore(Protocol):
    def get(self, fund_id: str, tx_ref: str) -> Optional[PaymentRecord]:
        """Return the record stored under ``tx_ref``."""

    def insert_if_absent(self, record: PaymentRecord) -> bool:
        """Append ``record``; False when ``tx_ref`` is already recorded for the fund."""

    def list_for_fund(self, fund_id: str) -> Sequence[PaymentRecord]:
        """Return records oldest first."""


def _load_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _row_to_entry(row: Mapping[str, Any]) -> WithdrawalHistoryEntry:
    return WithdrawalHistoryEntry(
        investor_id=str(row["investor_id"]),
        fund_id=str(row["fund_id"]),
        tx_ref=str(row["tx_ref"]),
        amount=int(row["amount"]),
        recorded_at=row["recorded_at"],
        details=_load_json(row.get("details")) or {},
    )


def _row_to_record(row: Mapping[str, Any]) -> PaymentRecord:
    recipients = _load_json(row.get("recipients")) or []
    return PaymentRecord(
        fund_id=str(row["fund_id"]),
        tx_ref=str(row["tx_ref"]),
        total_value=int(row["total_value"]),
        recipients=tuple(
            PaymentRecipient(
                wallet=str(item["wallet"]),
                amount=int(item["amount"]),
                role=str(item.get("role", "INVESTOR")),
            )
            for item in recipients
        ),
        recorded_at=row["recorded_at"],
    )


class SqlWithdrawalHistoryStore:
    def __init__(self, db: SettlementDatabase) -> None:
        self._db = db

    def get(self, investor_id: str, tx_ref: str) -> Optional[WithdrawalHistoryEntry]:
        row = self._db.fetch_one(
            """
            SELECT investor_id, fund_id, tx_ref, amount, details, recorded_at
            FROM withdrawal_history
            WHERE investor_id = :investor_id AND tx_ref = :tx_ref
            """,
            {"investor_id": investor_id, "tx_ref": tx_ref},
        )
        return None if row is None else _row_to_entry(row)

    def insert_if_absent(self, entry: WithdrawalHistoryEntry) -> bool:
        row = self._db.fetch_one(
            """
            INSERT INTO withdrawal_history (investor_id, fund_id, tx_ref, amount, details, recorded_at)
            VALUES (:investor_id, :fund_id, :tx_ref, :amount, CAST(:details AS JSONB), :recorded_at)
            ON CONFLICT (investor_id, tx_ref) DO NOTHING
            RETURNING tx_ref
            """,
            {
                "investor_id": entry.investor_id,
                "fund_id": entry.fund_id,
                "tx_ref": entry.tx_ref,
                "amount": entry.amount,
                "details": json.dumps(dict(entry.details), sort_keys=True),
                "recorded_at": entry.recorded_at,
            },
        )
        return row is not None

    def list_for_investor(self, investor_id: str) -> Sequence[WithdrawalHistoryEntry]:
        rows = self._db.fetch_all(
            """
            SELECT investor_id, fund_id, tx_ref, amount, details, recorded_at
            FROM withdrawal_history
            WHERE investor_id = :investor_id
            ORDER BY recorded_at ASC, tx_ref ASC
            """,
            {"investor_id": investor_id},
        )
        return [_row_to_entry(row) for row in rows]


class SqlPaymentHistoryStore:
    def __init__(self, db: SettlementDatabase) -> None:
        self._db = db

    def get(self, fund_id: str, tx_ref: str) -> Optional[PaymentRecord]:
        row = self._db.fetch_one(
            """
            SELECT fund_id, tx_ref, total_value, recipients, recorded_at
            FROM payment_record
            WHERE fund_id = :fund_id AND tx_ref = :tx_ref
            """,
            {"fund_id": fund_id, "tx_ref": tx_ref},
        )
        return None if row is None else _row_to_record(row)

    def insert_if_absent(self, record: PaymentRecord) -> bool:
        row = self._db.fetch_one(
            """
            INSERT INTO payment_record (fund_id, tx_ref, total_value, recipient_count, recipients, recorded_at)
            VALUES (:fund_id, :tx_ref, :total_value, :recipient_count, CAST(:recipients AS JSONB), :recorded_at)
            ON CONFLICT (fund_id, tx_ref) DO NOTHING
            RETURNING tx_ref
            """,
            {
                "fund_id": record.fund_id,
                "tx_ref": record.tx_ref,
                "total_value": record.total_value,
                "recipient_count": len(record.recipients),
                "recipients": json.dumps(
                    [{"wallet": item.wallet, "amount": item.amount, "role": item.role} for item in record.recipients]
                ),
                "recorded_at": record.recorded_at,
            },
        )
        return row is not None

    def list_for_fund(self, fund_id: str) -> Sequence[PaymentRecord]:
        rows = self._db.fetch_all(
            """
            SELECT fund_id, tx_ref, total_value, recipients, recorded_at
            FROM payment_record
            WHERE fund_id = :fund_id
            ORDER BY recorded_at ASC, tx_ref ASC
            """,
            {"fund_id": fund_id},
        )
        return [_row_to_record(row) for row in rows]


class InMemoryWithdrawalHistoryStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], WithdrawalHistoryEntry] = {}

    def get(self, investor_id: str, tx_ref: str) -> Optional[WithdrawalHistoryEntry]:
        with self._lock:
            return self._entries.get((investor_id, tx_ref))

    def insert_if_absent(self, entry: WithdrawalHistoryEntry) -> bool:
        key = (entry.investor_id, entry.tx_ref)
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = entry
            return True

    def list_for_investor(self, investor_id: str) -> Sequence[WithdrawalHistoryEntry]:
        with self._lock:
            entries = [entry for (owner, _), entry in self._entries.items() if owner == investor_id]
        return sorted(entries, key=lambda item: (item.recorded_at, item.tx_ref))


class InMemoryPaymentHistoryStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], PaymentRecord] = {}

    def get(self, fund_id: str, tx_ref: str) -> Optional[PaymentRecord]:
        with self._lock:
            return self._records.get((fund_id, tx_ref))

    def insert_if_absent(self, record: PaymentRecord) -> bool:
        key = (record.fund_id, record.tx_ref)
        with self._lock:
            if key in self._records:
                return False
            self._records[key] = record
            return True

    def list_for_fund(self, fund_id: str) -> Sequence[PaymentRecord]:
        with self._lock:
            records = [record for (owner, _), record in self._records.items() if owner == fund_id]
        return sorted(records, key=lambda item: (item.recorded_at, item.tx_ref))
