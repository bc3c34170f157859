from __future__ import annotations

from datetime import timedelta
import json

from settlement.history_store import (
    InMemoryPaymentHistoryStore,
    InMemoryWithdrawalHistoryStore,
    PaymentRecipient,
    PaymentRecord,
    SqlPaymentHistoryStore,
    SqlWithdrawalHistoryStore,
    WithdrawalHistoryEntry,
)
from tests.utils.settlement_fakes import T0, FakeDB, new_key


def _entry(investor: str, tx_ref: str, *, amount: int = 10, at=T0) -> WithdrawalHistoryEntry:
    return WithdrawalHistoryEntry(
        investor_id=investor,
        fund_id=new_key(),
        tx_ref=tx_ref,
        amount=amount,
        recorded_at=at,
        details={"fraction_bps": 5_000},
    )


def test_withdrawal_history_insert_is_idempotent_per_tx_ref() -> None:
    store = InMemoryWithdrawalHistoryStore()
    investor = new_key()

    assert store.insert_if_absent(_entry(investor, "sig-b", at=T0 + timedelta(seconds=5))) is True
    assert store.insert_if_absent(_entry(investor, "sig-a")) is True
    assert store.insert_if_absent(_entry(investor, "sig-a", amount=999)) is False
    assert store.insert_if_absent(_entry(new_key(), "sig-a")) is True

    entries = store.list_for_investor(investor)
    assert [entry.tx_ref for entry in entries] == ["sig-a", "sig-b"]
    assert store.get(investor, "sig-a").amount == 10
    assert entries[0].as_dict()["recorded_at"] == "2026-01-01T12:00:00Z"


def test_payment_history_is_scoped_per_fund() -> None:
    store = InMemoryPaymentHistoryStore()
    fund = new_key()
    record = PaymentRecord(
        fund_id=fund,
        tx_ref="pay-1",
        total_value=100,
        recipients=(PaymentRecipient(wallet=new_key(), amount=100),),
        recorded_at=T0,
    )

    assert store.insert_if_absent(record) is True
    assert store.insert_if_absent(record) is False
    assert store.list_for_fund(fund) == [record]
    assert store.list_for_fund(new_key()) == []
    assert record.as_dict()["recipients"][0]["role"] == "INVESTOR"


def test_sql_withdrawal_history_serializes_details() -> None:
    db = FakeDB()
    store = SqlWithdrawalHistoryStore(db)
    entry = _entry(new_key(), "sig-1")

    db.set_one({"tx_ref": "sig-1"})
    assert store.insert_if_absent(entry) is True
    sql, params = db.executed[0]
    assert "ON CONFLICT (investor_id, tx_ref) DO NOTHING" in sql
    assert json.loads(params["details"]) == {"fraction_bps": 5_000}

    db.set_all(
        [
            {
                "investor_id": entry.investor_id,
                "fund_id": entry.fund_id,
                "tx_ref": "sig-1",
                "amount": 10,
                "details": '{"fraction_bps": 5000}',
                "recorded_at": T0,
            }
        ]
    )
    loaded = store.list_for_investor(entry.investor_id)
    assert loaded[0].details == {"fraction_bps": 5_000}
    assert loaded[0].amount == 10


def test_sql_payment_history_round_trips_recipients() -> None:
    db = FakeDB()
    store = SqlPaymentHistoryStore(db)
    fund = new_key()
    wallet = new_key()
    record = PaymentRecord(
        fund_id=fund,
        tx_ref="pay-1",
        total_value=50,
        recipients=(PaymentRecipient(wallet=wallet, amount=50, role="MANAGER"),),
        recorded_at=T0,
    )

    assert store.insert_if_absent(record) is False
    params = db.executed[0][1]
    assert params["recipient_count"] == 1
    assert json.loads(params["recipients"]) == [{"wallet": wallet, "amount": 50, "role": "MANAGER"}]

    db.set_one(
        {
            "fund_id": fund,
            "tx_ref": "pay-1",
            "total_value": 50,
            "recipients": [{"wallet": wallet, "amount": 50, "role": "MANAGER"}],
            "recorded_at": T0,
        }
    )
    assert store.get(fund, "pay-1") == record
