"""End-to-end tests of the orchestrator request surface over in-memory stores."""

from __future__ import annotations

from typing import Any

import pytest

from settlement.errors import ValidationError
from settlement.ledger_contract import InvestorPosition
from settlement.route_contract import RoutingOptions
from settlement.service import WithdrawalOrchestrator, build_orchestrator, percent_to_bps, respond
from tests.utils.settlement_fakes import (
    FakeLedger,
    FakeOracle,
    FakeRoutingService,
    FixedClock,
    make_config,
    make_fund,
    new_key,
)


DUST = 100_000_000


class _Env:
    def __init__(self, **config_overrides: Any) -> None:
        self.clock = FixedClock()
        self.ledger = FakeLedger()
        self.routing = FakeRoutingService()
        self.oracle = FakeOracle({}, self.clock)
        self.config = make_config(**config_overrides)
        self.orchestrator: WithdrawalOrchestrator = build_orchestrator(
            self.config,
            ledger=self.ledger,
            routing=self.routing,
            oracle=self.oracle,
            clock=self.clock,
        )
        self.investor = new_key()
        self.x_mint = new_key()
        self.y_mint = new_key()
        fund = make_fund([(self.x_mint, 1_000_000, 6), (self.y_mint, 500_000, 6)])
        self.fund = fund.fund_id
        self.snapshot = fund
        self.ledger.funds[fund.fund_id] = fund
        self.ledger.positions[(self.investor, fund.fund_id)] = InvestorPosition(
            investor_id=self.investor,
            fund_id=fund.fund_id,
            shares=100_000,
            total_deposited=500_000_000,
        )


@pytest.fixture
def env() -> _Env:
    return _Env()


def test_percent_to_bps_truncates_and_validates() -> None:
    assert percent_to_bps("25") == 2_500
    assert percent_to_bps("0.01") == 1
    assert percent_to_bps(100) == 10_000
    assert percent_to_bps("33.339") == 3_333
    for bad in ("0", "-5", "100.01", "abc", "NaN", "0.005"):
        with pytest.raises(ValidationError):
            percent_to_bps(bad)


def test_respond_wraps_success_and_errors() -> None:
    assert respond(lambda: {"ok": 1}) == (200, {"success": True, "data": {"ok": 1}})

    status, body = respond(lambda: percent_to_bps("0"))
    assert status == 400
    assert body["success"] is False
    assert body["category"] == "bad-input"

    status, body = respond(lambda: 1 // 0)
    assert status == 500
    assert body == {"success": False, "error": "Internal error", "category": "internal", "details": {}}


def test_full_withdrawal_lifecycle(env: _Env) -> None:
    env.routing.quotes[(env.x_mint, False)] = 3 * DUST
    env.routing.quotes[(env.y_mint, False)] = DUST - 1
    orchestrator = env.orchestrator

    started = orchestrator.start(env.investor, env.fund, "25")
    withdrawal = started["withdrawal"]
    assert withdrawal["status"] == "REQUESTED"
    assert withdrawal["fraction_bps"] == 2_500
    assert withdrawal["shares_to_burn"] == 25_000
    assert started["initiate_transaction"]["size_bytes"] > 0

    status, body = respond(lambda: orchestrator.start(env.investor, env.fund, "10"))
    assert status == 409
    assert body["details"]["withdrawal_id"] == withdrawal["withdrawal_id"]

    env.ledger.open_withdrawal(env.investor, env.fund, withdrawal["shares_to_burn"])
    planned = orchestrator.plan(env.investor, env.fund, withdrawal_id=withdrawal["withdrawal_id"])
    assert planned["withdrawal"]["status"] == "PLANNED"
    assert planned["plan"]["executable"] == [env.x_mint]
    assert [tx["asset_id"] for tx in planned["transactions"]] == [env.x_mint]
    assert planned["withdrawal"]["plan"]["executable"] == [env.x_mint]

    status, body = respond(lambda: orchestrator.finalize(env.investor, env.fund))
    assert status == 409
    assert "not ready" in body["error"]

    executing = orchestrator.confirm_swaps(env.investor, env.fund, ["sig-swap", "sig-swap", " "])
    assert executing["withdrawal"]["status"] == "EXECUTING"
    assert executing["withdrawal"]["swap_tx_refs"] == ["sig-swap"]
    assert orchestrator.confirm_swaps(env.investor, env.fund, ["sig-swap"])["withdrawal"]["status"] == "EXECUTING"

    finalize = orchestrator.finalize(env.investor, env.fund)
    assert finalize["withdrawal_id"] == withdrawal["withdrawal_id"]
    assert len(env.ledger.simulated) == 1

    status, body = respond(lambda: orchestrator.record(env.investor, env.fund, 123, "sig-final"))
    assert status == 409
    assert "not confirmed" in body["error"]

    env.ledger.confirmed.add("sig-final")
    ack = orchestrator.record(env.investor, env.fund, 123, "sig-final", {"note": "first"})
    again = orchestrator.record(env.investor, env.fund, 123, "sig-final")
    assert ack["idempotent"] is False
    assert again["idempotent"] is True
    assert again["withdrawal_id"] == withdrawal["withdrawal_id"]

    entries = orchestrator.withdrawal_history(env.investor)["entries"]
    assert len(entries) == 1
    details = entries[0]["details"]
    assert details["note"] == "first"
    assert details["fraction_bps"] == 2_500
    assert details["percent_requested"] == 25.0
    assert details["swap_tx_refs"] == ["sig-swap"]

    status, body = respond(lambda: orchestrator.finalize(env.investor, env.fund))
    assert status == 409
    assert body["error"] == "Withdrawal is already FINALIZED"

    env.clock.advance(5)
    assert orchestrator.start(env.investor, env.fund, "100")["withdrawal"]["status"] == "REQUESTED"


def test_plan_with_only_dust_can_finalize_directly(env: _Env) -> None:
    env.routing.quotes[(env.x_mint, False)] = 10
    env.routing.quotes[(env.y_mint, False)] = 10
    orchestrator = env.orchestrator

    orchestrator.start(env.investor, env.fund, "50")
    env.ledger.open_withdrawal(env.investor, env.fund, 50_000)
    planned = orchestrator.plan(env.investor, env.fund)
    assert planned["transactions"] == []
    assert orchestrator.finalize(env.investor, env.fund)["units_consumed"] == 52_000


def test_plan_rejects_mismatched_handle_and_negative_dust(env: _Env) -> None:
    orchestrator = env.orchestrator
    orchestrator.start(env.investor, env.fund, "50")

    status, _ = respond(lambda: orchestrator.plan(env.investor, env.fund, withdrawal_id="other"))
    assert status == 409
    status, _ = respond(lambda: orchestrator.plan(env.investor, env.fund, dust_threshold=-1))
    assert status == 400


def test_start_validates_inputs_and_position(env: _Env) -> None:
    orchestrator = env.orchestrator

    status, _ = respond(lambda: orchestrator.start("not-a-key", env.fund, "10"))
    assert status == 400
    status, _ = respond(lambda: orchestrator.start(env.investor, new_key(), "10"))
    assert status == 404
    status, _ = respond(lambda: orchestrator.start(new_key(), env.fund, "10"))
    assert status == 404

    env.ledger.positions[(env.investor, env.fund)] = InvestorPosition(env.investor, env.fund, shares=1, total_deposited=1)
    status, body = respond(lambda: orchestrator.start(env.investor, env.fund, "50"))
    assert status == 400
    assert "zero shares" in body["error"]


def test_start_is_rate_limited_per_investor() -> None:
    env = _Env(rate_limit_max_requests=1)
    env.orchestrator.start(env.investor, env.fund, "10")

    status, body = respond(lambda: env.orchestrator.start(env.investor, env.fund, "10"))
    assert status == 429
    assert body["details"]["retry_after"] == 900


def test_fail_and_expire_stale(env: _Env) -> None:
    orchestrator = env.orchestrator
    started = orchestrator.start(env.investor, env.fund, "10")

    assert orchestrator.expire_stale()["expired"] == []
    env.clock.advance(env.config.withdrawal_ttl_seconds + 1)
    assert orchestrator.expire_stale()["expired"] == [started["withdrawal"]["withdrawal_id"]]

    status, body = respond(lambda: orchestrator.finalize(env.investor, env.fund))
    assert status == 409
    assert body["details"]["status"] == "FAILED"

    env.clock.advance(1)
    orchestrator.start(env.investor, env.fund, "10")
    failed = orchestrator.fail(env.investor, env.fund, "user cancelled")
    assert failed["withdrawal"]["failure_reason"] == "user cancelled"
    status, _ = respond(lambda: orchestrator.fail(env.investor, env.fund, "again"))
    assert status == 404


def test_preview_estimates_fees_from_fund_value(env: _Env) -> None:
    env.oracle.prices[env.x_mint] = 1_000_000_000
    env.oracle.prices[env.y_mint] = 2_000_000_000

    preview = env.orchestrator.preview(env.investor, env.fund, "50")

    # 5 native + 1 x + 0.5 y at 2 each.
    assert preview["fund_value"] == 7_000_000_000
    assert preview["shares_to_burn"] == 50_000
    assert preview["withdrawal_value"] == 350_000_000
    assert preview["profit"] == 100_000_000
    assert preview["performance_fee"] == 20_000_000
    assert preview["platform_withdrawal_fee"] == 3_500_000
    assert preview["net_amount"] == 326_500_000


def test_pay_and_record_payment(env: _Env) -> None:
    small, large = new_key(), new_key()

    payout = env.orchestrator.pay(env.fund, "10", [(small, 100), (large, 900)])

    recipients = {item["wallet"]: item["amount"] for item in payout["payout"]["recipients"]}
    assert recipients[small] == 792_000_000
    assert recipients[env.snapshot.manager] == 1_584_000_000
    assert len(payout["transactions"]) == 1

    env.ledger.confirmed.add("pay-1")
    records = [{"wallet": small, "amount": 792_000_000}, {"wallet": large, "amount": 7_128_000_000}]
    ack = env.orchestrator.record_payment(env.fund, "pay-1", records)
    assert ack["idempotent"] is False
    assert ack["total_value"] == 7_920_000_000
    assert env.orchestrator.record_payment(env.fund, "pay-1", records)["idempotent"] is True
    assert len(env.orchestrator.payment_history(env.fund)["records"]) == 1

    status, body = respond(lambda: env.orchestrator.record_payment(env.fund, "pay-2", [{"wallet": small}]))
    assert status == 400
    assert body["error"] == "Malformed recipients"
    status, _ = respond(lambda: env.orchestrator.pay(env.fund, "abc", [(small, 1)]))
    assert status == 400
    status, body = respond(lambda: env.orchestrator.pay(env.fund, "10", [(small, "many")]))
    assert status == 400
    assert body["error"] == "Malformed holdings"
    status, _ = respond(lambda: env.orchestrator.pay(env.fund, "10", [(small, 1)], performance_fee="abc"))
    assert status == 400


def test_start_leaves_no_row_when_recency_is_unavailable(env: _Env) -> None:
    env.ledger.recency_failures = 1

    status, body = respond(lambda: env.orchestrator.start(env.investor, env.fund, "25"))
    assert status == 502
    assert body["category"] == "upstream-unavailable"

    retried = env.orchestrator.start(env.investor, env.fund, "25")
    assert retried["withdrawal"]["status"] == "REQUESTED"


def test_plan_requires_matching_ledger_withdrawal(env: _Env) -> None:
    env.routing.quotes[(env.x_mint, False)] = 3 * DUST
    orchestrator = env.orchestrator
    orchestrator.start(env.investor, env.fund, "50")

    status, body = respond(lambda: orchestrator.plan(env.investor, env.fund))
    assert status == 404
    assert "Ledger withdrawal account not found" in body["error"]

    env.ledger.open_withdrawal(env.investor, env.fund, 10_000)
    status, body = respond(lambda: orchestrator.plan(env.investor, env.fund))
    assert status == 409
    assert body["details"]["ledger_shares"] == 10_000
    assert body["details"]["requested_shares"] == 50_000
    assert env.routing.quote_calls == []

    env.ledger.open_withdrawal(env.investor, env.fund, 50_000)
    assert orchestrator.plan(env.investor, env.fund)["withdrawal"]["status"] == "PLANNED"


def test_plan_applies_routing_options(env: _Env) -> None:
    env.routing.quotes[(env.x_mint, True)] = 3 * DUST
    orchestrator = env.orchestrator
    orchestrator.start(env.investor, env.fund, "50")
    env.ledger.open_withdrawal(env.investor, env.fund, 50_000)

    options = RoutingOptions(direct_only=True, exclude_dexes=("Raydium",), slippage_bps=50)
    planned = orchestrator.plan(env.investor, env.fund, routing_options=options)

    assert [tx["asset_id"] for tx in planned["transactions"]] == [env.x_mint]
    assert env.routing.quote_calls
    assert all(direct for _, _, direct in env.routing.quote_calls)
    assert all(option[1:] == (50, ("Raydium",)) for option in env.routing.quote_options)
    assert all(direct for _, direct, _, _ in env.routing.swap_calls)
    assert planned["withdrawal"]["plan"]["routing_options"] == {
        "direct_only": True,
        "exclude_dexes": ["Raydium"],
        "slippage_bps": 50,
    }


def test_finalize_can_be_reissued_until_recorded(env: _Env) -> None:
    env.routing.quotes[(env.x_mint, False)] = 10
    env.routing.quotes[(env.y_mint, False)] = 10
    orchestrator = env.orchestrator
    started = orchestrator.start(env.investor, env.fund, "50")
    env.ledger.open_withdrawal(env.investor, env.fund, 50_000)
    orchestrator.plan(env.investor, env.fund)

    first = orchestrator.finalize(env.investor, env.fund)
    second = orchestrator.finalize(env.investor, env.fund)

    assert first["withdrawal_id"] == second["withdrawal_id"] == started["withdrawal"]["withdrawal_id"]
    assert len(env.ledger.simulated) == 2

    env.ledger.confirmed.add("sig-final")
    assert orchestrator.record(env.investor, env.fund, 1, "sig-final")["idempotent"] is False
    status, body = respond(lambda: orchestrator.finalize(env.investor, env.fund))
    assert status == 409
    assert body["error"] == "Withdrawal is already FINALIZED"
