from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest

from settlement.errors import UpstreamError
from settlement.ledger_contract import HeldAsset
from settlement.price_oracle import JupiterPriceOracle, StalenessGuardedOracle, value_fund
from settlement.settlement_config import WRAPPED_NATIVE_MINT
from tests.utils.settlement_fakes import FakeOracle, FixedClock, make_fund, new_key


def test_guard_caches_fresh_observations() -> None:
    clock = FixedClock()
    mint = new_key()
    source = FakeOracle({mint: 150}, clock)
    guard = StalenessGuardedOracle(source, max_staleness_seconds=60, clock=clock)

    assert guard.get_price(mint).base_units == 150
    clock.advance(30)
    assert guard.get_price(mint).base_units == 150
    assert source.calls == [mint]

    clock.advance(60)
    guard.get_price(mint)
    assert source.calls == [mint, mint]


def test_guard_refetches_stale_price_once_then_fails() -> None:
    clock = FixedClock()
    mint = new_key()
    source = FakeOracle({mint: 150}, clock, age_seconds=120)
    guard = StalenessGuardedOracle(source, max_staleness_seconds=60, clock=clock)

    with pytest.raises(UpstreamError, match="stale"):
        guard.get_price(mint)
    assert source.calls == [mint, mint]


def test_value_fund_sums_native_and_priced_assets() -> None:
    clock = FixedClock()
    usdc, bonk = new_key(), new_key()
    fund = make_fund([(usdc, 2_500_000, 6), (bonk, 0, 5)], native_balance=1_000_000_000)
    fund = replace(fund, held_assets=fund.held_assets + (HeldAsset(asset_id=fund.shares_mint, balance=10, decimals=0),))
    oracle = FakeOracle({usdc: 6_000_000}, clock)

    # 2.5 units at 0.006 settlement units each.
    assert value_fund(fund, oracle) == 1_000_000_000 + 15_000_000
    assert oracle.calls == [usdc]


def test_jupiter_oracle_parses_price_payload() -> None:
    mint = new_key()
    seen: list[tuple[str, dict[str, Any]]] = []

    def _requester(path: str, params: dict[str, Any]) -> Any:
        seen.append((path, params))
        return {"data": {mint: {"id": mint, "price": "0.0125"}}}

    oracle = JupiterPriceOracle(
        base_url="https://price.local/",
        settlement_asset=WRAPPED_NATIVE_MINT,
        settlement_decimals=9,
        clock=FixedClock(),
        requester=_requester,
    )

    assert oracle.get_price(mint).base_units == 12_500_000
    assert seen == [("/price/v2", {"ids": mint, "vsToken": WRAPPED_NATIVE_MINT})]
    assert oracle.get_price(WRAPPED_NATIVE_MINT).base_units == 1_000_000_000
    assert len(seen) == 1


def test_jupiter_oracle_rejects_missing_or_bad_prices() -> None:
    mint = new_key()
    payloads: list[Any] = [{"data": {}}, {"data": {mint: {"price": "abc"}}}, {"data": {mint: {"price": "-1"}}}]

    oracle = JupiterPriceOracle(
        base_url="https://price.local",
        settlement_asset=WRAPPED_NATIVE_MINT,
        settlement_decimals=9,
        requester=lambda path, params: payloads.pop(0),
    )

    with pytest.raises(UpstreamError, match="No price"):
        oracle.get_price(mint)
    with pytest.raises(UpstreamError, match="not numeric"):
        oracle.get_price(mint)
    with pytest.raises(UpstreamError, match="negative"):
        oracle.get_price(mint)
