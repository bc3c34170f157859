"""In-process fakes for routing, ledger, oracle and database collaborators."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import threading
from typing import Any, Mapping, Optional, Sequence

from solders.hash import Hash
from solders.pubkey import Pubkey

from settlement.errors import NotFoundError, UpstreamError
from settlement.ledger_contract import (
    FundLedgerSnapshot,
    HeldAsset,
    InvestorPosition,
    LedgerWithdrawalRequest,
    RecencyToken,
    SimulationResult,
)
from settlement.price_oracle import PriceObservation
from settlement.route_contract import Quote, SwapInstructions, parse_swap_instructions
from settlement.settlement_config import ROUTER_PROGRAM_ID, WRAPPED_NATIVE_MINT, SettlementConfig


T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def new_key() -> str:
    return str(Pubkey.new_unique())


class FixedClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def now_utc(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_quote(
    asset_in: str,
    amount: int,
    expected_out: int,
    *,
    asset_out: str = WRAPPED_NATIVE_MINT,
    direct_only: bool = False,
) -> Quote:
    return Quote(
        asset_in=asset_in,
        asset_out=asset_out,
        in_amount=amount,
        expected_out=expected_out,
        min_out=expected_out * 8 // 10,
        slippage_bps=2000,
        direct_only=direct_only,
        route_ref=f"route-{asset_in[:6]}-{'direct' if direct_only else 'any'}",
    )


def make_swap_instructions(
    account_count: int = 4,
    lookup_tables: Sequence[str] = (),
    *,
    program_id: str = ROUTER_PROGRAM_ID,
) -> SwapInstructions:
    return parse_swap_instructions(
        {
            "setupInstructions": [],
            "swapInstruction": {
                "programId": program_id,
                "accounts": [
                    {"pubkey": new_key(), "isSigner": False, "isWritable": True}
                    for _ in range(account_count)
                ],
                "data": base64.b64encode(b"\x01\x02\x03route").decode("ascii"),
            },
            "addressLookupTableAddresses": list(lookup_tables),
        }
    )


class FakeRoutingService:
    """Scripted routing service.

    ``quotes`` maps ``(asset_in, direct_only)`` to expected output or an
    exception; ``swaps`` maps ``(asset_in, direct_only)`` to an account count,
    a ready ``SwapInstructions`` or an exception.
    """

    def __init__(self) -> None:
        self.quotes: dict[tuple[str, bool], Any] = {}
        self.swaps: dict[tuple[str, bool], Any] = {}
        self.quote_calls: list[tuple[str, int, bool]] = []
        self.quote_options: list[tuple[str, int, tuple[str, ...]]] = []
        self.swap_calls: list[tuple[str, bool, str, str]] = []
        self.delay_event: Optional[threading.Event] = None
        self.slow_assets: set[str] = set()
        self._lock = threading.Lock()

    def quote(
        self,
        asset_in: str,
        asset_out: str,
        amount: int,
        slippage_bps: int,
        direct_only: bool,
        timeout_seconds: float,
        *,
        exclude_dexes: Sequence[str] = (),
    ) -> Quote:
        with self._lock:
            self.quote_calls.append((asset_in, amount, direct_only))
            self.quote_options.append((asset_in, slippage_bps, tuple(exclude_dexes)))
        if asset_in in self.slow_assets and self.delay_event is not None:
            self.delay_event.wait(timeout=5.0)
        outcome = self.quotes.get((asset_in, direct_only))
        if outcome is None:
            raise UpstreamError("no quote scripted", details={"asset_in": asset_in})
        if isinstance(outcome, Exception):
            raise outcome
        return make_quote(asset_in, amount, int(outcome), asset_out=asset_out, direct_only=direct_only)

    def build_swap_instructions(
        self,
        quote: Quote,
        *,
        owner: str,
        payer: str,
        source_account: str,
        destination_account: str,
        timeout_seconds: float,
    ) -> SwapInstructions:
        with self._lock:
            self.swap_calls.append((quote.asset_in, quote.direct_only, owner, payer))
        outcome = self.swaps.get((quote.asset_in, quote.direct_only), 4)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, SwapInstructions):
            return outcome
        return make_swap_instructions(int(outcome))


@dataclass
class FakeLedger:
    funds: dict[str, FundLedgerSnapshot] = field(default_factory=dict)
    positions: dict[tuple[str, str], InvestorPosition] = field(default_factory=dict)
    token_balances: dict[str, int] = field(default_factory=dict)
    confirmed: set[str] = field(default_factory=set)
    simulation: SimulationResult = field(default_factory=lambda: SimulationResult(ok=True, units_consumed=52_000))
    lookup_error: Optional[Exception] = None
    simulated: list[Any] = field(default_factory=list)
    withdrawal_requests: dict[tuple[str, str], LedgerWithdrawalRequest] = field(default_factory=dict)
    recency_failures: int = 0
    recency_calls: int = 0

    def get_fund_snapshot(self, fund_id: str) -> FundLedgerSnapshot:
        snapshot = self.funds.get(fund_id)
        if snapshot is None:
            raise NotFoundError("Fund not found", details={"fund_id": fund_id})
        return snapshot

    def get_investor_position(self, investor_id: str, fund_id: str) -> Optional[InvestorPosition]:
        return self.positions.get((investor_id, fund_id))

    def open_withdrawal(self, investor_id: str, fund_id: str, shares: int) -> None:
        self.withdrawal_requests[(investor_id, fund_id)] = LedgerWithdrawalRequest(
            investor_id=investor_id,
            fund_id=fund_id,
            shares_to_withdraw=shares,
        )

    def get_withdrawal_request(self, investor_id: str, fund_id: str) -> Optional[LedgerWithdrawalRequest]:
        return self.withdrawal_requests.get((investor_id, fund_id))

    def get_token_balance(self, token_account: str) -> int:
        return self.token_balances.get(token_account, 0)

    def latest_recency_token(self) -> RecencyToken:
        self.recency_calls += 1
        if self.recency_failures > 0:
            self.recency_failures -= 1
            raise UpstreamError("rpc down", details={"method": "get_latest_blockhash"})
        return RecencyToken(blockhash=str(Hash.default()), last_valid_block_height=1_000)

    def resolve_lookup_tables(self, addresses: Sequence[str]) -> list[Any]:
        if self.lookup_error is not None and addresses:
            raise self.lookup_error
        return []

    def simulate(self, transaction: Any) -> SimulationResult:
        self.simulated.append(transaction)
        return self.simulation

    def is_confirmed(self, tx_ref: str) -> bool:
        return tx_ref in self.confirmed


class FakeOracle:
    def __init__(self, prices: Mapping[str, int], clock: FixedClock, *, age_seconds: float = 0.0) -> None:
        self.prices = dict(prices)
        self.clock = clock
        self.age_seconds = age_seconds
        self.calls: list[str] = []

    def get_price(self, asset_id: str) -> PriceObservation:
        self.calls.append(asset_id)
        if asset_id not in self.prices:
            raise UpstreamError("No price available", details={"asset_id": asset_id})
        return PriceObservation(
            asset_id=asset_id,
            base_units=self.prices[asset_id],
            observed_at=self.clock.now_utc() - timedelta(seconds=self.age_seconds),
        )


class FakeDB:
    """Records statements and returns rows queued by the test."""

    def __init__(self) -> None:
        self.executed: list[tuple[str, dict[str, Any]]] = []
        self._one: list[Optional[Mapping[str, Any]]] = []
        self._all: list[Sequence[Mapping[str, Any]]] = []

    def set_one(self, row: Optional[Mapping[str, Any]]) -> None:
        self._one.append(row)

    def set_all(self, rows: Sequence[Mapping[str, Any]]) -> None:
        self._all.append(rows)

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        self.executed.append((sql, dict(params)))
        return self._one.pop(0) if self._one else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        self.executed.append((sql, dict(params)))
        return self._all.pop(0) if self._all else []

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        self.executed.append((sql, dict(params)))


def make_config(**overrides: Any) -> SettlementConfig:
    values: dict[str, Any] = {
        "program_id": new_key(),
        "rpc_url": "http://localhost:8899",
        "rpc_commitment": "confirmed",
        "routing_api_base_url": "http://routing.local",
        "router_program_id": ROUTER_PROGRAM_ID,
        "price_api_base_url": "http://price.local",
        "treasury_wallet": new_key(),
        "settlement_mint": WRAPPED_NATIVE_MINT,
        "settlement_decimals": 9,
        "dust_threshold_base_units": 100_000_000,
        "quote_slippage_bps": 2000,
        "quote_timeout_seconds": 4.0,
        "quote_concurrency": 4,
        "plan_ceiling_seconds": 5.0,
        "assembly_concurrency": 4,
        "priority_microlamports": 20_000,
        "swap_compute_units": 600_000,
        "finalize_compute_units": 300_000,
        "unwrap_compute_units": 200_000,
        "payout_compute_units": 400_000,
        "payout_batch_size": 20,
        "platform_fee_bps": 100,
        "treasury_perf_share_bps": 2000,
        "withdrawal_ttl_seconds": 900,
        "simulate_finalize": True,
        "require_confirmed_record": True,
        "price_max_staleness_seconds": 60,
        "rate_limit_enabled": True,
        "rate_limit_max_requests": 200,
        "rate_limit_window_seconds": 900,
        "log_level": "INFO",
    }
    values.update(overrides)
    return SettlementConfig(**values)


def make_fund(
    held: Sequence[tuple[str, int, int]] = (),
    *,
    fund_id: Optional[str] = None,
    manager: Optional[str] = None,
    total_shares: int = 1_000_000,
    native_balance: int = 5_000_000_000,
    performance_fee_bps: int = 2000,
) -> FundLedgerSnapshot:
    """``held`` is a sequence of ``(mint, balance, decimals)``."""
    return FundLedgerSnapshot(
        fund_id=fund_id or new_key(),
        manager=manager or new_key(),
        shares_mint=new_key(),
        total_deposits=native_balance,
        total_shares=total_shares,
        current_value=native_balance,
        held_assets=tuple(HeldAsset(asset_id=mint, balance=balance, decimals=decimals) for mint, balance, decimals in held),
        performance_fee_bps=performance_fee_bps,
        native_balance=native_balance,
    )
