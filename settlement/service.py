"""Request surface of the withdrawal orchestrator and payout ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_DOWN
import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence
import uuid

from backend.db.enums import WithdrawalStatus
from settlement.common import SettlementClock, floor_fraction_bps, utc_iso
from settlement.errors import (
    INTERNAL,
    STATUS_BY_CATEGORY,
    ConflictError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from settlement.finalization import FinalizationCoordinator
from settlement.history_store import (
    InMemoryPaymentHistoryStore,
    InMemoryWithdrawalHistoryStore,
    PaymentHistoryStore,
    PaymentRecipient,
    SqlPaymentHistoryStore,
    SqlWithdrawalHistoryStore,
    WithdrawalHistoryEntry,
    WithdrawalHistoryStore,
)
from settlement.ledger_contract import LedgerClient
from settlement.liquidation_planner import LiquidationPlanner
from settlement.payment_ledger import PaymentLedger, estimate_withdrawal_fees
from settlement.price_oracle import PriceOracle, StalenessGuardedOracle, value_fund
from settlement.program_instructions import as_pubkey, compute_budget_instructions, initiate_withdrawal
from settlement.psycopg_db import SettlementDatabase
from settlement.rate_limit import InMemorySlidingWindowStore, KeyedRateLimiter
from settlement.route_contract import RoutingOptions, RoutingService
from settlement.route_quote_client import RouteQuoteClient
from settlement.settlement_config import SettlementConfig
from settlement.state_store import InMemoryWithdrawalStateStore, SqlWithdrawalStateStore, WithdrawalStateStore
from settlement.transaction_assembler import TransactionAssembler, build_unsigned
from settlement.withdrawal_state import WithdrawalState, transitioned


logger = logging.getLogger(__name__)

EXPIRED_REASON = "expired"


def _require_key(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    try:
        return str(as_pubkey(value.strip()))
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name}", details={field_name: value}) from exc


def percent_to_bps(percent: Any) -> int:
    """Convert a withdrawal percentage in (0, 100] into basis points, truncating."""
    try:
        value = Decimal(str(percent))
    except InvalidOperation as exc:
        raise ValidationError("percent must be numeric", details={"percent": str(percent)}) from exc
    if not value.is_finite() or value <= 0 or value > 100:
        raise ValidationError("percent must be within (0, 100]", details={"percent": str(percent)})
    bps = int((value * 100).to_integral_value(rounding=ROUND_DOWN))
    if bps < 1:
        raise ValidationError("percent is below one basis point", details={"percent": str(percent)})
    return bps


def respond(call: Callable[[], Any]) -> tuple[int, dict[str, Any]]:
    """Run ``call`` and wrap its outcome in the response envelope with a status code."""
    try:
        data = call()
    except SettlementError as exc:
        return exc.status_code, {
            "success": False,
            "error": exc.message,
            "category": exc.category,
            "details": exc.details,
        }
    except Exception:
        logger.exception("Unhandled settlement failure")
        return STATUS_BY_CATEGORY[INTERNAL], {
            "success": False,
            "error": "Internal error",
            "category": INTERNAL,
            "details": {},
        }
    return 200, {"success": True, "data": data}


@dataclass(frozen=True)
class OrchestratorStores:
    states: WithdrawalStateStore
    withdrawals: WithdrawalHistoryStore
    payments: PaymentHistoryStore


class WithdrawalOrchestrator:
    """Stateless request handlers over the persisted withdrawal state machine."""

    def __init__(
        self,
        *,
        config: SettlementConfig,
        ledger: LedgerClient,
        quote_client: RouteQuoteClient,
        stores: OrchestratorStores,
        oracle: PriceOracle,
        rate_limiter: KeyedRateLimiter,
        clock: SettlementClock | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._stores = stores
        self._oracle = oracle
        self._rate_limiter = rate_limiter
        self._clock = clock or SettlementClock()
        self._planner = LiquidationPlanner(
            quote_client,
            settlement_asset=config.settlement_mint,
            concurrency=config.quote_concurrency,
            ceiling_seconds=config.plan_ceiling_seconds,
        )
        self._assembler = TransactionAssembler(
            quote_client=quote_client,
            ledger=ledger,
            program_id=config.program_id,
            settlement_asset=config.settlement_mint,
            compute_units=config.swap_compute_units,
            priority_microlamports=config.priority_microlamports,
            concurrency=config.assembly_concurrency,
            router_program_id=config.router_program_id,
        )
        self._finalizer = FinalizationCoordinator(
            store=stores.states,
            ledger=ledger,
            program_id=config.program_id,
            treasury_wallet=config.treasury_wallet,
            wrapped_native_mint=config.settlement_mint,
            finalize_compute_units=config.finalize_compute_units,
            unwrap_compute_units=config.unwrap_compute_units,
            priority_microlamports=config.priority_microlamports,
            simulate=config.simulate_finalize,
            clock=self._clock,
        )
        self._payments = PaymentLedger(
            store=stores.payments,
            ledger=ledger,
            treasury_wallet=config.treasury_wallet,
            settlement_decimals=config.settlement_decimals,
            batch_size=config.payout_batch_size,
            platform_fee_bps=config.platform_fee_bps,
            treasury_perf_share_bps=config.treasury_perf_share_bps,
            compute_units=config.payout_compute_units,
            priority_microlamports=config.priority_microlamports,
            clock=self._clock,
        )

    def _active(self, investor_id: str, fund_id: str) -> WithdrawalState:
        state = self._stores.states.get_active(investor_id, fund_id)
        if state is None:
            raise NotFoundError(
                "No active withdrawal",
                details={"investor_id": investor_id, "fund_id": fund_id},
            )
        return state

    def _advance(self, state: WithdrawalState, target: WithdrawalStatus, **changes: Any) -> WithdrawalState:
        try:
            updated = transitioned(state, target, self._clock.now_utc(), **changes)
        except ValueError as exc:
            raise ConflictError(
                str(exc),
                details={"withdrawal_id": str(state.withdrawal_id), "status": state.status.value},
            ) from exc
        if not self._stores.states.compare_and_set(state.status, updated):
            raise ConflictError(
                "Withdrawal changed concurrently",
                details={"withdrawal_id": str(state.withdrawal_id)},
            )
        return updated

    def start(self, investor_id: str, fund_id: str, percent: Any) -> dict[str, Any]:
        investor = _require_key(investor_id, "investor_id")
        fund = _require_key(fund_id, "fund_id")
        fraction_bps = percent_to_bps(percent)
        self._rate_limiter.check(f"start:{investor}")

        self._ledger.get_fund_snapshot(fund)
        position = self._ledger.get_investor_position(investor, fund)
        if position is None or position.shares <= 0:
            raise NotFoundError("Investor position not found", details={"investor_id": investor, "fund_id": fund})
        shares_to_burn = floor_fraction_bps(position.shares, fraction_bps)
        if shares_to_burn <= 0:
            raise ValidationError(
                "Requested fraction rounds to zero shares",
                details={"shares": position.shares, "fraction_bps": fraction_bps},
            )

        # Everything that can fail upstream runs before the row exists.
        instructions = compute_budget_instructions(
            self._config.finalize_compute_units,
            self._config.priority_microlamports,
        )
        instructions.append(
            initiate_withdrawal(
                self._config.program_id,
                fund=fund,
                investor=investor,
                shares_to_withdraw=shares_to_burn,
            )
        )
        _, unsigned = build_unsigned(investor, instructions, self._ledger.latest_recency_token())

        now = self._clock.now_utc()
        state = WithdrawalState(
            withdrawal_id=uuid.uuid4(),
            investor_id=investor,
            fund_id=fund,
            fraction_bps=fraction_bps,
            status=WithdrawalStatus.REQUESTED,
            created_at=now,
            updated_at=now,
            shares_to_burn=shares_to_burn,
        )
        if not self._stores.states.create(state):
            active = self._stores.states.get_active(investor, fund)
            raise ConflictError(
                "A withdrawal is already in progress for this fund",
                details={"withdrawal_id": str(active.withdrawal_id) if active is not None else None},
            )
        logger.info("Withdrawal %s requested: investor=%s fund=%s bps=%s", state.withdrawal_id, investor, fund, fraction_bps)
        return {"withdrawal": state.as_dict(), "initiate_transaction": unsigned.as_dict()}

    def plan(
        self,
        investor_id: str,
        fund_id: str,
        *,
        withdrawal_id: Optional[str] = None,
        dust_threshold: Optional[int] = None,
        routing_options: Optional[RoutingOptions] = None,
    ) -> dict[str, Any]:
        investor = _require_key(investor_id, "investor_id")
        fund = _require_key(fund_id, "fund_id")
        threshold = self._config.dust_threshold_base_units if dust_threshold is None else dust_threshold
        if threshold < 0:
            raise ValidationError("dust_threshold must be non-negative", details={"dust_threshold": threshold})

        state = self._active(investor, fund)
        if withdrawal_id is not None and str(state.withdrawal_id) != withdrawal_id:
            raise ConflictError(
                "Withdrawal handle does not match the active withdrawal",
                details={"withdrawal_id": withdrawal_id, "active_withdrawal_id": str(state.withdrawal_id)},
            )
        if state.status not in (WithdrawalStatus.REQUESTED, WithdrawalStatus.PLANNED):
            raise ConflictError(
                "Withdrawal can no longer be planned",
                details={"withdrawal_id": str(state.withdrawal_id), "status": state.status.value},
            )

        request = self._ledger.get_withdrawal_request(investor, fund)
        if request is None:
            raise NotFoundError(
                "Ledger withdrawal account not found; confirm the initiate transaction first",
                details={"withdrawal_id": str(state.withdrawal_id)},
            )
        if request.shares_to_withdraw != state.shares_to_burn:
            raise ConflictError(
                "Ledger withdrawal does not match the requested shares",
                details={
                    "withdrawal_id": str(state.withdrawal_id),
                    "ledger_shares": request.shares_to_withdraw,
                    "requested_shares": state.shares_to_burn,
                },
            )

        routing = routing_options or RoutingOptions()
        snapshot = self._ledger.get_fund_snapshot(fund)
        plan = self._planner.plan(snapshot, state.fraction_bps, threshold, routing)
        assembly = self._assembler.assemble(plan.executable, investor_id=investor, fund_id=fund, routing=routing)
        plan_report = plan.as_dict()
        stored_plan = {
            "items": plan_report["items"],
            "settlement_balance": plan.settlement_balance,
            "dust_threshold": threshold,
            "routing_options": routing.as_dict(),
            "executable": [bundle.asset_id for bundle in assembly.bundles],
            "assembly_failures": [failure.as_dict() for failure in assembly.failures],
        }
        planned = self._advance(state, WithdrawalStatus.PLANNED, plan=stored_plan)
        return {
            "withdrawal": planned.as_dict(),
            "plan": plan_report,
            "transactions": [bundle.as_dict() for bundle in assembly.bundles],
            "assembly_failures": stored_plan["assembly_failures"],
        }

    def confirm_swaps(self, investor_id: str, fund_id: str, tx_refs: Sequence[str]) -> dict[str, Any]:
        investor = _require_key(investor_id, "investor_id")
        fund = _require_key(fund_id, "fund_id")
        refs = tuple(dict.fromkeys(ref.strip() for ref in tx_refs if ref and ref.strip()))
        state = self._active(investor, fund)
        if state.status == WithdrawalStatus.EXECUTING and set(refs) <= set(state.swap_tx_refs):
            return {"withdrawal": state.as_dict()}
        if state.status != WithdrawalStatus.PLANNED:
            raise ConflictError(
                "Swaps can only be confirmed for a planned withdrawal",
                details={"withdrawal_id": str(state.withdrawal_id), "status": state.status.value},
            )
        executing = self._advance(state, WithdrawalStatus.EXECUTING, swap_tx_refs=refs)
        return {"withdrawal": executing.as_dict()}

    def finalize(self, investor_id: str, fund_id: str) -> dict[str, Any]:
        investor = _require_key(investor_id, "investor_id")
        fund = _require_key(fund_id, "fund_id")
        state = self._stores.states.get_active(investor, fund)
        if state is None:
            latest = self._stores.states.latest(investor, fund)
            if latest is not None:
                raise ConflictError(
                    f"Withdrawal is already {latest.status.value}",
                    details={"withdrawal_id": str(latest.withdrawal_id), "status": latest.status.value},
                )
            raise NotFoundError("No active withdrawal", details={"investor_id": investor, "fund_id": fund})
        bundle = self._finalizer.prepare(state.withdrawal_id)
        return bundle.as_dict()

    def record(
        self,
        investor_id: str,
        fund_id: str,
        amount: int,
        tx_ref: str,
        details: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        investor = _require_key(investor_id, "investor_id")
        fund = _require_key(fund_id, "fund_id")
        if not isinstance(tx_ref, str) or not tx_ref.strip():
            raise ValidationError("tx_ref is required")
        tx_ref = tx_ref.strip()
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError("amount must be a non-negative integer", details={"amount": amount})

        existing = self._stores.withdrawals.get(investor, tx_ref)
        if existing is not None:
            return self._record_ack(existing, idempotent=True)

        active = self._stores.states.get_active(investor, fund)
        if active is not None and active.status == WithdrawalStatus.FINALIZING:
            finalized = self._finalizer.confirm(
                active.withdrawal_id,
                tx_ref,
                require_confirmed=self._config.require_confirmed_record,
            )
        else:
            latest = self._stores.states.latest(investor, fund)
            if latest is None or latest.status != WithdrawalStatus.FINALIZED or latest.finalize_tx_ref != tx_ref:
                raise ConflictError(
                    "No finalizing withdrawal matches this transaction",
                    details={"investor_id": investor, "fund_id": fund, "tx_ref": tx_ref},
                )
            finalized = latest

        merged_details = dict(details or {})
        merged_details.update(
            {
                "withdrawal_id": str(finalized.withdrawal_id),
                "fraction_bps": finalized.fraction_bps,
                "percent_requested": finalized.fraction_bps / 100,
                "swap_tx_refs": list(finalized.swap_tx_refs),
            }
        )
        entry = WithdrawalHistoryEntry(
            investor_id=investor,
            fund_id=fund,
            tx_ref=tx_ref,
            amount=amount,
            recorded_at=self._clock.now_utc(),
            details=merged_details,
        )
        if not self._stores.withdrawals.insert_if_absent(entry):
            stored = self._stores.withdrawals.get(investor, tx_ref)
            return self._record_ack(stored if stored is not None else entry, idempotent=True)
        logger.info("Recorded withdrawal %s for investor %s", tx_ref, investor)
        return self._record_ack(entry, idempotent=False)

    @staticmethod
    def _record_ack(entry: WithdrawalHistoryEntry, *, idempotent: bool) -> dict[str, Any]:
        return {
            "investor_id": entry.investor_id,
            "fund_id": entry.fund_id,
            "tx_ref": entry.tx_ref,
            "amount": entry.amount,
            "recorded_at": utc_iso(entry.recorded_at),
            "withdrawal_id": entry.details.get("withdrawal_id"),
            "idempotent": idempotent,
        }

    def fail(self, investor_id: str, fund_id: str, reason: str) -> dict[str, Any]:
        investor = _require_key(investor_id, "investor_id")
        fund = _require_key(fund_id, "fund_id")
        state = self._active(investor, fund)
        failed = self._advance(state, WithdrawalStatus.FAILED, failure_reason=reason.strip() or "failed")
        logger.info("Withdrawal %s failed: %s", failed.withdrawal_id, failed.failure_reason)
        return {"withdrawal": failed.as_dict()}

    def expire_stale(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Fail every active withdrawal idle for longer than the configured TTL."""
        at = now or self._clock.now_utc()
        cutoff = at - timedelta(seconds=self._config.withdrawal_ttl_seconds)
        expired: list[str] = []
        for state in self._stores.states.list_stale(cutoff):
            failed = transitioned(state, WithdrawalStatus.FAILED, at, failure_reason=EXPIRED_REASON)
            if self._stores.states.compare_and_set(state.status, failed):
                expired.append(str(state.withdrawal_id))
        if expired:
            logger.info("Expired %s stale withdrawals", len(expired))
        return {"expired": expired}

    def unwrap(self, fund_id: str, payer: str) -> dict[str, Any]:
        fund = _require_key(fund_id, "fund_id")
        payer_key = _require_key(payer, "payer")
        return self._finalizer.build_unwrap(fund, payer_key).as_dict()

    def preview(self, investor_id: str, fund_id: str, percent: Any) -> dict[str, Any]:
        investor = _require_key(investor_id, "investor_id")
        fund = _require_key(fund_id, "fund_id")
        fraction_bps = percent_to_bps(percent)
        snapshot = self._ledger.get_fund_snapshot(fund)
        position = self._ledger.get_investor_position(investor, fund)
        if position is None or position.shares <= 0:
            raise NotFoundError("Investor position not found", details={"investor_id": investor, "fund_id": fund})
        fund_value = value_fund(snapshot, self._oracle)
        estimate = estimate_withdrawal_fees(
            fund_value=fund_value,
            fund_total_shares=snapshot.total_shares,
            position_shares=position.shares,
            position_deposited=position.total_deposited,
            fraction_bps=fraction_bps,
            performance_fee_bps=snapshot.performance_fee_bps,
            platform_fee_bps=self._config.platform_fee_bps,
            treasury_perf_share_bps=self._config.treasury_perf_share_bps,
        )
        payload = estimate.as_dict()
        payload["fund_value"] = fund_value
        return payload

    def pay(
        self,
        fund_id: str,
        add_value: Any,
        holdings: Iterable[tuple[str, int]],
        *,
        performance_fee: Any = None,
        total_shares: Optional[int] = None,
    ) -> dict[str, Any]:
        fund = _require_key(fund_id, "fund_id")
        try:
            value = Decimal(str(add_value))
        except InvalidOperation as exc:
            raise ValidationError("add_value must be numeric", details={"add_value": str(add_value)}) from exc
        if not value.is_finite():
            raise ValidationError("add_value must be finite", details={"add_value": str(add_value)})
        self._rate_limiter.check(f"pay:{fund}")

        snapshot = self._ledger.get_fund_snapshot(fund)
        try:
            wallets = [(_require_key(wallet, "investor wallet"), int(shares)) for wallet, shares in holdings]
        except (TypeError, ValueError) as exc:
            raise ValidationError("Malformed holdings", details={"error": str(exc)}) from exc
        plan = self._payments.plan_payout(
            fund_id=fund,
            manager=snapshot.manager,
            add_value=value,
            performance_fee=snapshot.performance_fee_bps if performance_fee is None else performance_fee,
            holdings=wallets,
            total_shares=total_shares,
        )
        transactions = self._payments.build_batch_transactions(plan, snapshot.manager)
        return {"payout": plan.as_dict(), "transactions": [item.as_dict() for item in transactions]}

    def record_payment(
        self,
        fund_id: str,
        tx_ref: str,
        recipients: Iterable[Mapping[str, Any]],
        *,
        total_value: Optional[int] = None,
    ) -> dict[str, Any]:
        fund = _require_key(fund_id, "fund_id")
        try:
            parsed = [
                PaymentRecipient(
                    wallet=str(item["wallet"]),
                    amount=int(item["amount"]),
                    role=str(item.get("role", "INVESTOR")),
                )
                for item in recipients
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("Malformed recipients") from exc
        ack = self._payments.record_payment(
            fund_id=fund,
            tx_ref=tx_ref.strip() if isinstance(tx_ref, str) else "",
            recipients=parsed,
            total_value=total_value,
            require_confirmed=self._config.require_confirmed_record,
        )
        return ack.as_dict()

    def withdrawal_history(self, investor_id: str) -> dict[str, Any]:
        investor = _require_key(investor_id, "investor_id")
        return {"entries": [entry.as_dict() for entry in self._stores.withdrawals.list_for_investor(investor)]}

    def payment_history(self, fund_id: str) -> dict[str, Any]:
        fund = _require_key(fund_id, "fund_id")
        return {"records": [record.as_dict() for record in self._stores.payments.list_for_fund(fund)]}


def build_stores(db: Optional[SettlementDatabase] = None) -> OrchestratorStores:
    """SQL-backed stores when ``db`` is given, otherwise process-local stores."""
    if db is None:
        return OrchestratorStores(
            states=InMemoryWithdrawalStateStore(),
            withdrawals=InMemoryWithdrawalHistoryStore(),
            payments=InMemoryPaymentHistoryStore(),
        )
    return OrchestratorStores(
        states=SqlWithdrawalStateStore(db),
        withdrawals=SqlWithdrawalHistoryStore(db),
        payments=SqlPaymentHistoryStore(db),
    )


def build_orchestrator(
    config: SettlementConfig,
    *,
    ledger: LedgerClient,
    routing: RoutingService,
    oracle: PriceOracle,
    db: Optional[SettlementDatabase] = None,
    clock: SettlementClock | None = None,
    rate_limit_allowlist: Iterable[str] = (),
) -> WithdrawalOrchestrator:
    clock = clock or SettlementClock()
    quote_client = RouteQuoteClient(
        routing,
        default_slippage_bps=config.quote_slippage_bps,
        timeout_seconds=config.quote_timeout_seconds,
    )
    rate_limiter = KeyedRateLimiter(
        InMemorySlidingWindowStore(),
        max_requests=config.rate_limit_max_requests,
        window_seconds=config.rate_limit_window_seconds,
        allowlist=rate_limit_allowlist,
        enabled=config.rate_limit_enabled,
        clock=clock,
    )
    return WithdrawalOrchestrator(
        config=config,
        ledger=ledger,
        quote_client=quote_client,
        stores=build_stores(db),
        oracle=StalenessGuardedOracle(oracle, max_staleness_seconds=config.price_max_staleness_seconds, clock=clock),
        rate_limiter=rate_limiter,
        clock=clock,
    )
