"""Finalize and unwrap transaction preparation with guarded state transitions."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Optional
import uuid

from backend.db.enums import WithdrawalStatus
from settlement.common import SettlementClock
from settlement.errors import ConflictError, LedgerError, NotFoundError
from settlement.ledger_contract import LedgerClient
from settlement.program_instructions import (
    associated_token_address,
    compute_budget_instructions,
    finalize_withdrawal,
    unwrap_wsol_fund,
)
from settlement.state_store import WithdrawalStateStore
from settlement.transaction_assembler import UnsignedTransaction, build_unsigned
from settlement.withdrawal_state import WithdrawalState, transitioned


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinalizeBundle:
    withdrawal_id: uuid.UUID
    transaction: UnsignedTransaction
    units_consumed: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        payload = self.transaction.as_dict()
        payload["withdrawal_id"] = str(self.withdrawal_id)
        payload["units_consumed"] = self.units_consumed
        return payload


@dataclass(frozen=True)
class UnwrapBundle:
    fund_id: str
    wrapped_balance: int
    transaction: Optional[UnsignedTransaction]

    def as_dict(self) -> dict[str, Any]:
        return {
            "fund_id": self.fund_id,
            "wrapped_balance": self.wrapped_balance,
            "transaction": None if self.transaction is None else self.transaction.as_dict(),
        }


class FinalizationCoordinator:
    """Owns the Executing -> Finalizing -> Finalized leg of a withdrawal."""

    def __init__(
        self,
        *,
        store: WithdrawalStateStore,
        ledger: LedgerClient,
        program_id: str,
        treasury_wallet: str,
        wrapped_native_mint: str,
        finalize_compute_units: int,
        unwrap_compute_units: int,
        priority_microlamports: int,
        simulate: bool = True,
        clock: SettlementClock | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._program_id = program_id
        self._treasury_wallet = treasury_wallet
        self._wrapped_native_mint = wrapped_native_mint
        self._finalize_compute_units = finalize_compute_units
        self._unwrap_compute_units = unwrap_compute_units
        self._priority_microlamports = priority_microlamports
        self._simulate = simulate
        self._clock = clock or SettlementClock()

    def _reload(self, withdrawal_id: uuid.UUID) -> WithdrawalState:
        current = self._store.get(withdrawal_id)
        if current is None:
            raise NotFoundError("Withdrawal not found", details={"withdrawal_id": str(withdrawal_id)})
        return current

    @staticmethod
    def _finalizable(state: WithdrawalState) -> bool:
        if state.status == WithdrawalStatus.EXECUTING:
            return True
        if state.status == WithdrawalStatus.PLANNED:
            plan = state.plan or {}
            return len(plan.get("executable", ())) == 0
        return False

    def prepare(self, withdrawal_id: uuid.UUID) -> FinalizeBundle:
        current = self._reload(withdrawal_id)
        # A FINALIZING withdrawal gets a fresh bundle; its first one may have expired unsubmitted.
        rebuilding = current.status == WithdrawalStatus.FINALIZING
        if current.status in (WithdrawalStatus.FINALIZED, WithdrawalStatus.FAILED):
            raise ConflictError(
                f"Withdrawal is already {current.status.value}",
                details={"withdrawal_id": str(withdrawal_id), "status": current.status.value},
            )
        if not rebuilding and not self._finalizable(current):
            raise ConflictError(
                "Withdrawal is not ready to finalize",
                details={"withdrawal_id": str(withdrawal_id), "status": current.status.value},
            )

        snapshot = self._ledger.get_fund_snapshot(current.fund_id)
        instructions = compute_budget_instructions(self._finalize_compute_units, self._priority_microlamports)
        instructions.append(
            finalize_withdrawal(
                self._program_id,
                fund=current.fund_id,
                investor=current.investor_id,
                shares_mint=snapshot.shares_mint,
                manager=snapshot.manager,
                treasury=self._treasury_wallet,
            )
        )
        recency = self._ledger.latest_recency_token()
        transaction, unsigned = build_unsigned(current.investor_id, instructions, recency)

        units_consumed: Optional[int] = None
        if self._simulate:
            result = self._ledger.simulate(transaction)
            if not result.ok:
                if not rebuilding:
                    reason = f"finalize simulation rejected: {result.error}"
                    failed = transitioned(current, WithdrawalStatus.FAILED, self._clock.now_utc(), failure_reason=reason)
                    if not self._store.compare_and_set(current.status, failed):
                        logger.warning("Withdrawal %s changed while recording simulation failure", withdrawal_id)
                logger.warning("Finalize simulation rejected for %s: %s", withdrawal_id, result.error)
                raise LedgerError(
                    "Finalize transaction rejected in simulation",
                    logs=result.logs,
                    ledger_error=result.error,
                    details={"withdrawal_id": str(withdrawal_id)},
                )
            units_consumed = result.units_consumed

        if rebuilding:
            logger.info("Withdrawal %s already FINALIZING; issued a fresh finalize bundle", withdrawal_id)
            return FinalizeBundle(withdrawal_id=withdrawal_id, transaction=unsigned, units_consumed=units_consumed)

        finalizing = transitioned(current, WithdrawalStatus.FINALIZING, self._clock.now_utc())
        if not self._store.compare_and_set(current.status, finalizing):
            raise ConflictError(
                "Withdrawal changed concurrently",
                details={"withdrawal_id": str(withdrawal_id)},
            )
        logger.info("Withdrawal %s moved to FINALIZING", withdrawal_id)
        return FinalizeBundle(withdrawal_id=withdrawal_id, transaction=unsigned, units_consumed=units_consumed)

    def confirm(self, withdrawal_id: uuid.UUID, tx_ref: str, *, require_confirmed: bool = True) -> WithdrawalState:
        """Mark ``Finalized`` once ``tx_ref`` is confirmed; repeating with the same ``tx_ref`` is a no-op."""
        current = self._reload(withdrawal_id)
        if current.status == WithdrawalStatus.FINALIZED:
            if current.finalize_tx_ref == tx_ref:
                return current
            raise ConflictError(
                "Withdrawal was finalized by a different transaction",
                details={"withdrawal_id": str(withdrawal_id), "finalize_tx_ref": current.finalize_tx_ref},
            )
        if current.status != WithdrawalStatus.FINALIZING:
            raise ConflictError(
                "Withdrawal is not finalizing",
                details={"withdrawal_id": str(withdrawal_id), "status": current.status.value},
            )
        if require_confirmed and not self._ledger.is_confirmed(tx_ref):
            raise ConflictError(
                "Finalize transaction is not confirmed yet",
                details={"withdrawal_id": str(withdrawal_id), "tx_ref": tx_ref},
            )

        finalized = transitioned(current, WithdrawalStatus.FINALIZED, self._clock.now_utc(), finalize_tx_ref=tx_ref)
        if self._store.compare_and_set(WithdrawalStatus.FINALIZING, finalized):
            logger.info("Withdrawal %s finalized by %s", withdrawal_id, tx_ref)
            return finalized

        latest = self._reload(withdrawal_id)
        if latest.status == WithdrawalStatus.FINALIZED and latest.finalize_tx_ref == tx_ref:
            return latest
        raise ConflictError("Withdrawal changed concurrently", details={"withdrawal_id": str(withdrawal_id)})

    def build_unwrap(self, fund_id: str, payer: str) -> UnwrapBundle:
        """Return an unwrap transaction, or none when the fund holds no wrapped-native balance."""
        wrapped_account = associated_token_address(fund_id, self._wrapped_native_mint)
        balance = self._ledger.get_token_balance(str(wrapped_account))
        if balance <= 0:
            return UnwrapBundle(fund_id=fund_id, wrapped_balance=0, transaction=None)

        instructions = compute_budget_instructions(self._unwrap_compute_units, self._priority_microlamports)
        instructions.append(
            unwrap_wsol_fund(self._program_id, fund=fund_id, wrapped_native_mint=self._wrapped_native_mint)
        )
        _, unsigned = build_unsigned(payer, instructions, self._ledger.latest_recency_token())
        return UnwrapBundle(fund_id=fund_id, wrapped_balance=balance, transaction=unsigned)
