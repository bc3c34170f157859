"""Fee splits, proportional payouts, batched transfers and idempotent payment recording."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import logging
from typing import Any, Iterable, Optional, Sequence

from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from backend.db.enums import RecipientRole
from settlement.common import BPS_DENOMINATOR, SettlementClock, chunked, to_base_units, utc_iso
from settlement.errors import ConflictError, ValidationError
from settlement.history_store import PaymentHistoryStore, PaymentRecipient, PaymentRecord
from settlement.ledger_contract import LedgerClient
from settlement.program_instructions import as_pubkey, compute_budget_instructions
from settlement.transaction_assembler import PACKET_DATA_SIZE, UnsignedTransaction, build_unsigned


logger = logging.getLogger(__name__)

_BPS = Decimal(BPS_DENOMINATOR)


def normalize_performance_fee_bps(value: Decimal | int | str) -> int:
    """Accept percent (<= 100) or basis points (> 100); clamp into [0, 10000]."""
    try:
        raw = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError("performance fee must be numeric", details={"performance_fee": str(value)}) from exc
    if raw.is_nan():
        raise ValidationError("performance fee is not a number", details={"performance_fee": str(value)})
    bps = raw if raw > 100 else raw * 100
    clamped = min(max(bps, Decimal(0)), _BPS)
    return int(clamped)


@dataclass(frozen=True)
class FeeSplit:
    """Distribution of ``add_value`` in settlement units."""

    add_value: Decimal
    platform_fee: Decimal
    after_platform: Decimal
    performance_fee: Decimal
    treasury_perf_share: Decimal
    manager_perf_share: Decimal
    investors_pool: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "add_value": str(self.add_value),
            "platform_fee": str(self.platform_fee),
            "after_platform": str(self.after_platform),
            "performance_fee": str(self.performance_fee),
            "treasury_perf_share": str(self.treasury_perf_share),
            "manager_perf_share": str(self.manager_perf_share),
            "investors_pool": str(self.investors_pool),
        }


def compute_fee_split(
    add_value: Decimal,
    performance_fee_bps: int,
    *,
    platform_fee_bps: int = 100,
    treasury_perf_share_bps: int = 2000,
) -> FeeSplit:
    if add_value <= 0:
        raise ValidationError("add_value must be positive", details={"add_value": str(add_value)})
    for name, bps in (
        ("performance_fee_bps", performance_fee_bps),
        ("platform_fee_bps", platform_fee_bps),
        ("treasury_perf_share_bps", treasury_perf_share_bps),
    ):
        if bps < 0 or bps > BPS_DENOMINATOR:
            raise ValidationError(f"{name} must be within [0, 10000]", details={name: bps})

    platform_fee = add_value * Decimal(platform_fee_bps) / _BPS
    after_platform = add_value - platform_fee
    performance_fee = after_platform * Decimal(performance_fee_bps) / _BPS
    treasury_perf_share = performance_fee * Decimal(treasury_perf_share_bps) / _BPS
    manager_perf_share = performance_fee - treasury_perf_share
    investors_pool = after_platform - performance_fee
    return FeeSplit(
        add_value=add_value,
        platform_fee=platform_fee,
        after_platform=after_platform,
        performance_fee=performance_fee,
        treasury_perf_share=treasury_perf_share,
        manager_perf_share=manager_perf_share,
        investors_pool=investors_pool,
    )


def merge_holdings(holdings: Iterable[tuple[str, int]]) -> list[tuple[str, int]]:
    """Merge duplicate investor wallets (summing shares) and drop zero holdings, first-seen order."""
    merged: dict[str, int] = {}
    for wallet, shares in holdings:
        if shares < 0:
            raise ValidationError("shares must be non-negative", details={"wallet": wallet, "shares": shares})
        merged[wallet] = merged.get(wallet, 0) + shares
    return [(wallet, shares) for wallet, shares in merged.items() if shares > 0]


@dataclass(frozen=True)
class PayoutPlan:
    fund_id: str
    split: FeeSplit
    performance_fee_bps: int
    total_value: int
    recipients: tuple[PaymentRecipient, ...]
    batches: tuple[tuple[PaymentRecipient, ...], ...]

    @property
    def distributed(self) -> int:
        return sum(item.amount for item in self.recipients)

    def as_dict(self) -> dict[str, Any]:
        return {
            "fund_id": self.fund_id,
            "split": self.split.as_dict(),
            "performance_fee_bps": self.performance_fee_bps,
            "total_value": self.total_value,
            "distributed": self.distributed,
            "recipients": [
                {"wallet": item.wallet, "amount": item.amount, "role": item.role} for item in self.recipients
            ],
            "batches": [[item.wallet for item in batch] for batch in self.batches],
        }


@dataclass(frozen=True)
class PaymentAck:
    fund_id: str
    tx_ref: str
    total_value: int
    recipient_count: int
    recorded_at: str
    idempotent: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "fund_id": self.fund_id,
            "tx_ref": self.tx_ref,
            "total_value": self.total_value,
            "recipient_count": self.recipient_count,
            "recorded_at": self.recorded_at,
            "idempotent": self.idempotent,
        }


def _ack(record: PaymentRecord, *, idempotent: bool) -> PaymentAck:
    return PaymentAck(
        fund_id=record.fund_id,
        tx_ref=record.tx_ref,
        total_value=record.total_value,
        recipient_count=len(record.recipients),
        recorded_at=utc_iso(record.recorded_at),
        idempotent=idempotent,
    )


def within_rounding_tolerance(total_value: int, recipients: Sequence[PaymentRecipient]) -> bool:
    """One base unit of rounding slack per recipient."""
    return abs(total_value - sum(item.amount for item in recipients)) <= len(recipients)


class PaymentLedger:
    """Operator-triggered proportional payouts for a fund."""

    def __init__(
        self,
        *,
        store: PaymentHistoryStore,
        ledger: LedgerClient,
        treasury_wallet: str,
        settlement_decimals: int,
        batch_size: int = 20,
        platform_fee_bps: int = 100,
        treasury_perf_share_bps: int = 2000,
        compute_units: int = 400_000,
        priority_microlamports: int = 20_000,
        clock: SettlementClock | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._store = store
        self._ledger = ledger
        self._treasury_wallet = treasury_wallet
        self._settlement_decimals = settlement_decimals
        self._batch_size = batch_size
        self._platform_fee_bps = platform_fee_bps
        self._treasury_perf_share_bps = treasury_perf_share_bps
        self._compute_units = compute_units
        self._priority_microlamports = priority_microlamports
        self._clock = clock or SettlementClock()

    def plan_payout(
        self,
        *,
        fund_id: str,
        manager: str,
        add_value: Decimal,
        performance_fee: Decimal | int | str,
        holdings: Iterable[tuple[str, int]],
        total_shares: Optional[int] = None,
    ) -> PayoutPlan:
        """Split ``add_value`` (settlement units) and chunk recipients into transfer batches."""
        perf_bps = normalize_performance_fee_bps(performance_fee)
        split = compute_fee_split(
            add_value,
            perf_bps,
            platform_fee_bps=self._platform_fee_bps,
            treasury_perf_share_bps=self._treasury_perf_share_bps,
        )
        investors = merge_holdings(holdings)
        if not investors:
            raise ValidationError("No investors with shares to pay", details={"fund_id": fund_id})
        held = sum(shares for _, shares in investors)
        denominator = held if total_shares is None else total_shares
        if denominator < held:
            raise ValidationError(
                "total_shares is smaller than the sum of investor shares",
                details={"total_shares": denominator, "held_shares": held},
            )

        decimals = self._settlement_decimals
        recipients: list[PaymentRecipient] = []
        for wallet, shares in investors:
            amount = to_base_units(split.investors_pool * Decimal(shares) / Decimal(denominator), decimals)
            if amount > 0:
                recipients.append(PaymentRecipient(wallet=wallet, amount=amount, role=RecipientRole.INVESTOR.value))
        manager_amount = to_base_units(split.manager_perf_share, decimals)
        if manager_amount > 0:
            recipients.append(PaymentRecipient(wallet=manager, amount=manager_amount, role=RecipientRole.MANAGER.value))
        treasury_amount = to_base_units(split.platform_fee + split.treasury_perf_share, decimals)
        if treasury_amount > 0:
            recipients.append(
                PaymentRecipient(wallet=self._treasury_wallet, amount=treasury_amount, role=RecipientRole.TREASURY.value)
            )

        batches = tuple(tuple(batch) for batch in chunked(recipients, self._batch_size))
        plan = PayoutPlan(
            fund_id=fund_id,
            split=split,
            performance_fee_bps=perf_bps,
            total_value=to_base_units(add_value, decimals),
            recipients=tuple(recipients),
            batches=batches,
        )
        logger.info(
            "Planned payout for fund %s: %s recipients in %s batches",
            fund_id,
            len(plan.recipients),
            len(plan.batches),
        )
        return plan

    def build_batch_transactions(self, plan: PayoutPlan, manager: str) -> list[UnsignedTransaction]:
        """One manager-signed transfer transaction per batch."""
        manager_key = as_pubkey(manager)
        recency = self._ledger.latest_recency_token()
        transactions: list[UnsignedTransaction] = []
        for index, batch in enumerate(plan.batches):
            instructions = compute_budget_instructions(self._compute_units, self._priority_microlamports)
            for recipient in batch:
                instructions.append(
                    transfer(
                        TransferParams(
                            from_pubkey=manager_key,
                            to_pubkey=Pubkey.from_string(recipient.wallet),
                            lamports=recipient.amount,
                        )
                    )
                )
            _, unsigned = build_unsigned(manager_key, instructions, recency)
            if unsigned.size_bytes > PACKET_DATA_SIZE:
                raise ValidationError(
                    "Payout batch exceeds the transaction size limit; lower PAYOUT_BATCH_SIZE",
                    details={"batch": index, "size_bytes": unsigned.size_bytes},
                )
            transactions.append(unsigned)
        return transactions

    def record_payment(
        self,
        *,
        fund_id: str,
        tx_ref: str,
        recipients: Sequence[PaymentRecipient],
        total_value: Optional[int] = None,
        require_confirmed: bool = True,
    ) -> PaymentAck:
        """Append a confirmed batch; a repeated ``tx_ref`` returns the original acknowledgement."""
        if not tx_ref.strip():
            raise ValidationError("tx_ref is required")
        if not recipients:
            raise ValidationError("recipients must not be empty", details={"tx_ref": tx_ref})
        for recipient in recipients:
            if recipient.amount < 0:
                raise ValidationError("recipient amount must be non-negative", details={"wallet": recipient.wallet})
            try:
                as_pubkey(recipient.wallet)
            except ValueError as exc:
                raise ValidationError("Invalid recipient wallet", details={"wallet": recipient.wallet}) from exc

        existing = self._store.get(fund_id, tx_ref)
        if existing is not None:
            logger.info("Payment %s for fund %s already recorded", tx_ref, fund_id)
            return _ack(existing, idempotent=True)

        total = sum(item.amount for item in recipients) if total_value is None else total_value
        if not within_rounding_tolerance(total, recipients):
            raise ValidationError(
                "Recipient amounts do not add up to total_value",
                details={"total_value": total, "sum": sum(item.amount for item in recipients)},
            )
        if require_confirmed and not self._ledger.is_confirmed(tx_ref):
            raise ConflictError("Payment transaction is not confirmed yet", details={"tx_ref": tx_ref})

        record = PaymentRecord(
            fund_id=fund_id,
            tx_ref=tx_ref,
            total_value=total,
            recipients=tuple(recipients),
            recorded_at=self._clock.now_utc(),
        )
        if not self._store.insert_if_absent(record):
            stored = self._store.get(fund_id, tx_ref)
            return _ack(stored if stored is not None else record, idempotent=True)
        logger.info("Recorded payment %s for fund %s (%s recipients)", tx_ref, fund_id, len(recipients))
        return _ack(record, idempotent=False)


@dataclass(frozen=True)
class WithdrawalFeePreview:
    """Estimated settlement of a withdrawal, all values in settlement base units."""

    fraction_bps: int
    shares_to_burn: int
    withdrawal_value: int
    cost_basis: int
    profit: int
    performance_fee: int
    treasury_perf_share: int
    manager_perf_share: int
    platform_withdrawal_fee: int
    net_amount: int

    def as_dict(self) -> dict[str, int]:
        return {
            "fraction_bps": self.fraction_bps,
            "shares_to_burn": self.shares_to_burn,
            "withdrawal_value": self.withdrawal_value,
            "cost_basis": self.cost_basis,
            "profit": self.profit,
            "performance_fee": self.performance_fee,
            "treasury_perf_share": self.treasury_perf_share,
            "manager_perf_share": self.manager_perf_share,
            "platform_withdrawal_fee": self.platform_withdrawal_fee,
            "net_amount": self.net_amount,
        }


def estimate_withdrawal_fees(
    *,
    fund_value: int,
    fund_total_shares: int,
    position_shares: int,
    position_deposited: int,
    fraction_bps: int,
    performance_fee_bps: int,
    platform_fee_bps: int = 100,
    treasury_perf_share_bps: int = 2000,
) -> WithdrawalFeePreview:
    """Mirror of the ledger's finalize arithmetic: fees are charged on profit over the proportional deposit."""
    if fund_total_shares <= 0 or position_shares <= 0:
        raise ValidationError("Position holds no shares")
    shares_to_burn = position_shares * fraction_bps // BPS_DENOMINATOR
    withdrawal_value = fund_value * shares_to_burn // fund_total_shares
    cost_basis = position_deposited * shares_to_burn // position_shares
    profit = max(0, withdrawal_value - cost_basis)
    performance_fee = profit * performance_fee_bps // BPS_DENOMINATOR
    treasury_perf_share = performance_fee * treasury_perf_share_bps // BPS_DENOMINATOR
    platform_withdrawal_fee = withdrawal_value * platform_fee_bps // BPS_DENOMINATOR
    return WithdrawalFeePreview(
        fraction_bps=fraction_bps,
        shares_to_burn=shares_to_burn,
        withdrawal_value=withdrawal_value,
        cost_basis=cost_basis,
        profit=profit,
        performance_fee=performance_fee,
        treasury_perf_share=treasury_perf_share,
        manager_perf_share=performance_fee - treasury_perf_share,
        platform_withdrawal_fee=platform_withdrawal_fee,
        net_amount=max(0, withdrawal_value - performance_fee - platform_withdrawal_fee),
    )
