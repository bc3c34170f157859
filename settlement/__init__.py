"""Withdrawal liquidation orchestration and fund payout settlement package."""

from settlement.errors import (
    ConflictError,
    LedgerError,
    NoRouteError,
    NotFoundError,
    RateLimitedError,
    SettlementError,
    UpstreamError,
    ValidationError,
)
from settlement.finalization import FinalizationCoordinator, FinalizeBundle, UnwrapBundle
from settlement.liquidation_planner import LiquidationPlan, LiquidationPlanItem, LiquidationPlanner
from settlement.payment_ledger import PaymentLedger, PayoutPlan, compute_fee_split, estimate_withdrawal_fees
from settlement.route_quote_client import RouteQuoteClient
from settlement.service import WithdrawalOrchestrator, build_orchestrator, respond
from settlement.settlement_config import SettlementConfig, load_settlement_config
from settlement.transaction_assembler import AssemblyResult, TransactionAssembler, TransactionBundle
from settlement.withdrawal_state import WithdrawalState, transitioned

__all__ = [
    "AssemblyResult",
    "ConflictError",
    "FinalizationCoordinator",
    "FinalizeBundle",
    "LedgerError",
    "LiquidationPlan",
    "LiquidationPlanItem",
    "LiquidationPlanner",
    "NoRouteError",
    "NotFoundError",
    "PaymentLedger",
    "PayoutPlan",
    "RateLimitedError",
    "RouteQuoteClient",
    "SettlementConfig",
    "SettlementError",
    "TransactionAssembler",
    "TransactionBundle",
    "UnwrapBundle",
    "UpstreamError",
    "ValidationError",
    "WithdrawalOrchestrator",
    "WithdrawalState",
    "build_orchestrator",
    "compute_fee_split",
    "estimate_withdrawal_fees",
    "load_settlement_config",
    "respond",
    "transitioned",
]
