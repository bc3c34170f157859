"""Withdrawal state record and its lifecycle transitions."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Optional
import uuid

from backend.db.enums import WithdrawalStatus
from settlement.common import utc_iso


TERMINAL_STATUSES = frozenset({WithdrawalStatus.FINALIZED, WithdrawalStatus.FAILED})
ACTIVE_STATUSES = frozenset(status for status in WithdrawalStatus if status not in TERMINAL_STATUSES)

ALLOWED_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.REQUESTED: frozenset({WithdrawalStatus.PLANNED, WithdrawalStatus.FAILED}),
    WithdrawalStatus.PLANNED: frozenset(
        {
            WithdrawalStatus.PLANNED,
            WithdrawalStatus.EXECUTING,
            WithdrawalStatus.FINALIZING,
            WithdrawalStatus.FAILED,
        }
    ),
    WithdrawalStatus.EXECUTING: frozenset({WithdrawalStatus.FINALIZING, WithdrawalStatus.FAILED}),
    WithdrawalStatus.FINALIZING: frozenset({WithdrawalStatus.FINALIZED, WithdrawalStatus.FAILED}),
    WithdrawalStatus.FINALIZED: frozenset(),
    WithdrawalStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class WithdrawalState:
    """Persisted state of one investor withdrawal from one fund."""

    withdrawal_id: uuid.UUID
    investor_id: str
    fund_id: str
    fraction_bps: int
    status: WithdrawalStatus
    created_at: datetime
    updated_at: datetime
    shares_to_burn: int = 0
    plan: Optional[Mapping[str, Any]] = None
    finalize_tx_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    swap_tx_refs: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def as_dict(self) -> dict[str, Any]:
        return {
            "withdrawal_id": str(self.withdrawal_id),
            "investor_id": self.investor_id,
            "fund_id": self.fund_id,
            "fraction_bps": self.fraction_bps,
            "status": self.status.value,
            "created_at": utc_iso(self.created_at),
            "updated_at": utc_iso(self.updated_at),
            "shares_to_burn": self.shares_to_burn,
            "plan": dict(self.plan) if self.plan is not None else None,
            "finalize_tx_ref": self.finalize_tx_ref,
            "failure_reason": self.failure_reason,
            "swap_tx_refs": list(self.swap_tx_refs),
        }


def can_transition(current: WithdrawalStatus, target: WithdrawalStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transitioned(state: WithdrawalState, target: WithdrawalStatus, at: datetime, **changes: Any) -> WithdrawalState:
    """Return ``state`` moved to ``target``; raises ValueError for a forbidden move."""
    if not can_transition(state.status, target):
        raise ValueError(f"illegal withdrawal transition {state.status.value} -> {target.value}")
    return replace(state, status=target, updated_at=at, **changes)
