"""Typed error taxonomy for the withdrawal and payout orchestration surface."""

from __future__ import annotations

from typing import Any, Mapping, Optional


BAD_INPUT = "bad-input"
NOT_FOUND = "not-found"
CONFLICT = "conflict"
UPSTREAM_UNAVAILABLE = "upstream-unavailable"
RATE_LIMITED = "rate-limited"
INTERNAL = "internal"

STATUS_BY_CATEGORY: dict[str, int] = {
    BAD_INPUT: 400,
    NOT_FOUND: 404,
    CONFLICT: 409,
    RATE_LIMITED: 429,
    INTERNAL: 500,
    UPSTREAM_UNAVAILABLE: 502,
}


class SettlementError(RuntimeError):
    """Base class for orchestrator errors that map onto a response category."""

    category = INTERNAL

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    @property
    def status_code(self) -> int:
        return STATUS_BY_CATEGORY[self.category]


class ValidationError(SettlementError):
    """Malformed identifiers or out-of-range inputs; raised before any side effect."""

    category = BAD_INPUT


class NotFoundError(SettlementError):
    """Unknown fund, position, or withdrawal."""

    category = NOT_FOUND


class ConflictError(SettlementError):
    """An in-flight withdrawal exists or a state transition lost a race."""

    category = CONFLICT


class UpstreamError(SettlementError):
    """Routing, oracle, or RPC collaborator failed or returned an invalid payload."""

    category = UPSTREAM_UNAVAILABLE


class NoRouteError(UpstreamError):
    """No swap route exists for an asset after the direct-only fallback."""

    def __init__(self, asset_in: str, asset_out: str, amount: int, *, reason: str = "") -> None:
        super().__init__(
            f"No route for {amount} {asset_in} -> {asset_out}.",
            details={"asset_in": asset_in, "asset_out": asset_out, "amount": amount, "reason": reason},
        )
        self.asset_in = asset_in
        self.asset_out = asset_out
        self.amount = amount


class LedgerError(SettlementError):
    """The ledger rejected (or would reject) a transaction; never retried automatically."""

    category = UPSTREAM_UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        logs: tuple[str, ...] = (),
        ledger_error: Any = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        merged["logs"] = list(logs)
        if ledger_error is not None:
            merged["ledger_error"] = str(ledger_error)
        super().__init__(message, details=merged)
        self.logs = logs
        self.ledger_error = ledger_error


class RateLimitedError(SettlementError):
    """Caller exceeded the sliding-window request budget for its key."""

    category = RATE_LIMITED

    def __init__(self, key: str, retry_after_seconds: int) -> None:
        super().__init__(
            "Too many requests",
            details={"key": key, "retry_after": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds
