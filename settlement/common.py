"""Shared deterministic helpers for withdrawal and payout orchestration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from hashlib import sha256
from typing import Any, Iterable, Sequence, TypeVar


BPS_DENOMINATOR = 10_000

T = TypeVar("T")


@dataclass(frozen=True)
class SettlementClock:
    """Injectable UTC clock for deterministic testing."""

    def now_utc(self) -> datetime:
        """Return current UTC timestamp."""
        return datetime.now(tz=timezone.utc)


def utc_iso(ts: datetime) -> str:
    """Normalize timestamp to UTC RFC3339 string."""
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_token(value: Any) -> str:
    """Serialize primitive values deterministically for hashing."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value != 0 else "0"
    if isinstance(value, datetime):
        return utc_iso(value)
    return str(value)


def stable_hash(tokens: Iterable[Any]) -> str:
    """Compute a stable SHA256 hash over canonical token serialization."""
    preimage = "|".join(normalize_token(token) for token in tokens)
    return sha256(preimage.encode("utf-8")).hexdigest()


def floor_fraction_bps(amount: int, fraction_bps: int) -> int:
    """Return floor(amount * fraction_bps / 10000) using integer arithmetic."""
    if amount < 0:
        raise ValueError("amount must be non-negative")
    if fraction_bps < 0 or fraction_bps > BPS_DENOMINATOR:
        raise ValueError("fraction_bps must be within [0, 10000]")
    return (amount * fraction_bps) // BPS_DENOMINATOR


def to_base_units(value: Decimal, decimals: int) -> int:
    """Convert a decimal amount to integer base units, truncating toward zero."""
    scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal("1"), rounding=ROUND_DOWN)
    return int(scaled)


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    """Split a sequence into consecutive chunks of at most ``size`` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(items[idx : idx + size]) for idx in range(0, len(items), size)]
