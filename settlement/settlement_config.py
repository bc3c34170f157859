"""Environment-backed configuration for the settlement orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
import os


WRAPPED_NATIVE_MINT = "So11111111111111111111111111111111111111112"
ROUTER_PROGRAM_ID = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"


@dataclass(frozen=True)
class SettlementConfig:
    """Canonical configuration surface for withdrawal and payout orchestration."""

    program_id: str
    rpc_url: str
    rpc_commitment: str
    routing_api_base_url: str
    router_program_id: str
    price_api_base_url: str
    treasury_wallet: str
    settlement_mint: str
    settlement_decimals: int
    dust_threshold_base_units: int
    quote_slippage_bps: int
    quote_timeout_seconds: float
    quote_concurrency: int
    plan_ceiling_seconds: float
    assembly_concurrency: int
    priority_microlamports: int
    swap_compute_units: int
    finalize_compute_units: int
    unwrap_compute_units: int
    payout_compute_units: int
    payout_batch_size: int
    platform_fee_bps: int
    treasury_perf_share_bps: int
    withdrawal_ttl_seconds: int
    simulate_finalize: bool
    require_confirmed_record: bool
    price_max_staleness_seconds: int
    rate_limit_enabled: bool
    rate_limit_max_requests: int
    rate_limit_window_seconds: int
    log_level: str


_REQUIRED_KEYS: tuple[str, ...] = (
    "SETTLEMENT_PROGRAM_ID",
    "SOLANA_RPC_URL",
    "ROUTING_API_BASE_URL",
    "TREASURY_WALLET",
)

_MIN_SWAP_COMPUTE_UNITS = 400_000
_MIN_FINALIZE_COMPUTE_UNITS = 200_000
_MAX_PAYOUT_BATCH_SIZE = 20


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value for {name}: {raw}") from exc
    return value


def load_settlement_config() -> SettlementConfig:
    """Load and validate settlement configuration from environment."""
    for key in _REQUIRED_KEYS:
        _read_env(key)

    slippage_bps = _read_int("QUOTE_SLIPPAGE_BPS", 2000)
    if slippage_bps < 0 or slippage_bps > 10_000:
        raise RuntimeError("QUOTE_SLIPPAGE_BPS must be within [0, 10000]")

    batch_size = _read_int("PAYOUT_BATCH_SIZE", _MAX_PAYOUT_BATCH_SIZE)
    if batch_size < 1 or batch_size > _MAX_PAYOUT_BATCH_SIZE:
        raise RuntimeError(f"PAYOUT_BATCH_SIZE must be within [1, {_MAX_PAYOUT_BATCH_SIZE}]")

    quote_concurrency = _read_int("QUOTE_CONCURRENCY", 4)
    assembly_concurrency = _read_int("ASSEMBLY_CONCURRENCY", 4)
    if quote_concurrency < 1 or assembly_concurrency < 1:
        raise RuntimeError("QUOTE_CONCURRENCY and ASSEMBLY_CONCURRENCY must be positive")

    return SettlementConfig(
        program_id=_read_env("SETTLEMENT_PROGRAM_ID"),
        rpc_url=_read_env("SOLANA_RPC_URL"),
        rpc_commitment=os.getenv("SOLANA_RPC_COMMITMENT", "confirmed").strip(),
        routing_api_base_url=_read_env("ROUTING_API_BASE_URL"),
        router_program_id=os.getenv("ROUTER_PROGRAM_ID", ROUTER_PROGRAM_ID).strip(),
        price_api_base_url=os.getenv("PRICE_API_BASE_URL", "https://lite-api.jup.ag").strip(),
        treasury_wallet=_read_env("TREASURY_WALLET"),
        settlement_mint=os.getenv("SETTLEMENT_MINT", WRAPPED_NATIVE_MINT).strip(),
        settlement_decimals=_read_int("SETTLEMENT_DECIMALS", 9),
        dust_threshold_base_units=_read_int("DUST_THRESHOLD_BASE_UNITS", 100_000_000),
        quote_slippage_bps=slippage_bps,
        quote_timeout_seconds=_read_float("QUOTE_TIMEOUT_SECONDS", 4.0),
        quote_concurrency=quote_concurrency,
        plan_ceiling_seconds=_read_float("PLAN_CEILING_SECONDS", 12.0),
        assembly_concurrency=assembly_concurrency,
        priority_microlamports=_read_int("PRIORITY_MICROLAMPORTS", 20_000),
        swap_compute_units=max(_MIN_SWAP_COMPUTE_UNITS, _read_int("SWAP_COMPUTE_UNITS", 600_000)),
        finalize_compute_units=max(_MIN_FINALIZE_COMPUTE_UNITS, _read_int("FINALIZE_COMPUTE_UNITS", 300_000)),
        unwrap_compute_units=max(_MIN_FINALIZE_COMPUTE_UNITS, _read_int("UNWRAP_COMPUTE_UNITS", 200_000)),
        payout_compute_units=_read_int("PAYOUT_COMPUTE_UNITS", 400_000),
        payout_batch_size=batch_size,
        platform_fee_bps=_read_int("PLATFORM_FEE_BPS", 100),
        treasury_perf_share_bps=_read_int("TREASURY_PERF_SHARE_BPS", 2000),
        withdrawal_ttl_seconds=_read_int("WITHDRAWAL_TTL_SECONDS", 900),
        simulate_finalize=_read_bool("SIMULATE_FINALIZE", True),
        require_confirmed_record=_read_bool("REQUIRE_CONFIRMED_RECORD", True),
        price_max_staleness_seconds=_read_int("PRICE_MAX_STALENESS_SECONDS", 60),
        rate_limit_enabled=_read_bool("RATE_LIMIT_ENABLED", True),
        rate_limit_max_requests=_read_int("RATE_LIMIT_MAX_REQUESTS", 200),
        rate_limit_window_seconds=_read_int("RATE_LIMIT_WINDOW_SECONDS", 900),
        log_level=os.getenv("SETTLEMENT_LOG_LEVEL", "INFO").strip().upper(),
    )
