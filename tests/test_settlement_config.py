from __future__ import annotations

import pytest

from settlement.settlement_config import WRAPPED_NATIVE_MINT, load_settlement_config


_REQUIRED_ENV = {
    "SETTLEMENT_PROGRAM_ID": "FundsProgram1111111111111111111111111111111",
    "SOLANA_RPC_URL": "http://localhost:8899",
    "ROUTING_API_BASE_URL": "https://lite-api.jup.ag",
    "TREASURY_WALLET": "Treasury11111111111111111111111111111111111",
}

_OPTIONAL_ENV = (
    "SOLANA_RPC_COMMITMENT",
    "SETTLEMENT_MINT",
    "DUST_THRESHOLD_BASE_UNITS",
    "QUOTE_SLIPPAGE_BPS",
    "PAYOUT_BATCH_SIZE",
    "QUOTE_CONCURRENCY",
    "ASSEMBLY_CONCURRENCY",
    "SWAP_COMPUTE_UNITS",
    "FINALIZE_COMPUTE_UNITS",
    "SIMULATE_FINALIZE",
    "RATE_LIMIT_ENABLED",
    "SETTLEMENT_LOG_LEVEL",
)


def _set_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in _REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)
    for key in _OPTIONAL_ENV:
        monkeypatch.delenv(key, raising=False)


def test_load_settlement_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_required_env(monkeypatch)

    cfg = load_settlement_config()
    assert cfg.program_id == _REQUIRED_ENV["SETTLEMENT_PROGRAM_ID"]
    assert cfg.rpc_commitment == "confirmed"
    assert cfg.settlement_mint == WRAPPED_NATIVE_MINT
    assert cfg.settlement_decimals == 9
    assert cfg.dust_threshold_base_units == 100_000_000
    assert cfg.quote_slippage_bps == 2000
    assert cfg.payout_batch_size == 20
    assert cfg.platform_fee_bps == 100
    assert cfg.treasury_perf_share_bps == 2000
    assert cfg.swap_compute_units == 600_000
    assert cfg.simulate_finalize is True
    assert cfg.rate_limit_max_requests == 200
    assert cfg.rate_limit_window_seconds == 900
    assert cfg.log_level == "INFO"


def test_load_settlement_config_missing_required(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.delenv("TREASURY_WALLET")
    with pytest.raises(RuntimeError, match="TREASURY_WALLET"):
        load_settlement_config()

    monkeypatch.setenv("TREASURY_WALLET", "   ")
    with pytest.raises(RuntimeError, match="TREASURY_WALLET"):
        load_settlement_config()


def test_load_settlement_config_rejects_out_of_range_values(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_required_env(monkeypatch)

    monkeypatch.setenv("PAYOUT_BATCH_SIZE", "21")
    with pytest.raises(RuntimeError, match="PAYOUT_BATCH_SIZE"):
        load_settlement_config()
    monkeypatch.setenv("PAYOUT_BATCH_SIZE", "20")

    monkeypatch.setenv("QUOTE_SLIPPAGE_BPS", "10001")
    with pytest.raises(RuntimeError, match="QUOTE_SLIPPAGE_BPS"):
        load_settlement_config()
    monkeypatch.setenv("QUOTE_SLIPPAGE_BPS", "abc")
    with pytest.raises(RuntimeError, match="Invalid integer value for QUOTE_SLIPPAGE_BPS"):
        load_settlement_config()
    monkeypatch.setenv("QUOTE_SLIPPAGE_BPS", "50")

    monkeypatch.setenv("QUOTE_CONCURRENCY", "0")
    with pytest.raises(RuntimeError, match="must be positive"):
        load_settlement_config()
    monkeypatch.setenv("QUOTE_CONCURRENCY", "2")

    monkeypatch.setenv("SIMULATE_FINALIZE", "maybe")
    with pytest.raises(RuntimeError, match="Invalid boolean value for SIMULATE_FINALIZE"):
        load_settlement_config()


def test_load_settlement_config_overrides_and_floors(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv("DUST_THRESHOLD_BASE_UNITS", "0")
    monkeypatch.setenv("SWAP_COMPUTE_UNITS", "1000")
    monkeypatch.setenv("FINALIZE_COMPUTE_UNITS", "1000")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "off")
    monkeypatch.setenv("SETTLEMENT_LOG_LEVEL", "debug")

    cfg = load_settlement_config()
    assert cfg.dust_threshold_base_units == 0
    assert cfg.swap_compute_units == 400_000
    assert cfg.finalize_compute_units == 200_000
    assert cfg.rate_limit_enabled is False
    assert cfg.log_level == "DEBUG"
