"""Ledger-program protocol and normalized read types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.transaction import VersionedTransaction


@dataclass(frozen=True)
class HeldAsset:
    """One token balance held by a fund vault."""

    asset_id: str
    balance: int
    decimals: int
    token_account: str = ""


@dataclass(frozen=True)
class FundLedgerSnapshot:
    """Read-only view of a fund as stored by the ledger program."""

    fund_id: str
    manager: str
    shares_mint: str
    total_deposits: int
    total_shares: int
    current_value: int
    held_assets: tuple[HeldAsset, ...]
    performance_fee_bps: int = 0
    native_balance: int = 0


@dataclass(frozen=True)
class InvestorPosition:
    """Read-only investor position in a fund."""

    investor_id: str
    fund_id: str
    shares: int
    total_deposited: int


@dataclass(frozen=True)
class LedgerWithdrawalRequest:
    """Pending withdrawal account created by ``initiate_withdrawal``."""

    investor_id: str
    fund_id: str
    shares_to_withdraw: int


@dataclass(frozen=True)
class RecencyToken:
    """Recent blockhash and the last block height at which it stays valid."""

    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class SimulationResult:
    """Outcome of a transaction dry-run."""

    ok: bool
    logs: tuple[str, ...] = field(default_factory=tuple)
    error: Optional[str] = None
    units_consumed: Optional[int] = None


class LedgerClient(Protocol):
    """Reads and dry-runs against the external ledger program."""

    def get_fund_snapshot(self, fund_id: str) -> FundLedgerSnapshot:
        """Return fund snapshot or raise ``NotFoundError``."""

    def get_investor_position(self, investor_id: str, fund_id: str) -> Optional[InvestorPosition]:
        """Return investor position, or None when absent."""

    def get_withdrawal_request(self, investor_id: str, fund_id: str) -> Optional[LedgerWithdrawalRequest]:
        """Return the pending ledger withdrawal account, or None when absent."""

    def get_token_balance(self, token_account: str) -> int:
        """Return a token account balance in base units (0 when the account is absent)."""

    def latest_recency_token(self) -> RecencyToken:
        """Return the latest blockhash with its expiry height."""

    def resolve_lookup_tables(self, addresses: Sequence[str]) -> list[AddressLookupTableAccount]:
        """Resolve lookup-table addresses into concrete account lists."""

    def simulate(self, transaction: VersionedTransaction) -> SimulationResult:
        """Dry-run an unsigned transaction without signature verification."""

    def is_confirmed(self, tx_ref: str) -> bool:
        """Return True when the signature reached confirmed commitment without error."""
