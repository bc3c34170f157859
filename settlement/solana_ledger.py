"""Solana RPC adapter for the managed-funds ledger program."""

from __future__ import annotations

import logging
import struct
from typing import Any, Callable, Optional, Sequence, TypeVar

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts
from solders.address_lookup_table_account import AddressLookupTable, AddressLookupTableAccount
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from settlement.errors import NotFoundError, UpstreamError, ValidationError
from settlement.ledger_contract import (
    FundLedgerSnapshot,
    HeldAsset,
    InvestorPosition,
    LedgerWithdrawalRequest,
    RecencyToken,
    SimulationResult,
)
from settlement.program_instructions import (
    TOKEN_PROGRAM_ID,
    account_discriminator,
    as_pubkey,
    position_address,
    vault_sol_address,
    withdrawal_address,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONFIRMED_STATUSES = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


class _Reader:
    """Sequential little-endian Borsh reader over account data."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = data
        self._offset = offset

    def _take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise ValueError("account data truncated")
        chunk = self._data[self._offset : end]
        self._offset = end
        return chunk

    def pubkey(self) -> str:
        return str(Pubkey.from_bytes(self._take(32)))

    def string(self) -> str:
        (length,) = struct.unpack("<I", self._take(4))
        return self._take(length).decode("utf-8")

    def u16(self) -> int:
        return struct.unpack("<H", self._take(2))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]


def _check_discriminator(data: bytes, account_name: str) -> _Reader:
    if len(data) < 8 or data[:8] != account_discriminator(account_name):
        raise ValueError(f"account is not a {account_name}")
    return _Reader(data, 8)


def decode_fund_account(data: bytes) -> dict[str, Any]:
    """Decode the leading fields of a ``Fund`` account."""
    reader = _check_discriminator(data, "Fund")
    manager = reader.pubkey()
    name = reader.string()
    reader.string()  # description
    base_mint = reader.pubkey()
    vault = reader.pubkey()
    shares_mint = reader.pubkey()
    management_fee_bps = reader.u16()
    performance_fee_bps = reader.u16()
    total_shares = reader.u64()
    total_assets = reader.u64()
    return {
        "manager": manager,
        "name": name,
        "base_mint": base_mint,
        "vault": vault,
        "shares_mint": shares_mint,
        "management_fee_bps": management_fee_bps,
        "performance_fee_bps": performance_fee_bps,
        "total_shares": total_shares,
        "total_assets": total_assets,
    }


def decode_investor_position(data: bytes) -> dict[str, Any]:
    reader = _check_discriminator(data, "InvestorPosition")
    investor = reader.pubkey()
    fund = reader.pubkey()
    shares = reader.u64()
    initial_investment = reader.u64()
    total_deposited = reader.u64()
    return {
        "investor": investor,
        "fund": fund,
        "shares": shares,
        "initial_investment": initial_investment,
        "total_deposited": total_deposited,
    }


def decode_withdrawal_state(data: bytes) -> dict[str, Any]:
    reader = _check_discriminator(data, "WithdrawalState")
    investor = reader.pubkey()
    vault = reader.pubkey()
    shares_to_withdraw = reader.u64()
    return {"investor": investor, "vault": vault, "shares_to_withdraw": shares_to_withdraw}


def _parse_key(value: str, field_name: str) -> Pubkey:
    try:
        return as_pubkey(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name}", details={field_name: value}) from exc


class SolanaLedgerClient:
    """Ledger reads, dry-runs and confirmations through a solana-py RPC client."""

    def __init__(
        self,
        *,
        program_id: str,
        rpc_url: str,
        commitment: str = "confirmed",
        client: Optional[Client] = None,
    ) -> None:
        self._program_id = as_pubkey(program_id)
        self._client = client if client is not None else Client(rpc_url, commitment=Commitment(commitment))

    def _rpc(self, label: str, call: Callable[[], T]) -> T:
        try:
            return call()
        except (SolanaRpcException, RPCException) as exc:
            logger.warning("Ledger RPC %s failed: %s", label, exc)
            raise UpstreamError(f"Ledger RPC {label} failed: {exc}", details={"rpc": label}) from exc

    def _account_data(self, address: Pubkey, label: str) -> Optional[bytes]:
        response = self._rpc(label, lambda: self._client.get_account_info(address))
        if response.value is None:
            return None
        return bytes(response.value.data)

    def _lamports(self, address: Pubkey) -> int:
        response = self._rpc("get_balance", lambda: self._client.get_balance(address))
        return int(response.value)

    def get_fund_snapshot(self, fund_id: str) -> FundLedgerSnapshot:
        fund = _parse_key(fund_id, "fund_id")
        data = self._account_data(fund, "get_fund")
        if data is None:
            raise NotFoundError("Fund not found", details={"fund_id": fund_id})
        try:
            decoded = decode_fund_account(data)
        except ValueError as exc:
            raise NotFoundError("Account is not a fund", details={"fund_id": fund_id}) from exc

        opts = TokenAccountOpts(program_id=TOKEN_PROGRAM_ID)
        response = self._rpc(
            "get_token_accounts",
            lambda: self._client.get_token_accounts_by_owner_json_parsed(fund, opts),
        )
        held: list[HeldAsset] = []
        for keyed in response.value:
            parsed = keyed.account.data.parsed
            info = parsed.get("info", {}) if isinstance(parsed, dict) else {}
            token_amount = info.get("tokenAmount", {})
            balance = int(token_amount.get("amount", "0"))
            if balance <= 0:
                continue
            held.append(
                HeldAsset(
                    asset_id=str(info.get("mint", "")),
                    balance=balance,
                    decimals=int(token_amount.get("decimals", 0)),
                    token_account=str(keyed.pubkey),
                )
            )
        held.sort(key=lambda item: item.asset_id)

        native_balance = self._lamports(vault_sol_address(self._program_id, fund))
        return FundLedgerSnapshot(
            fund_id=str(fund),
            manager=decoded["manager"],
            shares_mint=decoded["shares_mint"],
            total_deposits=decoded["total_assets"],
            total_shares=decoded["total_shares"],
            current_value=native_balance,
            held_assets=tuple(held),
            performance_fee_bps=decoded["performance_fee_bps"],
            native_balance=native_balance,
        )

    def get_investor_position(self, investor_id: str, fund_id: str) -> Optional[InvestorPosition]:
        investor = _parse_key(investor_id, "investor_id")
        fund = _parse_key(fund_id, "fund_id")
        data = self._account_data(position_address(self._program_id, investor, fund), "get_position")
        if data is None:
            return None
        try:
            decoded = decode_investor_position(data)
        except ValueError as exc:
            raise UpstreamError(
                "Malformed investor position account",
                details={"investor_id": investor_id, "fund_id": fund_id, "error": str(exc)},
            ) from exc
        return InvestorPosition(
            investor_id=decoded["investor"],
            fund_id=decoded["fund"],
            shares=decoded["shares"],
            total_deposited=decoded["total_deposited"],
        )

    def get_withdrawal_request(self, investor_id: str, fund_id: str) -> Optional[LedgerWithdrawalRequest]:
        investor = _parse_key(investor_id, "investor_id")
        fund = _parse_key(fund_id, "fund_id")
        data = self._account_data(withdrawal_address(self._program_id, fund, investor), "get_withdrawal")
        if data is None:
            return None
        try:
            decoded = decode_withdrawal_state(data)
        except ValueError as exc:
            raise UpstreamError(
                "Malformed withdrawal account",
                details={"investor_id": investor_id, "fund_id": fund_id, "error": str(exc)},
            ) from exc
        return LedgerWithdrawalRequest(
            investor_id=decoded["investor"],
            fund_id=decoded["vault"],
            shares_to_withdraw=decoded["shares_to_withdraw"],
        )

    def get_token_balance(self, token_account: str) -> int:
        address = _parse_key(token_account, "token_account")
        if self._account_data(address, "get_token_account") is None:
            return 0
        response = self._rpc("get_token_balance", lambda: self._client.get_token_account_balance(address))
        return int(response.value.amount)

    def latest_recency_token(self) -> RecencyToken:
        response = self._rpc("get_latest_blockhash", self._client.get_latest_blockhash)
        return RecencyToken(
            blockhash=str(response.value.blockhash),
            last_valid_block_height=int(response.value.last_valid_block_height),
        )

    def resolve_lookup_tables(self, addresses: Sequence[str]) -> list[AddressLookupTableAccount]:
        if not addresses:
            return []
        keys = [_parse_key(address, "lookup_table") for address in addresses]
        response = self._rpc("get_lookup_tables", lambda: self._client.get_multiple_accounts(keys))
        tables: list[AddressLookupTableAccount] = []
        for key, account in zip(keys, response.value):
            if account is None:
                raise UpstreamError("Lookup table not found", details={"lookup_table": str(key)})
            table = AddressLookupTable.deserialize(bytes(account.data))
            tables.append(AddressLookupTableAccount(key=key, addresses=list(table.addresses)))
        return tables

    def simulate(self, transaction: VersionedTransaction) -> SimulationResult:
        response = self._rpc(
            "simulate_transaction",
            lambda: self._client.simulate_transaction(transaction, sig_verify=False),
        )
        value = response.value
        return SimulationResult(
            ok=value.err is None,
            logs=tuple(value.logs or ()),
            error=None if value.err is None else str(value.err),
            units_consumed=value.units_consumed,
        )

    def is_confirmed(self, tx_ref: str) -> bool:
        try:
            signature = Signature.from_string(tx_ref)
        except ValueError as exc:
            raise ValidationError("Invalid transaction signature", details={"tx_ref": tx_ref}) from exc
        response = self._rpc(
            "get_signature_statuses",
            lambda: self._client.get_signature_statuses([signature], search_transaction_history=True),
        )
        status = response.value[0] if response.value else None
        if status is None or status.err is not None:
            return False
        return status.confirmation_status in _CONFIRMED_STATUSES
