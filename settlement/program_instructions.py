"""Account derivation and instruction encoders for the managed-funds ledger program."""

from __future__ import annotations

from hashlib import sha256
import struct
from typing import Sequence

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID


TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

_U64_MAX = (1 << 64) - 1


def anchor_discriminator(name: str) -> bytes:
    """Return the 8-byte Anchor instruction discriminator for ``name``."""
    return sha256(f"global:{name}".encode("utf-8")).digest()[:8]


def account_discriminator(name: str) -> bytes:
    """Return the 8-byte Anchor account discriminator for account type ``name``."""
    return sha256(f"account:{name}".encode("utf-8")).digest()[:8]


def encode_u64(value: int) -> bytes:
    if value < 0 or value > _U64_MAX:
        raise ValueError(f"value out of u64 range: {value}")
    return struct.pack("<Q", value)


def encode_bytes(value: bytes) -> bytes:
    """Borsh ``Vec<u8>``: little-endian u32 length prefix followed by the bytes."""
    return struct.pack("<I", len(value)) + value


def as_pubkey(value: str | Pubkey) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(value)


def withdrawal_address(program_id: str | Pubkey, fund: str | Pubkey, investor: str | Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [b"withdrawal", bytes(as_pubkey(fund)), bytes(as_pubkey(investor))],
        as_pubkey(program_id),
    )
    return address


def position_address(program_id: str | Pubkey, investor: str | Pubkey, fund: str | Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [b"position", bytes(as_pubkey(investor)), bytes(as_pubkey(fund))],
        as_pubkey(program_id),
    )
    return address


def vault_sol_address(program_id: str | Pubkey, fund: str | Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address([b"vault_sol", bytes(as_pubkey(fund))], as_pubkey(program_id))
    return address


def associated_token_address(owner: str | Pubkey, mint: str | Pubkey) -> Pubkey:
    """Derive the associated token account; PDA owners are allowed."""
    address, _ = Pubkey.find_program_address(
        [bytes(as_pubkey(owner)), bytes(TOKEN_PROGRAM_ID), bytes(as_pubkey(mint))],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def compute_budget_instructions(compute_units: int, priority_microlamports: int) -> list[Instruction]:
    """Priority fee first, then the compute-unit limit."""
    return [
        set_compute_unit_price(priority_microlamports),
        set_compute_unit_limit(compute_units),
    ]


def initiate_withdrawal(
    program_id: str | Pubkey,
    *,
    fund: str | Pubkey,
    investor: str | Pubkey,
    shares_to_withdraw: int,
) -> Instruction:
    program = as_pubkey(program_id)
    data = anchor_discriminator("initiate_withdrawal") + encode_u64(shares_to_withdraw)
    accounts = [
        AccountMeta(as_pubkey(fund), is_signer=False, is_writable=True),
        AccountMeta(position_address(program, investor, fund), is_signer=False, is_writable=False),
        AccountMeta(withdrawal_address(program, fund, investor), is_signer=False, is_writable=True),
        AccountMeta(as_pubkey(investor), is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program, data, accounts)


def withdraw_swap_instruction(
    program_id: str | Pubkey,
    *,
    fund: str | Pubkey,
    investor: str | Pubkey,
    router_program: str | Pubkey,
    router_data: bytes,
    in_amount: int,
    out_min_amount: int,
    remaining_accounts: Sequence[AccountMeta],
) -> Instruction:
    """Forward a routing instruction through the ledger program; router accounts ride as remaining accounts."""
    program = as_pubkey(program_id)
    data = (
        anchor_discriminator("withdraw_swap_instruction")
        + encode_bytes(router_data)
        + encode_u64(in_amount)
        + encode_u64(out_min_amount)
    )
    accounts = [
        AccountMeta(as_pubkey(fund), is_signer=False, is_writable=True),
        AccountMeta(withdrawal_address(program, fund, investor), is_signer=False, is_writable=True),
        AccountMeta(as_pubkey(router_program), is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(as_pubkey(investor), is_signer=True, is_writable=True),
    ]
    accounts.extend(remaining_accounts)
    return Instruction(program, data, accounts)


def finalize_withdrawal(
    program_id: str | Pubkey,
    *,
    fund: str | Pubkey,
    investor: str | Pubkey,
    shares_mint: str | Pubkey,
    manager: str | Pubkey,
    treasury: str | Pubkey,
) -> Instruction:
    """Burn the withdrawn shares, pay the investor and route fee cuts to manager and treasury."""
    program = as_pubkey(program_id)
    accounts = [
        AccountMeta(as_pubkey(fund), is_signer=False, is_writable=True),
        AccountMeta(position_address(program, investor, fund), is_signer=False, is_writable=True),
        AccountMeta(as_pubkey(shares_mint), is_signer=False, is_writable=True),
        AccountMeta(associated_token_address(investor, shares_mint), is_signer=False, is_writable=True),
        AccountMeta(withdrawal_address(program, fund, investor), is_signer=False, is_writable=True),
        AccountMeta(vault_sol_address(program, fund), is_signer=False, is_writable=True),
        AccountMeta(as_pubkey(investor), is_signer=True, is_writable=True),
        AccountMeta(as_pubkey(manager), is_signer=False, is_writable=True),
        AccountMeta(as_pubkey(treasury), is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program, anchor_discriminator("finalize_withdrawal"), accounts)


def unwrap_wsol_fund(
    program_id: str | Pubkey,
    *,
    fund: str | Pubkey,
    wrapped_native_mint: str | Pubkey,
) -> Instruction:
    """Close the fund's wrapped-native account back into the fund's lamports."""
    program = as_pubkey(program_id)
    accounts = [
        AccountMeta(as_pubkey(fund), is_signer=False, is_writable=True),
        AccountMeta(associated_token_address(fund, wrapped_native_mint), is_signer=False, is_writable=True),
        AccountMeta(as_pubkey(fund), is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program, anchor_discriminator("unwrap_wsol_fund"), accounts)

