from __future__ import annotations

from hashlib import sha256
import struct

import pytest
from solders.compute_budget import ID as COMPUTE_BUDGET_PROGRAM_ID
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from settlement.program_instructions import (
    TOKEN_PROGRAM_ID,
    anchor_discriminator,
    as_pubkey,
    associated_token_address,
    compute_budget_instructions,
    encode_bytes,
    encode_u64,
    finalize_withdrawal,
    initiate_withdrawal,
    position_address,
    unwrap_wsol_fund,
    vault_sol_address,
    withdraw_swap_instruction,
    withdrawal_address,
)
from settlement.settlement_config import WRAPPED_NATIVE_MINT
from tests.utils.settlement_fakes import new_key


def test_discriminator_and_scalar_encoding() -> None:
    assert anchor_discriminator("finalize_withdrawal") == sha256(b"global:finalize_withdrawal").digest()[:8]
    assert encode_u64(1) == b"\x01" + b"\x00" * 7
    assert encode_u64((1 << 64) - 1) == b"\xff" * 8
    with pytest.raises(ValueError):
        encode_u64(-1)
    with pytest.raises(ValueError):
        encode_u64(1 << 64)
    assert encode_bytes(b"abc") == b"\x03\x00\x00\x00abc"


def test_derived_addresses_are_deterministic_and_distinct() -> None:
    program, fund, investor = new_key(), new_key(), new_key()
    assert withdrawal_address(program, fund, investor) == withdrawal_address(program, fund, investor)
    assert withdrawal_address(program, fund, investor) != position_address(program, investor, fund)
    assert vault_sol_address(program, fund) != vault_sol_address(program, new_key())
    assert associated_token_address(fund, WRAPPED_NATIVE_MINT) != associated_token_address(investor, WRAPPED_NATIVE_MINT)


def test_compute_budget_puts_price_before_limit() -> None:
    price, limit = compute_budget_instructions(300_000, 20_000)
    assert price.program_id == COMPUTE_BUDGET_PROGRAM_ID
    assert limit.program_id == COMPUTE_BUDGET_PROGRAM_ID
    # Compute budget instruction tags: 2 = unit limit, 3 = unit price.
    assert bytes(price.data)[0] == 3
    assert bytes(limit.data)[0] == 2
    assert struct.unpack("<I", bytes(limit.data)[1:5])[0] == 300_000


def test_initiate_withdrawal_encodes_share_count() -> None:
    program, fund, investor = new_key(), new_key(), new_key()
    ix = initiate_withdrawal(program, fund=fund, investor=investor, shares_to_withdraw=12_345)

    assert ix.program_id == as_pubkey(program)
    assert bytes(ix.data) == anchor_discriminator("initiate_withdrawal") + encode_u64(12_345)
    signers = [meta.pubkey for meta in ix.accounts if meta.is_signer]
    assert signers == [as_pubkey(investor)]
    assert ix.accounts[2].pubkey == withdrawal_address(program, fund, investor)


def test_withdraw_swap_forwards_router_payload_and_remaining_accounts() -> None:
    program, fund, investor, router = new_key(), new_key(), new_key(), new_key()
    ix = withdraw_swap_instruction(
        program,
        fund=fund,
        investor=investor,
        router_program=router,
        router_data=b"route",
        in_amount=7,
        out_min_amount=5,
        remaining_accounts=[],
    )

    expected = anchor_discriminator("withdraw_swap_instruction") + encode_bytes(b"route") + encode_u64(7) + encode_u64(5)
    assert bytes(ix.data) == expected
    assert len(ix.accounts) == 6
    assert ix.accounts[2].pubkey == as_pubkey(router)


def test_finalize_withdrawal_account_order() -> None:
    program, fund, investor = new_key(), new_key(), new_key()
    shares_mint, manager, treasury = new_key(), new_key(), new_key()
    ix = finalize_withdrawal(
        program,
        fund=fund,
        investor=investor,
        shares_mint=shares_mint,
        manager=manager,
        treasury=treasury,
    )

    keys = [meta.pubkey for meta in ix.accounts]
    assert len(keys) == 11
    assert keys[0] == as_pubkey(fund)
    assert keys[1] == position_address(program, investor, fund)
    assert keys[3] == associated_token_address(investor, shares_mint)
    assert keys[5] == vault_sol_address(program, fund)
    assert keys[6:9] == [as_pubkey(investor), as_pubkey(manager), as_pubkey(treasury)]
    assert keys[9:] == [TOKEN_PROGRAM_ID, SYSTEM_PROGRAM_ID]
    assert [meta.is_signer for meta in ix.accounts].count(True) == 1
    assert bytes(ix.data) == anchor_discriminator("finalize_withdrawal")


def test_unwrap_targets_fund_wrapped_native_account() -> None:
    program, fund = new_key(), new_key()
    ix = unwrap_wsol_fund(program, fund=fund, wrapped_native_mint=WRAPPED_NATIVE_MINT)
    assert ix.accounts[1].pubkey == associated_token_address(fund, WRAPPED_NATIVE_MINT)
    assert not any(meta.is_signer for meta in ix.accounts)
