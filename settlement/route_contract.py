"""Routing-service protocol and validated quote / swap-instruction result types.

The routing service speaks loosely typed JSON. Everything crossing this
boundary is parsed into the models below; a payload that fails validation is
an ``UpstreamError`` rather than a partially populated object.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from settlement.common import stable_hash
from settlement.errors import UpstreamError


def _check_pubkey(value: str) -> str:
    try:
        Pubkey.from_string(value)
    except ValueError as exc:
        raise ValueError(f"invalid pubkey: {value}") from exc
    return value


class QuotePayload(BaseModel):
    """Wire shape of a routing quote response."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    input_mint: str = Field(alias="inputMint")
    output_mint: str = Field(alias="outputMint")
    in_amount: int = Field(alias="inAmount", ge=0)
    out_amount: int = Field(alias="outAmount", ge=0)
    other_amount_threshold: int = Field(alias="otherAmountThreshold", ge=0)
    slippage_bps: int = Field(alias="slippageBps", ge=0, le=10_000)
    route_plan: list[dict[str, Any]] = Field(alias="routePlan", min_length=1)

    _check_input = field_validator("input_mint", "output_mint")(_check_pubkey)


class AccountMetaPayload(BaseModel):
    """Wire shape of one account reference inside a routing instruction."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    pubkey: str
    is_signer: bool = Field(alias="isSigner", default=False)
    is_writable: bool = Field(alias="isWritable")

    _check_key = field_validator("pubkey")(_check_pubkey)


class InstructionPayload(BaseModel):
    """Wire shape of one routing instruction."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    program_id: str = Field(alias="programId")
    accounts: list[AccountMetaPayload]
    data: str

    _check_program = field_validator("program_id")(_check_pubkey)

    @field_validator("data")
    @classmethod
    def _check_data(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("instruction data is not valid base64") from exc
        return value

    def data_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    def account_metas(self, *, keep_signers: bool = False) -> list[AccountMeta]:
        # Forwarded accounts lose signer flags; the vault signs inside the ledger program.
        return [
            AccountMeta(
                Pubkey.from_string(meta.pubkey),
                is_signer=meta.is_signer and keep_signers,
                is_writable=meta.is_writable,
            )
            for meta in self.accounts
        ]

    def to_instruction(self) -> Instruction:
        return Instruction(
            Pubkey.from_string(self.program_id),
            self.data_bytes(),
            self.account_metas(keep_signers=True),
        )


class SwapInstructionsPayload(BaseModel):
    """Wire shape of a routing swap-instructions response."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    setup_instructions: list[InstructionPayload] = Field(alias="setupInstructions", default_factory=list)
    swap_instruction: InstructionPayload = Field(alias="swapInstruction")
    cleanup_instruction: Optional[InstructionPayload] = Field(alias="cleanupInstruction", default=None)
    address_lookup_table_addresses: list[str] = Field(alias="addressLookupTableAddresses", default_factory=list)

    @field_validator("address_lookup_table_addresses")
    @classmethod
    def _check_tables(cls, value: list[str]) -> list[str]:
        return [_check_pubkey(item) for item in value]


@dataclass(frozen=True)
class RoutingOptions:
    """Per-request routing preferences for a plan."""

    direct_only: bool = False
    exclude_dexes: tuple[str, ...] = ()
    slippage_bps: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "direct_only": self.direct_only,
            "exclude_dexes": list(self.exclude_dexes),
            "slippage_bps": self.slippage_bps,
        }


@dataclass(frozen=True)
class Quote:
    """Validated quote for one asset leg."""

    asset_in: str
    asset_out: str
    in_amount: int
    expected_out: int
    min_out: int
    slippage_bps: int
    direct_only: bool
    route_ref: str
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class SwapInstructions:
    """Validated swap-instruction bundle returned by the routing service."""

    setup: tuple[InstructionPayload, ...]
    swap_instruction: InstructionPayload
    lookup_tables: tuple[str, ...]


def parse_quote(payload: Any, *, direct_only: bool) -> Quote:
    """Validate a raw quote response into a ``Quote``."""
    if isinstance(payload, Mapping) and payload.get("error"):
        raise UpstreamError(
            f"Routing service returned an error: {payload.get('error')}",
            details={"error_code": payload.get("errorCode")},
        )
    try:
        model = QuotePayload.model_validate(payload)
    except PydanticValidationError as exc:
        raise UpstreamError(
            "Quote response failed schema validation.",
            details={"errors": exc.errors(include_url=False)},
        ) from exc

    route_labels = tuple(
        str((step.get("swapInfo") or {}).get("ammKey") or (step.get("swapInfo") or {}).get("label") or "")
        for step in model.route_plan
    )
    route_ref = stable_hash(("route", model.input_mint, model.output_mint, model.in_amount, *route_labels))
    return Quote(
        asset_in=model.input_mint,
        asset_out=model.output_mint,
        in_amount=model.in_amount,
        expected_out=model.out_amount,
        min_out=model.other_amount_threshold,
        slippage_bps=model.slippage_bps,
        direct_only=direct_only,
        route_ref=route_ref,
        raw=dict(payload),
    )


def parse_swap_instructions(payload: Any) -> SwapInstructions:
    """Validate a raw swap-instructions response into ``SwapInstructions``."""
    if isinstance(payload, Mapping) and payload.get("error"):
        raise UpstreamError(f"Routing service returned an error: {payload.get('error')}")
    try:
        model = SwapInstructionsPayload.model_validate(payload)
    except PydanticValidationError as exc:
        raise UpstreamError(
            "Swap-instructions response failed schema validation.",
            details={"errors": exc.errors(include_url=False)},
        ) from exc
    return SwapInstructions(
        setup=tuple(model.setup_instructions),
        swap_instruction=model.swap_instruction,
        lookup_tables=tuple(model.address_lookup_table_addresses),
    )


class RoutingService(Protocol):
    """External swap-routing collaborator."""

    def quote(
        self,
        asset_in: str,
        asset_out: str,
        amount: int,
        slippage_bps: int,
        direct_only: bool,
        timeout_seconds: float,
        *,
        exclude_dexes: Sequence[str] = (),
    ) -> Quote:
        """Return a validated quote or raise ``UpstreamError``."""

    def build_swap_instructions(
        self,
        quote: Quote,
        *,
        owner: str,
        payer: str,
        source_account: str,
        destination_account: str,
        timeout_seconds: float,
    ) -> SwapInstructions:
        """Return validated swap instructions or raise ``UpstreamError``."""
