"""Per-asset unsigned swap transaction assembly."""

from __future__ import annotations

import base64
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
from typing import Any, Optional, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from settlement.errors import NoRouteError, UpstreamError
from settlement.ledger_contract import LedgerClient, RecencyToken
from settlement.liquidation_planner import LiquidationPlanItem
from settlement.program_instructions import (
    as_pubkey,
    associated_token_address,
    compute_budget_instructions,
    withdraw_swap_instruction,
)
from settlement.route_contract import Quote, RoutingOptions, SwapInstructions
from settlement.route_quote_client import RouteQuoteClient


logger = logging.getLogger(__name__)

PACKET_DATA_SIZE = 1232

FAILED_ROUTE_BUILD = "route_build_failed"
FAILED_TOO_LARGE = "too_large"
FAILED_COMPILE = "compile_failed"
FAILED_ROUTER_MISMATCH = "router_mismatch"


@dataclass(frozen=True)
class TransactionBundle:
    """One unsigned transaction plus its recency window."""

    asset_id: str
    transaction: str
    blockhash: str
    last_valid_block_height: int
    size_bytes: int
    in_amount: int
    min_out: int
    route_ref: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "transaction": self.transaction,
            "blockhash": self.blockhash,
            "last_valid_block_height": self.last_valid_block_height,
            "size_bytes": self.size_bytes,
            "in_amount": self.in_amount,
            "min_out": self.min_out,
            "route_ref": self.route_ref,
        }


@dataclass(frozen=True)
class AssemblyFailure:
    """An executable item that could not be turned into a transaction."""

    asset_id: str
    reason: str
    detail: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {"asset_id": self.asset_id, "reason": self.reason, "detail": self.detail}


@dataclass(frozen=True)
class AssemblyResult:
    bundles: tuple[TransactionBundle, ...]
    failures: tuple[AssemblyFailure, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "bundles": [bundle.as_dict() for bundle in self.bundles],
            "failures": [failure.as_dict() for failure in self.failures],
        }


def compile_unsigned(
    payer: str | Pubkey,
    instructions: Sequence[Instruction],
    recency: RecencyToken,
    lookup_tables: Sequence[Any] = (),
) -> VersionedTransaction:
    """Compile a v0 message and pad it with placeholder signatures for the client to fill."""
    message = MessageV0.try_compile(
        payer=as_pubkey(payer),
        instructions=list(instructions),
        address_lookup_table_accounts=list(lookup_tables),
        recent_blockhash=Hash.from_string(recency.blockhash),
    )
    placeholders = [Signature.default()] * message.header.num_required_signatures
    return VersionedTransaction.populate(message, placeholders)


def encode_transaction(transaction: VersionedTransaction) -> tuple[str, int]:
    raw = bytes(transaction)
    return base64.b64encode(raw).decode("ascii"), len(raw)


@dataclass(frozen=True)
class UnsignedTransaction:
    """Base64 wire transaction awaiting client signatures."""

    transaction: str
    blockhash: str
    last_valid_block_height: int
    size_bytes: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "transaction": self.transaction,
            "blockhash": self.blockhash,
            "last_valid_block_height": self.last_valid_block_height,
            "size_bytes": self.size_bytes,
        }


def build_unsigned(
    payer: str | Pubkey,
    instructions: Sequence[Instruction],
    recency: RecencyToken,
    lookup_tables: Sequence[Any] = (),
) -> tuple[VersionedTransaction, UnsignedTransaction]:
    transaction = compile_unsigned(payer, instructions, recency, lookup_tables)
    encoded, size = encode_transaction(transaction)
    return transaction, UnsignedTransaction(
        transaction=encoded,
        blockhash=recency.blockhash,
        last_valid_block_height=recency.last_valid_block_height,
        size_bytes=size,
    )


class TransactionAssembler:
    """Builds one independent, size-bounded swap transaction per executable plan item."""

    def __init__(
        self,
        *,
        quote_client: RouteQuoteClient,
        ledger: LedgerClient,
        program_id: str,
        settlement_asset: str,
        compute_units: int,
        priority_microlamports: int,
        concurrency: int = 4,
        router_program_id: Optional[str] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be positive")
        self._quote_client = quote_client
        self._ledger = ledger
        self._program_id = as_pubkey(program_id)
        self._settlement_asset = settlement_asset
        self._compute_units = compute_units
        self._priority_microlamports = priority_microlamports
        self._concurrency = concurrency
        self._router_program_id = None if router_program_id is None else str(as_pubkey(router_program_id))

    def assemble(
        self,
        items: Sequence[LiquidationPlanItem],
        *,
        investor_id: str,
        fund_id: str,
        routing: Optional[RoutingOptions] = None,
    ) -> AssemblyResult:
        executable = [item for item in items if item.executable]
        if not executable:
            return AssemblyResult(bundles=(), failures=())

        options = routing or RoutingOptions()
        recency = self._ledger.latest_recency_token()
        with ThreadPoolExecutor(
            max_workers=min(self._concurrency, len(executable)),
            thread_name_prefix="assemble",
        ) as executor:
            outcomes = list(
                executor.map(
                    lambda item: self._assemble_isolated(
                        item,
                        investor_id=investor_id,
                        fund_id=fund_id,
                        recency=recency,
                        routing=options,
                    ),
                    executable,
                )
            )

        bundles = tuple(outcome for outcome in outcomes if isinstance(outcome, TransactionBundle))
        failures = tuple(outcome for outcome in outcomes if isinstance(outcome, AssemblyFailure))
        logger.info(
            "Assembled %s bundles for investor=%s fund=%s (%s isolated)",
            len(bundles),
            investor_id,
            fund_id,
            len(failures),
        )
        return AssemblyResult(bundles=bundles, failures=failures)

    def _build_swap(self, quote: Quote, *, investor_id: str, fund_id: str) -> SwapInstructions:
        return self._quote_client.build_swap(
            quote,
            owner=fund_id,
            payer=investor_id,
            source_account=str(associated_token_address(fund_id, quote.asset_in)),
            destination_account=str(associated_token_address(fund_id, self._settlement_asset)),
        )

    def _swap_with_fallback(
        self,
        item: LiquidationPlanItem,
        *,
        investor_id: str,
        fund_id: str,
        routing: RoutingOptions,
    ) -> tuple[Optional[Quote], Optional[SwapInstructions], str]:
        quote = item.quote
        if quote is None:
            return None, None, "plan item carries no quote"
        try:
            return quote, self._build_swap(quote, investor_id=investor_id, fund_id=fund_id), ""
        except UpstreamError as exc:
            if quote.direct_only:
                return None, None, exc.message
            logger.warning("Route build failed for %s; re-quoting direct-only: %s", item.asset_id, exc.message)

        try:
            direct = self._quote_client.quote(
                item.asset_id,
                self._settlement_asset,
                item.allowed_amount,
                slippage_bps=routing.slippage_bps,
                direct_only=True,
                exclude_dexes=routing.exclude_dexes,
            )
            return direct, self._build_swap(direct, investor_id=investor_id, fund_id=fund_id), ""
        except (NoRouteError, UpstreamError) as exc:
            return None, None, exc.message

    def _assemble_isolated(
        self,
        item: LiquidationPlanItem,
        *,
        investor_id: str,
        fund_id: str,
        recency: RecencyToken,
        routing: RoutingOptions,
    ) -> TransactionBundle | AssemblyFailure:
        """One asset's failure never escapes into the other assets' assembly."""
        try:
            return self._assemble_one(
                item,
                investor_id=investor_id,
                fund_id=fund_id,
                recency=recency,
                routing=routing,
            )
        except Exception as exc:
            logger.exception("Isolating %s: assembly raised unexpectedly", item.asset_id)
            return AssemblyFailure(
                asset_id=item.asset_id,
                reason=FAILED_ROUTE_BUILD,
                detail=f"{type(exc).__name__}: {exc}",
            )

    def _assemble_one(
        self,
        item: LiquidationPlanItem,
        *,
        investor_id: str,
        fund_id: str,
        recency: RecencyToken,
        routing: RoutingOptions,
    ) -> TransactionBundle | AssemblyFailure:
        quote, swap, detail = self._swap_with_fallback(
            item,
            investor_id=investor_id,
            fund_id=fund_id,
            routing=routing,
        )
        if quote is None or swap is None:
            logger.warning("Isolating %s: %s", item.asset_id, detail)
            return AssemblyFailure(asset_id=item.asset_id, reason=FAILED_ROUTE_BUILD, detail=detail)

        router_program = swap.swap_instruction.program_id
        if self._router_program_id is not None and router_program != self._router_program_id:
            logger.warning("Isolating %s: unexpected router program %s", item.asset_id, router_program)
            return AssemblyFailure(
                asset_id=item.asset_id,
                reason=FAILED_ROUTER_MISMATCH,
                detail=f"swap targets {router_program}, expected {self._router_program_id}",
            )

        instructions: list[Instruction] = compute_budget_instructions(
            self._compute_units,
            self._priority_microlamports,
        )
        instructions.extend(setup.to_instruction() for setup in swap.setup)
        instructions.append(
            withdraw_swap_instruction(
                self._program_id,
                fund=fund_id,
                investor=investor_id,
                router_program=router_program,
                router_data=swap.swap_instruction.data_bytes(),
                in_amount=quote.in_amount,
                out_min_amount=quote.min_out,
                remaining_accounts=swap.swap_instruction.account_metas(),
            )
        )

        try:
            tables = self._ledger.resolve_lookup_tables(swap.lookup_tables)
        except UpstreamError as exc:
            logger.warning("Isolating %s: lookup tables unavailable: %s", item.asset_id, exc.message)
            return AssemblyFailure(asset_id=item.asset_id, reason=FAILED_ROUTE_BUILD, detail=exc.message)

        try:
            transaction = compile_unsigned(investor_id, instructions, recency, tables)
        except Exception as exc:
            # solders raises CompileError once the message needs more than 256 account indexes.
            logger.warning("Isolating %s: transaction does not compile: %s", item.asset_id, exc)
            return AssemblyFailure(asset_id=item.asset_id, reason=FAILED_COMPILE, detail=str(exc))
        encoded, size = encode_transaction(transaction)
        if size > PACKET_DATA_SIZE:
            logger.warning("Isolating %s: transaction is %s bytes", item.asset_id, size)
            return AssemblyFailure(
                asset_id=item.asset_id,
                reason=FAILED_TOO_LARGE,
                detail=f"{size} bytes exceeds {PACKET_DATA_SIZE}",
            )

        return TransactionBundle(
            asset_id=item.asset_id,
            transaction=encoded,
            blockhash=recency.blockhash,
            last_valid_block_height=recency.last_valid_block_height,
            size_bytes=size,
            in_amount=quote.in_amount,
            min_out=quote.min_out,
            route_ref=quote.route_ref,
        )
