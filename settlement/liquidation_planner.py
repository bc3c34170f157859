"""Proportional liquidation planning across a fund's held assets."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
import logging
from typing import Any, Optional

from backend.db.enums import ExcludedReason
from settlement.common import floor_fraction_bps
from settlement.errors import NoRouteError, SettlementError, ValidationError
from settlement.ledger_contract import FundLedgerSnapshot, HeldAsset
from settlement.route_contract import Quote, RoutingOptions
from settlement.route_quote_client import RouteQuoteClient


logger = logging.getLogger(__name__)

EXCLUDED_NONE = ExcludedReason.NONE.value
EXCLUDED_DUST = ExcludedReason.DUST.value
EXCLUDED_NO_ROUTE = ExcludedReason.NO_ROUTE.value


@dataclass(frozen=True)
class LiquidationPlanItem:
    """Per-asset planning outcome."""

    asset_id: str
    available_amount: int
    allowed_amount: int
    quote: Optional[Quote]
    excluded_reason: str = EXCLUDED_NONE
    detail: str = ""

    @property
    def executable(self) -> bool:
        return self.excluded_reason == EXCLUDED_NONE and self.quote is not None

    def as_dict(self) -> dict[str, Any]:
        quote = None
        if self.quote is not None:
            quote = {
                "expected_out": self.quote.expected_out,
                "min_out": self.quote.min_out,
                "route_ref": self.quote.route_ref,
            }
        return {
            "asset_id": self.asset_id,
            "available_amount": self.available_amount,
            "allowed_amount": self.allowed_amount,
            "quote": quote,
            "excluded_reason": self.excluded_reason,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class LiquidationPlan:
    """Full item report plus the executable subset."""

    fund_id: str
    fraction_bps: int
    settlement_asset: str
    dust_threshold: int
    items: tuple[LiquidationPlanItem, ...]
    settlement_balance: int = 0

    @property
    def executable(self) -> tuple[LiquidationPlanItem, ...]:
        return tuple(item for item in self.items if item.executable)

    @property
    def excluded(self) -> tuple[LiquidationPlanItem, ...]:
        return tuple(item for item in self.items if not item.executable)

    def as_dict(self) -> dict[str, Any]:
        return {
            "fund_id": self.fund_id,
            "fraction_bps": self.fraction_bps,
            "settlement_asset": self.settlement_asset,
            "dust_threshold": self.dust_threshold,
            "settlement_balance": self.settlement_balance,
            "items": [item.as_dict() for item in self.items],
            "executable": [item.asset_id for item in self.executable],
            "excluded": [
                {"asset_id": item.asset_id, "excluded_reason": item.excluded_reason}
                for item in self.excluded
            ],
        }


class LiquidationPlanner:
    """Quotes each liquidatable asset on a bounded pool under an overall ceiling."""

    def __init__(
        self,
        quote_client: RouteQuoteClient,
        *,
        settlement_asset: str,
        concurrency: int = 4,
        ceiling_seconds: float = 12.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be positive")
        if ceiling_seconds <= 0:
            raise ValueError("ceiling_seconds must be positive")
        self._quote_client = quote_client
        self._settlement_asset = settlement_asset
        self._concurrency = concurrency
        self._ceiling_seconds = ceiling_seconds

    def plan(
        self,
        snapshot: FundLedgerSnapshot,
        fraction_bps: int,
        dust_threshold: int,
        routing: Optional[RoutingOptions] = None,
    ) -> LiquidationPlan:
        if fraction_bps < 1 or fraction_bps > 10_000:
            raise ValidationError("fraction_bps must be within [1, 10000]", details={"fraction_bps": fraction_bps})
        if dust_threshold < 0:
            raise ValidationError("dust_threshold must be non-negative", details={"dust_threshold": dust_threshold})

        settlement_balance = 0
        candidates: list[tuple[HeldAsset, int]] = []
        for asset in snapshot.held_assets:
            if asset.asset_id == self._settlement_asset:
                settlement_balance += floor_fraction_bps(asset.balance, fraction_bps)
                continue
            if asset.asset_id == snapshot.shares_mint:
                continue
            allowed = floor_fraction_bps(asset.balance, fraction_bps)
            if allowed == 0:
                continue
            candidates.append((asset, allowed))

        items = self._quote_candidates(candidates, dust_threshold, routing or RoutingOptions())
        plan = LiquidationPlan(
            fund_id=snapshot.fund_id,
            fraction_bps=fraction_bps,
            settlement_asset=self._settlement_asset,
            dust_threshold=dust_threshold,
            items=tuple(items),
            settlement_balance=settlement_balance,
        )
        logger.info(
            "Planned fund %s at %s bps: %s executable, %s excluded",
            snapshot.fund_id,
            fraction_bps,
            len(plan.executable),
            len(plan.excluded),
        )
        return plan

    def _quote_candidates(
        self,
        candidates: list[tuple[HeldAsset, int]],
        dust_threshold: int,
        routing: RoutingOptions,
    ) -> list[LiquidationPlanItem]:
        if not candidates:
            return []

        executor = ThreadPoolExecutor(
            max_workers=min(self._concurrency, len(candidates)),
            thread_name_prefix="liquidation-quote",
        )
        try:
            futures: list[Future[Quote]] = [
                executor.submit(
                    self._quote_client.quote,
                    asset.asset_id,
                    self._settlement_asset,
                    allowed,
                    slippage_bps=routing.slippage_bps,
                    direct_only=routing.direct_only,
                    exclude_dexes=routing.exclude_dexes,
                )
                for asset, allowed in candidates
            ]
            _, pending = wait(futures, timeout=self._ceiling_seconds)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        items: list[LiquidationPlanItem] = []
        for (asset, allowed), future in zip(candidates, futures):
            if future in pending:
                logger.info("Quote for %s missed the planning ceiling; excluded as no_route", asset.asset_id)
                items.append(
                    LiquidationPlanItem(
                        asset_id=asset.asset_id,
                        available_amount=asset.balance,
                        allowed_amount=allowed,
                        quote=None,
                        excluded_reason=EXCLUDED_NO_ROUTE,
                        detail="quote timed out",
                    )
                )
                continue
            try:
                quote = future.result()
            except NoRouteError as exc:
                logger.info("No route for %s: %s", asset.asset_id, exc.details.get("reason", ""))
                items.append(
                    LiquidationPlanItem(
                        asset_id=asset.asset_id,
                        available_amount=asset.balance,
                        allowed_amount=allowed,
                        quote=None,
                        excluded_reason=EXCLUDED_NO_ROUTE,
                        detail=str(exc.details.get("reason", "")),
                    )
                )
                continue
            except SettlementError as exc:
                logger.warning("Quote for %s failed: %s", asset.asset_id, exc.message)
                items.append(
                    LiquidationPlanItem(
                        asset_id=asset.asset_id,
                        available_amount=asset.balance,
                        allowed_amount=allowed,
                        quote=None,
                        excluded_reason=EXCLUDED_NO_ROUTE,
                        detail=exc.message,
                    )
                )
                continue
            except Exception as exc:
                logger.exception("Quote for %s raised unexpectedly", asset.asset_id)
                items.append(
                    LiquidationPlanItem(
                        asset_id=asset.asset_id,
                        available_amount=asset.balance,
                        allowed_amount=allowed,
                        quote=None,
                        excluded_reason=EXCLUDED_NO_ROUTE,
                        detail=f"{type(exc).__name__}: {exc}",
                    )
                )
                continue

            if quote.expected_out < dust_threshold:
                logger.info(
                    "Excluding %s as dust: expected_out=%s < %s",
                    asset.asset_id,
                    quote.expected_out,
                    dust_threshold,
                )
                items.append(
                    LiquidationPlanItem(
                        asset_id=asset.asset_id,
                        available_amount=asset.balance,
                        allowed_amount=allowed,
                        quote=quote,
                        excluded_reason=EXCLUDED_DUST,
                    )
                )
                continue
            items.append(
                LiquidationPlanItem(
                    asset_id=asset.asset_id,
                    available_amount=asset.balance,
                    allowed_amount=allowed,
                    quote=quote,
                )
            )
        return items
