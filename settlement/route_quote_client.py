"""Quote acquisition with a single direct-route fallback."""

from __future__ import annotations

from http.client import HTTPException
import logging
from typing import Sequence

from settlement.errors import NoRouteError, UpstreamError, ValidationError
from settlement.route_contract import Quote, RoutingService, SwapInstructions


logger = logging.getLogger(__name__)

DEFAULT_SLIPPAGE_BPS = 2000


class RouteQuoteClient:
    """Wraps a routing service; per-asset failures surface only as ``NoRouteError``."""

    def __init__(
        self,
        routing: RoutingService,
        *,
        default_slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        timeout_seconds: float = 4.0,
    ) -> None:
        if default_slippage_bps < 0 or default_slippage_bps > 10_000:
            raise ValueError("default_slippage_bps must be within [0, 10000]")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._routing = routing
        self._default_slippage_bps = default_slippage_bps
        self._timeout_seconds = timeout_seconds

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def quote(
        self,
        asset_in: str,
        asset_out: str,
        amount: int,
        slippage_bps: int | None = None,
        direct_only: bool = False,
        exclude_dexes: Sequence[str] = (),
    ) -> Quote:
        """Quote ``amount`` of ``asset_in`` into ``asset_out``.

        A failed or empty first attempt is retried once with direct routes only.
        When that also fails, ``NoRouteError`` is raised with the last reason.
        ``exclude_dexes`` applies to both attempts.
        """
        if amount <= 0:
            raise ValidationError("Quote amount must be positive", details={"amount": amount})
        slippage = self._default_slippage_bps if slippage_bps is None else slippage_bps
        if slippage < 0 or slippage > 10_000:
            raise ValidationError("slippage_bps must be within [0, 10000]", details={"slippage_bps": slippage})

        attempts = (True,) if direct_only else (False, True)
        last_reason = ""
        for attempt_direct in attempts:
            try:
                quote = self._routing.quote(
                    asset_in,
                    asset_out,
                    amount,
                    slippage,
                    attempt_direct,
                    self._timeout_seconds,
                    exclude_dexes=tuple(exclude_dexes),
                )
            except UpstreamError as exc:
                last_reason = exc.message
                logger.warning(
                    "Quote attempt failed for %s -> %s (direct_only=%s): %s",
                    asset_in,
                    asset_out,
                    attempt_direct,
                    exc.message,
                )
                continue
            except (OSError, TimeoutError, HTTPException) as exc:
                last_reason = str(exc) or type(exc).__name__
                logger.warning("Quote transport failure for %s -> %s: %s", asset_in, asset_out, exc)
                continue
            if quote.expected_out <= 0:
                last_reason = "zero output"
                continue
            return quote
        raise NoRouteError(asset_in, asset_out, amount, reason=last_reason)

    def build_swap(
        self,
        quote: Quote,
        *,
        owner: str,
        payer: str,
        source_account: str,
        destination_account: str,
    ) -> SwapInstructions:
        """Request validated swap instructions for ``quote``; failures raise ``UpstreamError``."""
        try:
            return self._routing.build_swap_instructions(
                quote,
                owner=owner,
                payer=payer,
                source_account=source_account,
                destination_account=destination_account,
                timeout_seconds=self._timeout_seconds,
            )
        except (OSError, TimeoutError, HTTPException) as exc:
            raise UpstreamError(
                f"Swap-instruction request failed: {exc}",
                details={"asset_in": quote.asset_in, "route_ref": quote.route_ref},
            ) from exc
