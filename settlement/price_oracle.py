"""Price-oracle contract, staleness guard and fund valuation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
import json
import logging
import threading
from typing import Any, Callable, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from settlement.common import SettlementClock, to_base_units
from settlement.errors import UpstreamError
from settlement.ledger_contract import FundLedgerSnapshot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceObservation:
    """Settlement base units paid for one whole unit of ``asset_id``."""

    asset_id: str
    base_units: int
    observed_at: datetime


class PriceOracle(Protocol):
    def get_price(self, asset_id: str) -> PriceObservation:
        """Return the latest observation or raise ``UpstreamError``."""


class JupiterPriceOracle:
    """Price adapter quoting assets against the settlement asset."""

    def __init__(
        self,
        *,
        base_url: str,
        settlement_asset: str,
        settlement_decimals: int,
        timeout_seconds: float = 4.0,
        clock: SettlementClock | None = None,
        requester: Optional[Callable[[str, dict[str, Any]], Any]] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._settlement_asset = settlement_asset
        self._settlement_decimals = settlement_decimals
        self._timeout_seconds = timeout_seconds
        self._clock = clock or SettlementClock()
        self._requester = requester

    def _request_json(self, path: str, params: dict[str, Any]) -> Any:
        if self._requester is not None:
            return self._requester(path, params)
        request = Request(url=f"{self._base_url}{path}?{urlencode(params)}", method="GET")
        last_error: Exception | None = None
        for _ in range(3):
            try:
                with urlopen(request, timeout=self._timeout_seconds) as response:
                    return json.loads(response.read().decode("utf-8"))
            except (HTTPError, URLError, TimeoutError) as exc:
                last_error = exc
                continue
        raise UpstreamError(f"Price request failed after retries: {last_error}") from last_error

    def get_price(self, asset_id: str) -> PriceObservation:
        if asset_id == self._settlement_asset:
            return PriceObservation(
                asset_id=asset_id,
                base_units=10**self._settlement_decimals,
                observed_at=self._clock.now_utc(),
            )
        payload = self._request_json("/price/v2", {"ids": asset_id, "vsToken": self._settlement_asset})
        entry = (payload.get("data") or {}).get(asset_id) if isinstance(payload, dict) else None
        if not entry or entry.get("price") in (None, ""):
            raise UpstreamError("No price available", details={"asset_id": asset_id})
        try:
            price = Decimal(str(entry["price"]))
        except InvalidOperation as exc:
            raise UpstreamError("Price is not numeric", details={"asset_id": asset_id}) from exc
        if price < 0:
            raise UpstreamError("Price is negative", details={"asset_id": asset_id})
        return PriceObservation(
            asset_id=asset_id,
            base_units=to_base_units(price, self._settlement_decimals),
            observed_at=self._clock.now_utc(),
        )


class StalenessGuardedOracle:
    """Caches observations; a stale one triggers a single re-fetch, a still-stale one fails."""

    def __init__(
        self,
        source: PriceOracle,
        *,
        max_staleness_seconds: int,
        clock: SettlementClock | None = None,
    ) -> None:
        self._source = source
        self._max_age = timedelta(seconds=max_staleness_seconds)
        self._clock = clock or SettlementClock()
        self._lock = threading.Lock()
        self._cache: dict[str, PriceObservation] = {}

    def _fresh(self, observation: PriceObservation) -> bool:
        return self._clock.now_utc() - observation.observed_at <= self._max_age

    def get_price(self, asset_id: str) -> PriceObservation:
        with self._lock:
            cached = self._cache.get(asset_id)
        if cached is not None and self._fresh(cached):
            return cached

        observation = self._source.get_price(asset_id)
        if not self._fresh(observation):
            logger.info("Stale price for %s observed at %s; re-fetching", asset_id, observation.observed_at)
            observation = self._source.get_price(asset_id)
            if not self._fresh(observation):
                raise UpstreamError(
                    "Price observation is stale",
                    details={"asset_id": asset_id, "observed_at": observation.observed_at.isoformat()},
                )
        with self._lock:
            self._cache[asset_id] = observation
        return observation


def value_fund(snapshot: FundLedgerSnapshot, oracle: PriceOracle) -> int:
    """Value native balance plus every held asset (except shares) in settlement base units."""
    total = snapshot.native_balance
    for asset in snapshot.held_assets:
        if asset.asset_id == snapshot.shares_mint or asset.balance <= 0:
            continue
        observation = oracle.get_price(asset.asset_id)
        total += asset.balance * observation.base_units // (10**asset.decimals)
    return total
