"""Swap-routing HTTP adapter for the Jupiter-compatible quote and swap-instructions API."""

from __future__ import annotations

from http.client import HTTPException
import json
import logging
from typing import Any, Callable, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from settlement.errors import UpstreamError
from settlement.route_contract import Quote, SwapInstructions, parse_quote, parse_swap_instructions


logger = logging.getLogger(__name__)

Requester = Callable[[str, str, dict[str, Any], Optional[dict[str, Any]], float], Any]


class JupiterRoutingService:
    """Routing adapter with schema-validated results and bounded transport retries."""

    def __init__(
        self,
        *,
        base_url: str,
        exclude_dexes: Sequence[str] = (),
        max_attempts: int = 2,
        requester: Optional[Requester] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self._base_url = base_url.rstrip("/")
        self._exclude_dexes = tuple(exclude_dexes)
        self._max_attempts = max_attempts
        self._requester = requester
        self._call_count = 0

    @property
    def call_count(self) -> int:
        """Return routing request count for diagnostics."""
        return self._call_count

    def _request_json(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        body: Optional[dict[str, Any]],
        timeout_seconds: float,
    ) -> Any:
        self._call_count += 1
        if self._requester is not None:
            return self._requester(method, path, params, body, timeout_seconds)

        url = f"{self._base_url}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        data = None
        headers = {"Accept": "application/json"}
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        request = Request(url=url, data=data, headers=headers, method=method)

        last_error: Exception | None = None
        for _ in range(self._max_attempts):
            try:
                with urlopen(request, timeout=timeout_seconds) as response:
                    return json.loads(response.read().decode("utf-8"))
            except HTTPError as exc:
                # 4xx carries a JSON error body ("no route" and friends); not worth retrying.
                if exc.code < 500:
                    try:
                        return json.loads(exc.read().decode("utf-8"))
                    except ValueError:
                        raise UpstreamError(
                            f"Routing request failed with HTTP {exc.code}",
                            details={"path": path, "status": exc.code},
                        ) from exc
                last_error = exc
            except (URLError, TimeoutError, HTTPException) as exc:
                last_error = exc
            except ValueError as exc:
                raise UpstreamError("Routing response is not valid JSON", details={"path": path}) from exc

        if last_error is None:
            raise UpstreamError("Routing request failed without an exception", details={"path": path})
        logger.warning("Routing request %s %s failed after retries: %s", method, path, last_error)
        raise UpstreamError(
            f"Routing request failed after retries: {last_error}",
            details={"path": path},
        ) from last_error

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
        params: dict[str, Any] = {
            "inputMint": asset_in,
            "outputMint": asset_out,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "onlyDirectRoutes": "true" if direct_only else "false",
        }
        excluded = tuple(dict.fromkeys((*self._exclude_dexes, *exclude_dexes)))
        if excluded:
            params["excludeDexes"] = ",".join(excluded)
        payload = self._request_json("GET", "/swap/v1/quote", params, None, timeout_seconds)
        return parse_quote(payload, direct_only=direct_only)

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
        body = {
            "quoteResponse": dict(quote.raw),
            "userPublicKey": owner,
            "payer": payer,
            "userSourceTokenAccount": source_account,
            "userDestinationTokenAccount": destination_account,
            "wrapAndUnwrapSol": False,
            "useTokenLedger": False,
            "useSharedAccounts": False,
            "skipUserAccountsRpcCalls": True,
            "skipAtaCreation": True,
        }
        payload = self._request_json("POST", "/swap/v1/swap-instructions", {}, body, timeout_seconds)
        return parse_swap_instructions(payload)
