from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Protocol

import aiohttp

from agent_trader.common import log_event

from .errors import QuoteRequestError
from .types import Route, now_epoch, to_float, to_int

DEFAULT_JUPITER_QUOTE_ENDPOINT = "https://api.jup.ag/swap/v1/quote"


class RouteProvider(Protocol):
    async def quote(
        self,
        *,
        input_token: str,
        output_token: str,
        amount: int,
        slippage_bps: int,
    ) -> list[Route]:
        ...


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None

    value = raw.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        return None

    return seconds if seconds > 0 else None


def _is_no_routes_error_text(text: str) -> bool:
    normalized = (text or "").lower()
    return (
        "no_routes_found" in normalized
        or "could_not_find_any_route" in normalized
        or "could not find any route" in normalized
        or "no route" in normalized
    )


def extract_candidate_quotes(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        routes = payload.get("routes")
        if isinstance(routes, list):
            return [item for item in routes if isinstance(item, dict)]
        data = payload.get("data")
        if isinstance(data, list):
            return [item for item in data if isinstance(item, dict)]
        if isinstance(payload.get("routePlan"), list) or "outAmount" in payload:
            return [payload]
    elif isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    return []


def extract_route_hops(quote: dict[str, Any]) -> tuple[str, ...]:
    route_plan = quote.get("routePlan")
    if not isinstance(route_plan, list):
        market_infos = quote.get("marketInfos")
        if not isinstance(market_infos, list):
            return ()
        return tuple(
            label
            for label in (
                str(market.get("label") or market.get("ammKey") or "").strip()
                for market in market_infos
                if isinstance(market, dict)
            )
            if label
        )

    hops: list[str] = []
    for hop in route_plan:
        if not isinstance(hop, dict):
            continue
        swap_info = hop.get("swapInfo")
        if not isinstance(swap_info, dict):
            continue
        label = str(swap_info.get("label") or "").strip()
        if not label:
            label = str(swap_info.get("ammKey") or "").strip()
        if label:
            hops.append(label)
    return tuple(hops)


def implied_liquidity(*, in_amount: int, price_impact: float) -> float:
    # Constant-product approximation: impact ~= amount / depth.
    if price_impact <= 0:
        return math.inf
    return in_amount / price_impact


def route_from_quote(
    quote: dict[str, Any],
    *,
    input_token: str,
    output_token: str,
    quoted_at: float | None = None,
) -> Route | None:
    """Normalize one aggregator quote; returns None for unusable candidates."""
    in_amount = to_int(quote.get("inAmount"), 0)
    out_amount = to_int(quote.get("outAmount"), 0)
    if in_amount <= 0 or out_amount <= 0:
        return None

    quote_input = str(quote.get("inputMint") or input_token)
    quote_output = str(quote.get("outputMint") or output_token)
    if quote_input != input_token or quote_output != output_token:
        return None

    worst_case_out = to_int(quote.get("otherAmountThreshold"), out_amount)
    if worst_case_out <= 0:
        worst_case_out = out_amount

    price_impact = abs(to_float(quote.get("priceImpactPct"), 0.0))

    fee = 0
    platform_fee = quote.get("platformFee")
    if isinstance(platform_fee, dict):
        fee = max(0, to_int(platform_fee.get("amount"), 0))

    liquidity_raw = quote.get("liquidity")
    if liquidity_raw is not None:
        liquidity = max(0.0, to_float(liquidity_raw, 0.0))
    else:
        liquidity = implied_liquidity(in_amount=in_amount, price_impact=price_impact)

    return Route(
        input_token=input_token,
        output_token=output_token,
        in_amount=in_amount,
        out_amount=out_amount,
        worst_case_out_amount=min(out_amount, worst_case_out),
        hops=extract_route_hops(quote),
        price_impact=price_impact,
        liquidity=liquidity,
        fee=fee,
        quoted_at=now_epoch() if quoted_at is None else quoted_at,
        quote=quote,
    )


class JupiterRouteProvider:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str = DEFAULT_JUPITER_QUOTE_ENDPOINT,
        api_key: str = "",
        timeout_seconds: float = 8.0,
        max_concurrent_requests: int = 4,
        extra_params: dict[str, str] | None = None,
    ) -> None:
        self._logger = logger
        self._quote_endpoint = self._normalize_endpoint(api_base_url)
        self._api_key = api_key.strip()
        self._timeout_seconds = timeout_seconds
        self._extra_params = dict(extra_params or {})
        self._request_semaphore = asyncio.Semaphore(max(1, max_concurrent_requests))
        self._session: aiohttp.ClientSession | None = None

    @staticmethod
    def _normalize_endpoint(api_base_url: str) -> str:
        url = (api_base_url or "").strip().rstrip("/")
        if not url:
            return DEFAULT_JUPITER_QUOTE_ENDPOINT
        if url.endswith("/quote"):
            return url
        return f"{url}/quote"

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self.connect()

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def _fetch_quote_payload(self, params: dict[str, str]) -> tuple[int, Any, float | None]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Jupiter HTTP session is not initialized.")

        async with self._request_semaphore:
            async with self._session.get(
                self._quote_endpoint,
                params=params,
                headers=self._build_headers(),
            ) as response:
                status = response.status
                retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
                body = await response.json(content_type=None)
        return status, body, retry_after_seconds

    async def quote(
        self,
        *,
        input_token: str,
        output_token: str,
        amount: int,
        slippage_bps: int,
    ) -> list[Route]:
        params = {
            "inputMint": input_token,
            "outputMint": output_token,
            "amount": str(int(amount)),
            "slippageBps": str(max(0, int(slippage_bps))),
            **self._extra_params,
        }

        try:
            status, body, retry_after_seconds = await self._fetch_quote_payload(params)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as error:
            raise QuoteRequestError(f"Jupiter quote request failed: {error}") from error

        if status >= 400:
            error_text = str(body.get("error") or body) if isinstance(body, dict) else str(body)
            error_code = str(body.get("errorCode") or "") if isinstance(body, dict) else ""
            if _is_no_routes_error_text(f"{error_code} {error_text}"):
                log_event(
                    self._logger,
                    level="info",
                    event="quote_no_routes",
                    message="Aggregator returned no routes",
                    input_token=input_token,
                    output_token=output_token,
                    amount=amount,
                )
                return []
            raise QuoteRequestError(
                f"Jupiter quote failed: status={status} body={error_text[:240]!r}",
                status=status,
                retry_after_seconds=retry_after_seconds,
            )

        quoted_at = now_epoch()
        routes: list[Route] = []
        dropped = 0
        for candidate in extract_candidate_quotes(body):
            route = route_from_quote(
                candidate,
                input_token=input_token,
                output_token=output_token,
                quoted_at=quoted_at,
            )
            if route is None:
                dropped += 1
                continue
            routes.append(route)

        if dropped:
            log_event(
                self._logger,
                level="warning",
                event="quote_candidates_dropped",
                message="Dropped malformed route candidates from aggregator response",
                input_token=input_token,
                output_token=output_token,
                dropped=dropped,
                kept=len(routes),
            )

        return routes
