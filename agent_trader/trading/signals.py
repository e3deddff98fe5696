from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Protocol

import aiohttp

from agent_trader.common import guarded_call, log_event

from .routes import RouteProvider
from .types import SOL_MINT, now_epoch


class AdvisoryProvider(Protocol):
    async def score(self, token: str) -> float | None:
        ...


@dataclass(slots=True, frozen=True)
class MarketSignal:
    token: str
    price: float | None = None
    volume: float | None = None
    momentum: float | None = None
    signal: float | None = None
    timestamp: float = 0.0

    def values(self) -> dict[str, float | None]:
        return {
            "price": self.price,
            "volume": self.volume,
            "momentum": self.momentum,
            "signal": self.signal,
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SignalFeed:
    """Samples per-token market signals.

    Price is the quoted output per input unit for a probe-sized swap into the
    quote token. Momentum is the relative change over a rolling window of
    recent prices.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        route_provider: RouteProvider,
        advisory: AdvisoryProvider | None = None,
        quote_token: str = SOL_MINT,
        probe_amount: int = 1_000_000,
        probe_amounts: dict[str, int] | None = None,
        momentum_window: int = 10,
        probe_slippage_bps: int = 50,
    ) -> None:
        self._logger = logger
        self._route_provider = route_provider
        self._advisory = advisory
        self._quote_token = quote_token
        self._probe_amount = max(1, probe_amount)
        self._probe_amounts = dict(probe_amounts or {})
        self._momentum_window = max(2, momentum_window)
        self._probe_slippage_bps = max(0, probe_slippage_bps)
        self._price_windows: dict[str, deque[float]] = {}

    async def sample(self, token: str, *, volume: float | None = None) -> MarketSignal:
        price = await self._probe_price(token)
        momentum = self._update_momentum(token, price)

        score: float | None = None
        if self._advisory is not None:
            score = await guarded_call(
                lambda: self._advisory.score(token),
                logger=self._logger,
                event="advisory_score_failed",
                message="Advisory score unavailable; signal left empty",
                token=token,
            )

        return MarketSignal(
            token=token,
            price=price,
            volume=volume,
            momentum=momentum,
            signal=score,
            timestamp=now_epoch(),
        )

    async def sample_all(self, tokens: list[str]) -> list[MarketSignal]:
        return list(await asyncio.gather(*(self.sample(token) for token in tokens)))

    async def _probe_price(self, token: str) -> float | None:
        if token == self._quote_token:
            return 1.0

        amount = self._probe_amounts.get(token, self._probe_amount)
        routes = await guarded_call(
            lambda: self._route_provider.quote(
                input_token=token,
                output_token=self._quote_token,
                amount=amount,
                slippage_bps=self._probe_slippage_bps,
            ),
            logger=self._logger,
            event="signal_price_probe_failed",
            message="Price probe quote failed",
            default=[],
            token=token,
        )
        if not routes:
            log_event(
                self._logger,
                level="debug",
                event="signal_price_missing",
                message="No route for price probe",
                token=token,
            )
            return None
        return routes[0].implied_price

    def _update_momentum(self, token: str, price: float | None) -> float | None:
        if price is None or price <= 0:
            return None

        window = self._price_windows.setdefault(token, deque(maxlen=self._momentum_window))
        window.append(price)
        if len(window) < 2:
            return None
        oldest = window[0]
        return (price - oldest) / oldest


class HttpAdvisoryProvider:
    """Reads a score for a token from an external advisory service.

    The service answers ``GET <url>?token=<mint>`` with ``{"score": <float>}``;
    a missing or non-numeric score means no opinion.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        url: str,
        api_key: str = "",
        timeout_seconds: float = 5.0,
    ) -> None:
        self._logger = logger
        self._url = url.strip()
        self._api_key = api_key.strip()
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def score(self, token: str) -> float | None:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Advisory HTTP session is not initialized.")

        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        async with self._session.get(self._url, params={"token": token}, headers=headers) as response:
            status = response.status
            body = await response.json(content_type=None)

        if status >= 400:
            raise RuntimeError(f"Advisory request failed: status={status} body={str(body)[:240]!r}")
        raw = body.get("score") if isinstance(body, dict) else None
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            log_event(
                self._logger,
                level="debug",
                event="advisory_score_missing",
                message="Advisory service returned no score",
                token=token,
            )
            return None
        return float(raw)
