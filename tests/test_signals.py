from __future__ import annotations

import logging
import unittest
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from agent_trader.trading.errors import QuoteRequestError
from agent_trader.trading.signals import HttpAdvisoryProvider, SignalFeed
from agent_trader.trading.types import SOL_MINT, Route

MEME = "MeMe1111111111111111111111111111111111111111"


def _route(out_amount: int) -> Route:
    return Route(
        input_token=MEME,
        output_token=SOL_MINT,
        in_amount=1_000_000,
        out_amount=out_amount,
        worst_case_out_amount=out_amount,
        hops=("Raydium",),
        price_impact=0.0,
        liquidity=float("inf"),
    )


class ScriptedProvider:
    def __init__(self, *responses: list[Route] | BaseException) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def quote(self, **kwargs: Any) -> list[Route]:
        self.calls.append(kwargs)
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class SignalFeedTests(unittest.IsolatedAsyncioTestCase):
    async def test_price_and_momentum_from_successive_probes(self) -> None:
        provider = ScriptedProvider([_route(2_000_000)], [_route(2_200_000)])
        feed = SignalFeed(logger=logging.getLogger("test.signals"), route_provider=provider, momentum_window=5)

        first = await feed.sample(MEME)
        second = await feed.sample(MEME, volume=12.5)

        self.assertAlmostEqual(first.price, 2.0)
        self.assertIsNone(first.momentum)
        self.assertAlmostEqual(second.price, 2.2)
        self.assertAlmostEqual(second.momentum, 0.1)
        self.assertEqual(second.volume, 12.5)
        self.assertEqual(provider.calls[0]["output_token"], SOL_MINT)

    async def test_probe_failure_leaves_price_empty(self) -> None:
        provider = ScriptedProvider(QuoteRequestError("503"))
        feed = SignalFeed(logger=logging.getLogger("test.signals"), route_provider=provider)

        signal = await feed.sample(MEME)

        self.assertIsNone(signal.price)
        self.assertIsNone(signal.momentum)

    async def test_advisory_score_is_attached(self) -> None:
        advisory = AsyncMock()
        advisory.score = AsyncMock(return_value=0.8)
        feed = SignalFeed(
            logger=logging.getLogger("test.signals"),
            route_provider=ScriptedProvider([_route(1_000_000)]),
            advisory=advisory,
        )

        signal = await feed.sample(MEME)

        self.assertEqual(signal.signal, 0.8)
        advisory.score.assert_awaited_once_with(MEME)

    async def test_failing_advisory_does_not_break_sampling(self) -> None:
        advisory = AsyncMock()
        advisory.score = AsyncMock(side_effect=RuntimeError("llm down"))
        feed = SignalFeed(
            logger=logging.getLogger("test.signals"),
            route_provider=ScriptedProvider([_route(1_000_000)]),
            advisory=advisory,
        )

        signal = await feed.sample(MEME)

        self.assertIsNone(signal.signal)
        self.assertAlmostEqual(signal.price, 1.0)

    async def test_per_token_probe_amount_overrides_default(self) -> None:
        provider = ScriptedProvider([_route(2_000_000)])
        feed = SignalFeed(
            logger=logging.getLogger("test.signals"),
            route_provider=provider,
            probe_amount=1_000_000,
            probe_amounts={MEME: 5_000},
        )

        await feed.sample(MEME)

        self.assertEqual(provider.calls[0]["amount"], 5_000)


def _advisory_session(status: int, body: Any) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body)
    session = MagicMock()
    session.get.return_value.__aenter__.return_value = response
    return session


class HttpAdvisoryProviderTests(unittest.IsolatedAsyncioTestCase):
    def _provider(self, session: MagicMock) -> HttpAdvisoryProvider:
        provider = HttpAdvisoryProvider(
            logger=logging.getLogger("test.signals"),
            url="https://advisor.invalid/score",
            api_key="secret",
        )
        provider._session = session
        return provider

    async def test_score_is_read_for_token(self) -> None:
        session = _advisory_session(200, {"score": 0.75})

        score = await self._provider(session).score(MEME)

        self.assertEqual(score, 0.75)
        self.assertEqual(session.get.call_args.kwargs["params"], {"token": MEME})
        self.assertEqual(session.get.call_args.kwargs["headers"]["x-api-key"], "secret")

    async def test_missing_score_is_no_opinion(self) -> None:
        self.assertIsNone(await self._provider(_advisory_session(200, {"score": "high"})).score(MEME))
        self.assertIsNone(await self._provider(_advisory_session(200, [0.5])).score(MEME))

    async def test_http_error_raises(self) -> None:
        with self.assertRaises(RuntimeError):
            await self._provider(_advisory_session(503, {"error": "busy"})).score(MEME)


if __name__ == "__main__":
    unittest.main()
