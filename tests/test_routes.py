from __future__ import annotations

import logging
import math
import unittest
from unittest.mock import AsyncMock

from agent_trader.trading.errors import QuoteRequestError
from agent_trader.trading.routes import (
    JupiterRouteProvider,
    extract_candidate_quotes,
    extract_route_hops,
    route_from_quote,
)

SOL = "So11111111111111111111111111111111111111112"
MEME = "MeMe1111111111111111111111111111111111111111"


def _make_quote(**overrides: object) -> dict[str, object]:
    quote: dict[str, object] = {
        "inputMint": SOL,
        "outputMint": MEME,
        "inAmount": "1000000",
        "outAmount": "2000000",
        "otherAmountThreshold": "1990000",
        "priceImpactPct": "0.0042",
        "routePlan": [
            {"swapInfo": {"label": "Raydium", "ammKey": "amm-1"}},
            {"swapInfo": {"label": "", "ammKey": "amm-2"}},
        ],
        "platformFee": {"amount": "120", "feeBps": 5},
    }
    quote.update(overrides)
    return quote


class RouteParsingTests(unittest.TestCase):
    def test_route_from_jupiter_quote(self) -> None:
        route = route_from_quote(_make_quote(), input_token=SOL, output_token=MEME, quoted_at=100.0)

        self.assertIsNotNone(route)
        assert route is not None
        self.assertEqual(route.in_amount, 1_000_000)
        self.assertEqual(route.out_amount, 2_000_000)
        self.assertEqual(route.worst_case_out_amount, 1_990_000)
        self.assertAlmostEqual(route.price_impact, 0.0042)
        self.assertEqual(route.hops, ("Raydium", "amm-2"))
        self.assertEqual(route.fee, 120)
        self.assertEqual(route.quoted_at, 100.0)
        self.assertAlmostEqual(route.slippage_bps, 50.0)
        self.assertAlmostEqual(route.liquidity, 1_000_000 / 0.0042)
        self.assertEqual(route.quote["outAmount"], "2000000")

    def test_zero_impact_implies_unbounded_liquidity(self) -> None:
        route = route_from_quote(_make_quote(priceImpactPct="0"), input_token=SOL, output_token=MEME)

        assert route is not None
        self.assertTrue(math.isinf(route.liquidity))

    def test_explicit_liquidity_is_preferred(self) -> None:
        route = route_from_quote(_make_quote(liquidity="12345"), input_token=SOL, output_token=MEME)

        assert route is not None
        self.assertEqual(route.liquidity, 12345.0)

    def test_malformed_or_mismatched_quotes_are_dropped(self) -> None:
        cases = [
            _make_quote(outAmount="0"),
            _make_quote(inAmount="not-a-number"),
            _make_quote(outputMint="OTHER"),
        ]
        for quote in cases:
            with self.subTest(quote=quote):
                self.assertIsNone(route_from_quote(quote, input_token=SOL, output_token=MEME))

    def test_extract_candidate_quotes_shapes(self) -> None:
        single = _make_quote()

        self.assertEqual(extract_candidate_quotes(single), [single])
        self.assertEqual(extract_candidate_quotes({"data": [single, "junk"]}), [single])
        self.assertEqual(extract_candidate_quotes({"routes": [single]}), [single])
        self.assertEqual(extract_candidate_quotes({"error": "x"}), [])
        self.assertEqual(extract_candidate_quotes(None), [])

    def test_legacy_market_infos_hops(self) -> None:
        quote = {"marketInfos": [{"label": "Orca"}, {"ammKey": "amm-9"}, {}]}

        self.assertEqual(extract_route_hops(quote), ("Orca", "amm-9"))


class JupiterRouteProviderTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.provider = JupiterRouteProvider(
            logger=logging.getLogger("test.routes"),
            api_base_url="https://api.jup.ag/swap/v1",
            api_key="secret",
        )

    async def asyncTearDown(self) -> None:
        await self.provider.close()

    async def test_quote_returns_parsed_routes(self) -> None:
        self.provider._fetch_quote_payload = AsyncMock(  # type: ignore[method-assign]
            return_value=(200, _make_quote(), None)
        )

        routes = await self.provider.quote(input_token=SOL, output_token=MEME, amount=1_000_000, slippage_bps=75)

        self.assertEqual(len(routes), 1)
        params = self.provider._fetch_quote_payload.await_args.args[0]
        self.assertEqual(params["slippageBps"], "75")
        self.assertEqual(params["amount"], "1000000")

    async def test_no_route_response_yields_empty_list(self) -> None:
        self.provider._fetch_quote_payload = AsyncMock(  # type: ignore[method-assign]
            return_value=(400, {"error": "Could not find any route", "errorCode": "COULD_NOT_FIND_ANY_ROUTE"}, None)
        )

        routes = await self.provider.quote(input_token=SOL, output_token=MEME, amount=1, slippage_bps=50)

        self.assertEqual(routes, [])

    async def test_server_error_raises_quote_request_error(self) -> None:
        self.provider._fetch_quote_payload = AsyncMock(  # type: ignore[method-assign]
            return_value=(429, {"error": "Too many requests"}, 2.0)
        )

        with self.assertRaises(QuoteRequestError) as ctx:
            await self.provider.quote(input_token=SOL, output_token=MEME, amount=1, slippage_bps=50)

        self.assertEqual(ctx.exception.status, 429)
        self.assertEqual(ctx.exception.retry_after_seconds, 2.0)

    async def test_malformed_candidates_are_filtered(self) -> None:
        self.provider._fetch_quote_payload = AsyncMock(  # type: ignore[method-assign]
            return_value=(200, {"data": [_make_quote(outAmount="0"), _make_quote()]}, None)
        )

        routes = await self.provider.quote(input_token=SOL, output_token=MEME, amount=1_000_000, slippage_bps=50)

        self.assertEqual(len(routes), 1)
        self.assertEqual(routes[0].out_amount, 2_000_000)

    def test_endpoint_normalization_and_headers(self) -> None:
        self.assertEqual(self.provider._quote_endpoint, "https://api.jup.ag/swap/v1/quote")
        self.assertEqual(self.provider._build_headers()["x-api-key"], "secret")


if __name__ == "__main__":
    unittest.main()
