from __future__ import annotations

import unittest
from dataclasses import replace

from agent_trader.trading.routes import route_from_quote
from agent_trader.trading.types import Route, TradeConfig
from agent_trader.trading.validator import validate_route

SOL = "So11111111111111111111111111111111111111112"
MEME = "MeMe1111111111111111111111111111111111111111"


def _make_route(**overrides: object) -> Route:
    fields: dict[str, object] = {
        "input_token": SOL,
        "output_token": MEME,
        "in_amount": 1_000_000,
        "out_amount": 2_000_000,
        "worst_case_out_amount": 1_990_000,
        "hops": ("Raydium",),
        "price_impact": 0.005,
        "liquidity": 500_000_000.0,
    }
    fields.update(overrides)
    return Route(**fields)  # type: ignore[arg-type]


class ValidateRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = TradeConfig(max_slippage_bps=100, max_price_impact=0.01, min_liquidity=1_000_000.0)

    def test_route_within_all_bounds_is_accepted(self) -> None:
        verdict = validate_route(_make_route(), self.config)

        self.assertTrue(verdict.ok)
        self.assertIsNone(verdict.reason)

    def test_price_impact_above_max_is_rejected(self) -> None:
        verdict = validate_route(_make_route(price_impact=0.02), self.config)

        self.assertFalse(verdict.ok)
        self.assertEqual(verdict.reason, "PRICE_IMPACT")

    def test_price_impact_equal_to_max_is_accepted(self) -> None:
        verdict = validate_route(_make_route(price_impact=0.01), self.config)

        self.assertTrue(verdict.ok)

    def test_low_liquidity_is_reported_before_price_impact(self) -> None:
        verdict = validate_route(_make_route(liquidity=10.0, price_impact=0.5), self.config)

        self.assertEqual(verdict.reason, "LIQUIDITY")

    def test_price_impact_is_reported_before_slippage(self) -> None:
        verdict = validate_route(
            _make_route(price_impact=0.5, worst_case_out_amount=1_000_000),
            self.config,
        )

        self.assertEqual(verdict.reason, "PRICE_IMPACT")

    def test_wide_minimum_out_is_rejected_as_slippage(self) -> None:
        # 2% between quoted and worst-case output is 200 bps.
        verdict = validate_route(_make_route(worst_case_out_amount=1_960_000), self.config)

        self.assertFalse(verdict.ok)
        self.assertEqual(verdict.reason, "SLIPPAGE")

    def test_floored_minimum_out_at_requested_slippage_is_accepted(self) -> None:
        out_amount = 12_345
        quote = {
            "inputMint": SOL,
            "outputMint": MEME,
            "inAmount": "1000000",
            "outAmount": str(out_amount),
            "otherAmountThreshold": str(out_amount * (10_000 - 100) // 10_000),
            "priceImpactPct": "0.001",
            "routePlan": [{"swapInfo": {"label": "Raydium"}}],
        }
        route = route_from_quote(quote, input_token=SOL, output_token=MEME)
        assert route is not None
        config = TradeConfig(max_slippage_bps=100, max_price_impact=0.01)

        self.assertTrue(validate_route(route, config).ok)

        one_unit_wider = replace(route, worst_case_out_amount=route.worst_case_out_amount - 1)
        self.assertEqual(validate_route(one_unit_wider, config).reason, "SLIPPAGE")

    def test_zero_output_route_is_rejected(self) -> None:
        verdict = validate_route(_make_route(out_amount=0, worst_case_out_amount=0), self.config)

        self.assertEqual(verdict.reason, "SLIPPAGE")

    def test_limit_price_checked_only_when_given(self) -> None:
        route = _make_route()

        self.assertTrue(validate_route(route, self.config).ok)
        self.assertTrue(validate_route(route, self.config, limit_price=1.5).ok)
        verdict = validate_route(route, self.config, limit_price=2.5)
        self.assertEqual(verdict.reason, "LIMIT_PRICE")

    def test_zero_thresholds_reject_any_impact(self) -> None:
        config = TradeConfig(max_slippage_bps=0, max_price_impact=0.0, min_liquidity=0.0)

        self.assertEqual(validate_route(_make_route(), config).reason, "PRICE_IMPACT")
        exact = _make_route(price_impact=0.0, worst_case_out_amount=2_000_000)
        self.assertTrue(validate_route(exact, config).ok)

    def test_negative_config_values_are_refused(self) -> None:
        with self.assertRaises(ValueError):
            TradeConfig(max_price_impact=-0.1)


class TradeConfigTests(unittest.TestCase):
    def test_from_redis_overrides_defaults_and_keeps_missing_keys(self) -> None:
        defaults = TradeConfig(max_slippage_bps=50, retry_attempts=2)

        config = TradeConfig.from_redis(
            {"max_price_impact": "0.03", "use_priority_bundling": "1", "retry_attempts": ""},
            defaults,
        )

        self.assertEqual(config.max_price_impact, 0.03)
        self.assertTrue(config.use_priority_bundling)
        self.assertEqual(config.retry_attempts, 2)
        self.assertEqual(config.max_slippage_bps, 50)

    def test_from_redis_clamps_negative_values(self) -> None:
        config = TradeConfig.from_redis({"min_liquidity": "-5"}, TradeConfig())

        self.assertEqual(config.min_liquidity, 0.0)


if __name__ == "__main__":
    unittest.main()
