from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from agent_trader.bot_runtime.loop import (
    bootstrap_dependencies,
    resolve_trade_config,
    run_strategy_tick,
    run_trading_loop,
    watched_tokens,
)
from agent_trader.bot_runtime.settings import AppSettings
from agent_trader.trading.signals import MarketSignal
from agent_trader.trading.strategy import RuleAction, RuleCondition, StrategyRuleEngine, TradeRule, TradingStrategy
from agent_trader.trading.types import SOL_MINT, TradeConfig

MEME = "MeMe1111111111111111111111111111111111111111"
DOGE = "DoGe1111111111111111111111111111111111111111"


def _buy_rule() -> TradeRule:
    return TradeRule(
        condition=RuleCondition(kind="price", operator=">", value=1.0),
        action=RuleAction(side="buy", amount=1_000),
    )


def _settings(**overrides: object) -> AppSettings:
    settings = AppSettings.from_env()
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


class LoopHelpersTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.loop")
        self.executor = MagicMock()
        self.executor.config = TradeConfig()
        self.executor.execute_trade = AsyncMock()
        self.engine = StrategyRuleEngine(logger=self.logger, executor=self.executor)

    def test_watched_tokens_skip_paused_and_quote_token(self) -> None:
        self.engine.add_strategy(TradingStrategy(id="a", name="a", tokens=(MEME, SOL_MINT)))
        self.engine.add_strategy(TradingStrategy(id="b", name="b", tokens=(MEME, DOGE), status="paused"))

        self.assertEqual(watched_tokens(self.engine, quote_token=SOL_MINT), [MEME])

    def test_resolve_trade_config_falls_back_on_bad_values(self) -> None:
        defaults = TradeConfig(retry_attempts=2)

        self.assertEqual(resolve_trade_config({"retry_attempts": "5"}, defaults).retry_attempts, 5)
        self.assertEqual(resolve_trade_config({"retry_attempts": "junk"}, defaults).retry_attempts, 2)

    async def test_strategy_tick_samples_watched_tokens_and_fires(self) -> None:
        self.engine.add_strategy(TradingStrategy(id="a", name="a", tokens=(MEME,), rules=(_buy_rule(),)))
        feed = MagicMock()
        feed.sample_all = AsyncMock(return_value=[MarketSignal(token=MEME, price=2.0)])

        outcomes = await run_strategy_tick(logger=self.logger, engine=self.engine, signal_feed=feed, quote_token=SOL_MINT)

        feed.sample_all.assert_awaited_once_with([MEME])
        self.assertEqual(len(outcomes), 1)
        self.executor.execute_trade.assert_awaited_once()

    async def test_strategy_tick_without_strategies_does_not_sample(self) -> None:
        feed = MagicMock()
        feed.sample_all = AsyncMock()

        outcomes = await run_strategy_tick(logger=self.logger, engine=self.engine, signal_feed=feed, quote_token=SOL_MINT)

        self.assertEqual(outcomes, [])
        feed.sample_all.assert_not_awaited()

    async def test_trading_loop_applies_runtime_config_and_stops(self) -> None:
        stop_event = asyncio.Event()
        storage = MagicMock()
        storage.get_runtime_config = AsyncMock(return_value={"max_price_impact": "0.05", "trading_enabled": "0"})

        async def heartbeat(**_status: object) -> None:
            stop_event.set()

        storage.update_heartbeat = AsyncMock(side_effect=heartbeat)
        executor = MagicMock()
        feed = MagicMock()
        feed.sample_all = AsyncMock()

        await run_trading_loop(
            logger=self.logger,
            stop_event=stop_event,
            app_settings=_settings(watch_interval_seconds=0.05),
            storage=storage,
            executor=executor,
            engine=self.engine,
            signal_feed=feed,
            trade_defaults=TradeConfig(),
        )

        applied = executor.update_config.call_args.args[0]
        self.assertEqual(applied.max_price_impact, 0.05)
        feed.sample_all.assert_not_awaited()
        storage.update_heartbeat.assert_awaited_once()


class BootstrapTests(unittest.IsolatedAsyncioTestCase):
    async def test_retries_until_dependencies_connect(self) -> None:
        storage = MagicMock()
        storage.connect = AsyncMock(side_effect=[ConnectionError("redis down"), None])
        storage.publish_event = AsyncMock()
        storage.close = AsyncMock()
        route_provider = MagicMock(connect=AsyncMock(), close=AsyncMock())
        submitter = MagicMock(connect=AsyncMock(), close=AsyncMock(), healthcheck=AsyncMock())

        await bootstrap_dependencies(
            logger=logging.getLogger("test.loop"),
            stop_event=asyncio.Event(),
            app_settings=_settings(error_backoff_seconds=0.0),
            storage=storage,
            route_provider=route_provider,
            submitter=submitter,
            config_listener_loop=asyncio.get_running_loop(),
            on_config_update=AsyncMock(),
        )

        self.assertEqual(storage.connect.await_count, 2)
        storage.close.assert_awaited_once()
        route_provider.close.assert_awaited_once()
        submitter.healthcheck.assert_awaited_once()
        storage.start_config_listener.assert_called_once()

    async def test_stop_before_connect_raises(self) -> None:
        stop_event = asyncio.Event()
        stop_event.set()

        with self.assertRaises(RuntimeError):
            await bootstrap_dependencies(
                logger=logging.getLogger("test.loop"),
                stop_event=stop_event,
                app_settings=_settings(),
                storage=MagicMock(),
                route_provider=MagicMock(),
                submitter=MagicMock(),
                config_listener_loop=asyncio.get_running_loop(),
                on_config_update=AsyncMock(),
            )


if __name__ == "__main__":
    unittest.main()
