from __future__ import annotations

import asyncio
import logging
from typing import Any

from agent_trader.common import close_resources, guarded_call, log_event, retry_delay, wait_with_stop
from agent_trader.storage import ConfigUpdateHandler, StorageGateway
from agent_trader.trading import (
    FireOutcome,
    JupiterRouteProvider,
    SignalFeed,
    StrategyRuleEngine,
    Submitter,
    TradeConfig,
    TradeExecutor,
)
from agent_trader.trading.types import to_bool

from .settings import AppSettings

MAX_BOOTSTRAP_BACKOFF_SECONDS = 60.0


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    route_provider: JupiterRouteProvider,
    submitter: Submitter,
    config_listener_loop: asyncio.AbstractEventLoop,
    on_config_update: ConfigUpdateHandler,
) -> None:
    attempt = 0
    while not stop_event.is_set():
        attempt += 1
        try:
            await storage.connect()
            storage.start_config_listener(config_listener_loop, on_update=on_config_update)
            await route_provider.connect()
            await submitter.connect()
            await submitter.healthcheck()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                attempt=attempt,
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            await close_resources(
                {
                    "route_provider": route_provider.close,
                    "submitter": submitter.close,
                    "storage": storage.close,
                },
                logger=logger,
                reason="bootstrap_retry",
            )

            delay = retry_delay(
                attempt,
                base_seconds=app_settings.error_backoff_seconds,
                max_seconds=MAX_BOOTSTRAP_BACKOFF_SECONDS,
            )
            await wait_with_stop(stop_event, delay)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


def watched_tokens(engine: StrategyRuleEngine, *, quote_token: str) -> list[str]:
    tokens: list[str] = []
    for strategy in engine.strategies():
        if not strategy.active:
            continue
        for token in strategy.tokens:
            if token != quote_token and token not in tokens:
                tokens.append(token)
    return tokens


async def run_strategy_tick(
    *,
    logger: logging.Logger,
    engine: StrategyRuleEngine,
    signal_feed: SignalFeed,
    quote_token: str,
) -> list[FireOutcome]:
    tokens = watched_tokens(engine, quote_token=quote_token)
    if not tokens:
        return []

    signals = await signal_feed.sample_all(tokens)
    outcome_groups = await asyncio.gather(*(engine.on_signal(signal) for signal in signals))
    outcomes = [outcome for group in outcome_groups for outcome in group]

    log_event(
        logger,
        level="debug",
        event="strategy_tick",
        message="Strategy tick evaluated",
        tokens=len(tokens),
        fired=len(outcomes),
        succeeded=sum(1 for outcome in outcomes if outcome.ok),
    )
    return outcomes


def resolve_trade_config(runtime_config: dict[str, Any], defaults: TradeConfig) -> TradeConfig:
    try:
        return TradeConfig.from_redis(runtime_config, defaults)
    except ValueError:
        return defaults


async def run_trading_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    executor: TradeExecutor,
    engine: StrategyRuleEngine,
    signal_feed: SignalFeed,
    trade_defaults: TradeConfig,
) -> None:
    loop = asyncio.get_running_loop()
    next_tick = loop.time()
    trading_paused = False

    while not stop_event.is_set():
        try:
            runtime_config = await storage.get_runtime_config()
            executor.update_config(resolve_trade_config(runtime_config, trade_defaults))

            enabled = to_bool(runtime_config.get("trading_enabled"), True)
            if enabled == trading_paused:
                trading_paused = not enabled
                log_event(
                    logger,
                    level="warning" if trading_paused else "info",
                    event="trading_paused" if trading_paused else "trading_resumed",
                    message="Trading paused by runtime config" if trading_paused else "Trading resumed",
                )

            if not trading_paused:
                await run_strategy_tick(
                    logger=logger,
                    engine=engine,
                    signal_feed=signal_feed,
                    quote_token=app_settings.quote_token,
                )

            await storage.update_heartbeat(trading_paused=trading_paused, history_size=len(executor.history))
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="loop_error",
                message="Trading loop iteration failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="loop_error",
                    message="Trading loop iteration failed",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="loop_error_publish_failed",
                message="Failed to publish loop error",
            )
            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)
            next_tick = loop.time()
            continue

        next_tick += app_settings.watch_interval_seconds
        await wait_with_stop(stop_event, max(0.0, next_tick - loop.time()))
