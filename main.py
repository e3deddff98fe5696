from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from typing import Any

from dotenv import load_dotenv

from agent_trader.bot_runtime import AppSettings, bootstrap_dependencies, run_trading_loop
from agent_trader.common import log_event, setup_logger
from agent_trader.storage import StorageGateway, StorageSettings
from agent_trader.trading import (
    DryRunSubmitter,
    EventChannel,
    HttpAdvisoryProvider,
    JupiterRouteProvider,
    LiveSwapSubmitter,
    SignalFeed,
    StrategyRuleEngine,
    RpcBalanceProvider,
    Submitter,
    TradeConfig,
    TradeExecutor,
    TradeHistoryStore,
    load_strategies,
    parse_keypair,
)


async def main() -> None:
    load_dotenv()

    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()
    trade_defaults = TradeConfig.from_env_defaults()
    logger = setup_logger(app_settings.log_level)

    log_event(
        logger,
        level="info",
        event="bot_starting",
        message="Starting agent trader",
        dry_run=app_settings.dry_run,
        bot_id=storage_settings.bot_id,
        watch_interval_seconds=app_settings.watch_interval_seconds,
        trade_config=trade_defaults.to_dict(),
    )

    storage = StorageGateway(storage_settings, logger)
    route_provider = JupiterRouteProvider(
        logger=logger,
        api_base_url=app_settings.jupiter_quote_api,
        api_key=app_settings.jupiter_api_key,
    )
    if app_settings.dry_run:
        submitter: Submitter = DryRunSubmitter(logger=logger)
    else:
        submitter = LiveSwapSubmitter(
            logger=logger,
            rpc_url=app_settings.solana_rpc_url,
            private_key=app_settings.private_key,
            swap_api_url=app_settings.jupiter_swap_api,
            jupiter_api_key=app_settings.jupiter_api_key,
            jito_block_engine_url=app_settings.jito_block_engine_url,
            confirm_timeout_seconds=app_settings.live_confirm_timeout_seconds,
            confirm_poll_interval_seconds=app_settings.live_confirm_poll_interval_seconds,
        )

    events = EventChannel(logger=logger, queue_size=app_settings.event_queue_size)
    history = TradeHistoryStore(max_size=app_settings.max_history_size)
    executor = TradeExecutor(
        logger=logger,
        route_provider=route_provider,
        submitter=submitter,
        history=history,
        events=events,
        config=trade_defaults,
    )
    balance_provider: RpcBalanceProvider | None = None
    if app_settings.solana_rpc_url and app_settings.private_key:
        balance_provider = RpcBalanceProvider(
            logger=logger,
            rpc_url=app_settings.solana_rpc_url,
            owner=str(parse_keypair(app_settings.private_key).pubkey()),
            sol_reserve_lamports=app_settings.sol_reserve_lamports,
        )
    else:
        log_event(
            logger,
            level="warning",
            event="balance_provider_disabled",
            message="SOLANA_RPC_URL or PRIVATE_KEY missing; rules trading the full balance are skipped",
        )
    advisory = (
        HttpAdvisoryProvider(logger=logger, url=app_settings.advisory_url, api_key=app_settings.advisory_api_key)
        if app_settings.advisory_url
        else None
    )
    if advisory is None:
        log_event(
            logger,
            level="info",
            event="advisory_disabled",
            message="ADVISORY_URL not set; signal conditions never match",
        )

    engine = StrategyRuleEngine(logger=logger, executor=executor, balance_provider=balance_provider)
    signal_feed = SignalFeed(
        logger=logger,
        route_provider=route_provider,
        advisory=advisory,
        quote_token=app_settings.quote_token,
        probe_amount=app_settings.probe_amount,
        probe_amounts=app_settings.probe_amounts,
        momentum_window=app_settings.momentum_window,
    )

    if os.path.exists(app_settings.strategies_file):
        for strategy in load_strategies(app_settings.strategies_file, defaults=trade_defaults):
            engine.add_strategy(strategy)
    else:
        log_event(
            logger,
            level="warning",
            event="strategies_file_missing",
            message="Strategies file not found; no strategies loaded",
            path=app_settings.strategies_file,
        )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    async def on_config_update(config: dict[str, Any]) -> None:
        log_event(
            logger,
            level="info",
            event="runtime_config_updated",
            message="Runtime config updated",
            items=len(config),
        )

    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        storage=storage,
        route_provider=route_provider,
        submitter=submitter,
        config_listener_loop=loop,
        on_config_update=on_config_update,
    )
    storage.attach(events)

    await storage.publish_event(
        level="INFO",
        event="bot_started",
        message="Bot process started",
        details={
            "dry_run": app_settings.dry_run,
            "strategies": [strategy.id for strategy in engine.strategies()],
            "watch_interval_seconds": app_settings.watch_interval_seconds,
        },
    )

    try:
        await run_trading_loop(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            executor=executor,
            engine=engine,
            signal_feed=signal_feed,
            trade_defaults=trade_defaults,
        )
    finally:
        with contextlib.suppress(Exception):
            await asyncio.wait_for(events.drain(), timeout=5.0)
        with contextlib.suppress(Exception):
            await events.close()

        with contextlib.suppress(Exception):
            await storage.publish_event(
                level="INFO",
                event="bot_stopped",
                message="Bot process stopped gracefully",
                details={"trades_recorded": len(history)},
            )
        with contextlib.suppress(Exception):
            await storage.mark_run_stopped(reason="shutdown")

        with contextlib.suppress(Exception):
            await route_provider.close()
        with contextlib.suppress(Exception):
            await submitter.close()
        if balance_provider is not None:
            with contextlib.suppress(Exception):
                await balance_provider.close()
        if advisory is not None:
            with contextlib.suppress(Exception):
                await advisory.close()
        with contextlib.suppress(Exception):
            await storage.close()

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
