from __future__ import annotations

import os
from dataclasses import dataclass

from agent_trader.trading.balances import DEFAULT_SOL_RESERVE_LAMPORTS
from agent_trader.trading.routes import DEFAULT_JUPITER_QUOTE_ENDPOINT
from agent_trader.trading.submitters import DEFAULT_JUPITER_SWAP_ENDPOINT
from agent_trader.trading.types import SOL_MINT, to_bool, to_float, to_int


def parse_probe_amounts(raw: str) -> dict[str, int]:
    """Parse ``mint=amount`` pairs separated by commas; malformed pairs are dropped."""
    amounts: dict[str, int] = {}
    for pair in raw.split(","):
        token, _, amount = pair.partition("=")
        value = to_int(amount, 0)
        if token.strip() and value > 0:
            amounts[token.strip()] = value
    return amounts


@dataclass(slots=True)
class AppSettings:
    watch_interval_seconds: float
    error_backoff_seconds: float
    log_level: str
    jupiter_quote_api: str
    jupiter_swap_api: str
    jupiter_api_key: str
    solana_rpc_url: str
    private_key: str
    dry_run: bool
    jito_block_engine_url: str
    strategies_file: str
    max_history_size: int
    event_queue_size: int
    quote_token: str
    probe_amount: int
    probe_amounts: dict[str, int]
    momentum_window: int
    advisory_url: str
    advisory_api_key: str
    sol_reserve_lamports: int
    live_confirm_timeout_seconds: float
    live_confirm_poll_interval_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            watch_interval_seconds=max(0.05, to_float(os.getenv("WATCH_INTERVAL_SECONDS"), 15.0)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            jupiter_quote_api=os.getenv("JUPITER_QUOTE_API", DEFAULT_JUPITER_QUOTE_ENDPOINT).strip(),
            jupiter_swap_api=os.getenv("JUPITER_SWAP_API", DEFAULT_JUPITER_SWAP_ENDPOINT).strip(),
            jupiter_api_key=os.getenv("JUPITER_API_KEY", "").strip(),
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", ""),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            jito_block_engine_url=os.getenv("JITO_BLOCK_ENGINE_URL", "").strip(),
            strategies_file=os.getenv("STRATEGIES_FILE", "strategies.json").strip(),
            max_history_size=max(1, to_int(os.getenv("MAX_HISTORY_SIZE"), 1000)),
            event_queue_size=max(1, to_int(os.getenv("EVENT_QUEUE_SIZE"), 256)),
            quote_token=os.getenv("QUOTE_TOKEN", SOL_MINT).strip() or SOL_MINT,
            probe_amount=max(1, to_int(os.getenv("SIGNAL_PROBE_AMOUNT"), 1_000_000)),
            probe_amounts=parse_probe_amounts(os.getenv("SIGNAL_PROBE_AMOUNTS", "")),
            momentum_window=max(2, to_int(os.getenv("SIGNAL_MOMENTUM_WINDOW"), 10)),
            advisory_url=os.getenv("ADVISORY_URL", "").strip(),
            advisory_api_key=os.getenv("ADVISORY_API_KEY", "").strip(),
            sol_reserve_lamports=max(0, to_int(os.getenv("SOL_RESERVE_LAMPORTS"), DEFAULT_SOL_RESERVE_LAMPORTS)),
            live_confirm_timeout_seconds=max(
                5.0,
                to_float(os.getenv("LIVE_CONFIRM_TIMEOUT_SECONDS"), 45.0),
            ),
            live_confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("LIVE_CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
        )
