from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from agent_trader.trading.types import to_bool, to_int

ConfigUpdateHandler = Callable[[dict[str, Any]], Awaitable[None]]

DEFAULT_BOT_ID = "agent-trader"


def _clean_segment(value: str | None, default: str) -> str:
    # Firestore path segments and Redis key parts must not contain "/".
    cleaned = (value or "").strip().strip("/").replace("/", "-")
    return cleaned or default


@dataclass(slots=True)
class StorageSettings:
    """Where the bot keeps its state.

    Redis keys are namespaced by ``redis_key_prefix`` (the bot id unless
    overridden) so several bots can share one Redis. Firestore documents live
    under ``{bot_collection}/{bot_id}``.
    """

    redis_url: str
    redis_key_prefix: str
    firestore_project_id: str | None
    firestore_config_doc: str
    firestore_config_leaf_doc_id: str
    bot_collection: str
    bot_id: str
    bot_env: str
    bot_run_id: str
    dry_run: bool
    runs_collection: str
    events_collection: str
    trades_collection: str
    metrics_collection: str
    metrics_doc_id: str
    config_schema_version: int
    heartbeat_ttl_seconds: int
    trade_journal_max_len: int

    @property
    def redis_config_key(self) -> str:
        return f"{self.redis_key_prefix}:config"

    @property
    def heartbeat_key(self) -> str:
        return f"{self.redis_key_prefix}:heartbeat"

    @property
    def trade_journal_key(self) -> str:
        return f"{self.redis_key_prefix}:trades:journal"

    @classmethod
    def from_env(cls) -> "StorageSettings":
        bot_collection = _clean_segment(os.getenv("BOT_COLLECTION"), "bots")
        bot_id = _clean_segment(os.getenv("BOT_ID"), DEFAULT_BOT_ID)
        run_id = os.getenv("BOT_RUN_ID") or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ")

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            redis_key_prefix=_clean_segment(os.getenv("REDIS_KEY_PREFIX"), bot_id),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            firestore_config_doc=os.getenv("FIRESTORE_CONFIG_DOC") or f"{bot_collection}/{bot_id}/config/runtime",
            firestore_config_leaf_doc_id=_clean_segment(os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID"), "runtime"),
            bot_collection=bot_collection,
            bot_id=bot_id,
            bot_env=os.getenv("BOT_ENV", "dev"),
            bot_run_id=_clean_segment(run_id, "run"),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            runs_collection=_clean_segment(os.getenv("BOT_RUNS_COLLECTION"), "runs"),
            events_collection=_clean_segment(os.getenv("BOT_EVENTS_COLLECTION"), "events"),
            trades_collection=_clean_segment(os.getenv("BOT_TRADES_COLLECTION"), "trades"),
            metrics_collection=_clean_segment(os.getenv("BOT_METRICS_COLLECTION"), "metrics"),
            metrics_doc_id=_clean_segment(os.getenv("BOT_METRICS_DOC_ID"), "trading"),
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            heartbeat_ttl_seconds=max(0, to_int(os.getenv("REDIS_HEARTBEAT_TTL_SECONDS"), 120)),
            trade_journal_max_len=max(1, to_int(os.getenv("REDIS_TRADE_JOURNAL_MAX_LEN"), 1000)),
        )
