from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from agent_trader.common import guarded_call, log_event
from agent_trader.trading.events import EVENT_TRADE_EXECUTED, EventChannel, TradeEvent

from .firestore_ops import FirestoreStorageOps
from .redis_ops import RedisStorageOps
from .settings import StorageSettings

SUBSCRIBER_NAME = "storage"


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    """Persistence for runtime config and trade outcomes.

    The trading core never calls the gateway directly; it is attached to the
    event channel and reacts to ``trade_executed`` and ``trade_failed``.
    """

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._bot_doc_ref: Any | None = None
        self._run_doc_ref: Any | None = None
        self._events_collection_ref: Any | None = None
        self._trades_collection_ref: Any | None = None
        self._metrics_doc_ref: Any | None = None
        self._config_doc_ref: Any | None = None
        self._watch: Any | None = None
        self._trades_recorded = 0
        self._resolved_firestore_config_doc = settings.firestore_config_doc

    @property
    def bot_id(self) -> str:
        return self.settings.bot_id

    @property
    def run_id(self) -> str:
        return self.settings.bot_run_id

    async def connect(self) -> None:
        await self._connect_redis()
        self._connect_firestore()
        self._initialize_namespace_refs()
        await self._ensure_bot_namespace()
        await self._load_startup_config()

    async def _connect_redis(self) -> None:
        client = redis.from_url(self.settings.redis_url, decode_responses=True)
        await client.ping()
        self._redis = client
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
            key_prefix=self.settings.redis_key_prefix,
        )

    def _connect_firestore(self) -> None:
        credentials_path = os.getenv("FIREBASE_CREDENTIALS")
        if credentials_path and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = credentials_path

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        doc_path, was_collection_path = self._normalize_doc_path(
            self.settings.firestore_config_doc,
            self.settings.firestore_config_leaf_doc_id,
        )
        if was_collection_path:
            log_event(
                self._logger,
                level="warning",
                event="config_doc_path_normalized",
                message="FIRESTORE_CONFIG_DOC pointed at a collection; using its runtime document",
                doc_path=doc_path,
            )
        self._resolved_firestore_config_doc = doc_path
        self._config_doc_ref = self._firestore.document(doc_path)

    async def _load_startup_config(self) -> None:
        snapshot = await asyncio.to_thread(self._config_doc_ref.get)
        if snapshot.exists:
            await self.sync_config_to_redis(snapshot.to_dict() or {}, source="startup")
        else:
            # An empty hash means every trade setting falls back to its env default.
            await self.sync_config_to_redis({}, source="startup_missing")
            log_event(
                self._logger,
                level="warning",
                event="config_missing",
                message="Runtime config document does not exist; using environment defaults",
                doc_path=self._resolved_firestore_config_doc,
            )

        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            doc_path=self._resolved_firestore_config_doc,
            run_id=self.run_id,
        )

    async def healthcheck(self) -> None:
        await self._require_redis().ping()
        if self._config_doc_ref is None:
            raise RuntimeError("Firestore config document reference is not initialized.")
        await asyncio.to_thread(self._config_doc_ref.get)

    def attach(self, channel: EventChannel) -> None:
        channel.subscribe(SUBSCRIBER_NAME, self.handle_trade_event)

    async def handle_trade_event(self, event: TradeEvent) -> None:
        payload = event.to_dict()
        await guarded_call(
            lambda: self.append_trade_journal(payload),
            logger=self._logger,
            event="trade_journal_failed",
            message="Failed to append trade event to Redis journal",
            kind=event.kind,
        )

        if event.kind == EVENT_TRADE_EXECUTED and event.result is not None:
            await self.record_trade(trade=event.result.to_dict(), trade_id=event.result.id)
            await self.publish_event(
                level="info",
                event=event.kind,
                message="Trade executed",
                details=payload,
                event_id=f"{event.kind}:{event.result.id}",
            )
            return

        await self.record_trade_failure(reason=event.reason or "", error_kind=event.error_kind or "")
        await self.publish_event(
            level="warning",
            event=event.kind,
            message=f"Trade failed: {event.reason}",
            details=payload,
        )

    async def close(self) -> None:
        watch, self._watch = self._watch, None
        if watch is not None:
            # The watch runs on its own thread and may already be shutting down.
            with contextlib.suppress(Exception):
                watch.unsubscribe()

        client, self._redis = self._redis, None
        if client is not None:
            await client.aclose()

        self._bot_doc_ref = None
        self._run_doc_ref = None
        self._events_collection_ref = None
        self._trades_collection_ref = None
        self._metrics_doc_ref = None
        self._config_doc_ref = None
        self._firestore = None
