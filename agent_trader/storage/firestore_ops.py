from __future__ import annotations

import asyncio
import contextlib
import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Awaitable

from google.cloud import firestore

from agent_trader.common import guarded_call, log_event

from .helpers import utc_day_id
from .settings import ConfigUpdateHandler

MAX_DOC_ID_LENGTH = 128


class FirestoreStorageOps:
    @staticmethod
    def _normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
        """Return a document path, appending ``leaf_doc_id`` when given a collection path."""
        segments = [part for part in doc_path.split("/") if part]
        if not segments:
            raise ValueError("FIRESTORE_CONFIG_DOC must not be empty.")

        normalized = "/".join(segments)
        if len(segments) % 2 == 0:
            return normalized, False
        return f"{normalized}/{leaf_doc_id}", True

    @staticmethod
    def _doc_id_from_text(value: str) -> str:
        doc_id = value.strip().replace("/", "_")
        if not doc_id:
            raise ValueError("Document id source must not be empty.")
        if len(doc_id) <= MAX_DOC_ID_LENGTH:
            return doc_id

        digest = hashlib.sha256(doc_id.encode("utf-8")).hexdigest()[:16]
        return f"{doc_id[:96]}-{digest}"

    def _run_metadata(self) -> dict[str, Any]:
        return {
            "bot_id": self.settings.bot_id,
            "run_id": self.settings.bot_run_id,
            "env": self.settings.bot_env,
            "dry_run": self.settings.dry_run,
            "schema_version": self.settings.config_schema_version,
        }

    async def mark_run_stopped(self, *, reason: str) -> None:
        run_ref = self._run_doc_ref
        if run_ref is None:
            return

        await guarded_call(
            lambda: asyncio.to_thread(
                run_ref.set,
                {
                    "status": "stopped",
                    "stop_reason": reason,
                    "stopped_at": firestore.SERVER_TIMESTAMP,
                    "updated_at": firestore.SERVER_TIMESTAMP,
                    "trades_recorded": self._trades_recorded,
                },
                merge=True,
            ),
            logger=self._logger,
            event="run_status_update_failed",
            message="Failed to mark run as stopped",
        )

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        events_ref = self._events_collection_ref
        if self._firestore is None or events_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="publish_skipped",
                message="Firestore is not connected; event not persisted",
                skipped_event=event,
            )
            return

        payload = self._run_metadata()
        payload.update(
            {
                "timestamp": datetime.now(timezone.utc),
                "server_timestamp": firestore.SERVER_TIMESTAMP,
                "level": level,
                "event": event,
                "message": message,
            }
        )
        if details:
            payload["details"] = details

        async def write_event() -> None:
            if event_id:
                # Keyed writes make re-delivery of the same trade event idempotent.
                event_ref = events_ref.document(self._doc_id_from_text(event_id))
                await asyncio.to_thread(event_ref.set, payload, merge=True)
                return
            await asyncio.to_thread(events_ref.add, payload)

        await guarded_call(
            write_event,
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
            event_name=event,
        )

    async def record_trade(self, *, trade: dict[str, Any], trade_id: str) -> None:
        trades_ref = self._trades_collection_ref
        if self._firestore is None or trades_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="trade_persist_skipped",
                message="Firestore is not connected; trade not persisted",
                trade_id=trade_id,
            )
            return

        document_id = self._doc_id_from_text(trade_id)
        payload = self._run_metadata()
        payload.update(trade)
        payload["trade_id"] = document_id
        payload["trade_day"] = utc_day_id()
        payload["created_at"] = firestore.SERVER_TIMESTAMP

        async def write_trade() -> bool:
            await asyncio.to_thread(trades_ref.document(document_id).set, payload, merge=True)
            return True

        written = await guarded_call(
            write_trade,
            logger=self._logger,
            event="trade_persist_failed",
            message="Failed to persist trade record",
            level="error",
            default=False,
            trade_id=document_id,
        )
        if not written:
            return

        self._trades_recorded += 1
        await self._bump_trade_counters(
            {
                "executed_count": firestore.Increment(1),
                "last_trade_id": document_id,
                "last_output_token": trade.get("output_token"),
            },
            trade_id=document_id,
        )

    async def record_trade_failure(self, *, reason: str, error_kind: str) -> None:
        counter_key = self._doc_id_from_text(reason or error_kind or "UNKNOWN")
        await self._bump_trade_counters(
            {
                "failed_count": firestore.Increment(1),
                "failures_by_reason": {counter_key: firestore.Increment(1)},
                "last_failure_kind": error_kind,
            },
            reason=reason,
        )

    async def _bump_trade_counters(self, fields: dict[str, Any], **log_fields: Any) -> None:
        metrics_ref = self._metrics_doc_ref
        if metrics_ref is None:
            return

        payload: dict[str, Any] = {
            "updated_at": firestore.SERVER_TIMESTAMP,
            "run_id": self.settings.bot_run_id,
            "day": utc_day_id(),
        }
        payload.update(fields)
        await guarded_call(
            lambda: asyncio.to_thread(metrics_ref.set, payload, merge=True),
            logger=self._logger,
            event="trade_counter_update_failed",
            message="Failed to update trade counters",
            level="error",
            **log_fields,
        )

    def start_config_listener(
        self,
        loop: asyncio.AbstractEventLoop,
        on_update: ConfigUpdateHandler | None = None,
    ) -> None:
        if self._config_doc_ref is None:
            raise RuntimeError("StorageGateway is not connected.")
        if self._watch is not None:
            return

        def on_snapshot(doc_snapshot: list[Any], _changes: list[Any], _read_time: Any) -> None:
            # Runs on a Firestore watch thread; hop back onto the event loop.
            if not doc_snapshot or loop.is_closed():
                return
            snapshot = doc_snapshot[0]
            config = (snapshot.to_dict() if snapshot.exists else None) or {}
            loop.call_soon_threadsafe(self._schedule_config_sync, self._handle_config_update(config, on_update))

        self._watch = self._config_doc_ref.on_snapshot(on_snapshot)
        log_event(
            self._logger,
            level="info",
            event="config_watch_started",
            message="Runtime config watcher started",
            doc_path=self._resolved_firestore_config_doc,
        )

    def _schedule_config_sync(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)

        def on_done(done_task: asyncio.Future[None]) -> None:
            with contextlib.suppress(asyncio.CancelledError):
                error = done_task.exception()
                if error is not None:
                    log_event(
                        self._logger,
                        level="error",
                        event="config_sync_failed",
                        message="Runtime config sync failed",
                        error=str(error),
                    )

        task.add_done_callback(on_done)

    async def _handle_config_update(
        self,
        config: dict[str, Any],
        on_update: ConfigUpdateHandler | None,
    ) -> None:
        await self.sync_config_to_redis(config, source="snapshot")
        if on_update is not None:
            await on_update(config)

    def _initialize_namespace_refs(self) -> None:
        client = self._require_firestore()
        settings = self.settings

        bot_ref = client.document(f"{settings.bot_collection}/{settings.bot_id}")
        run_ref = bot_ref.collection(settings.runs_collection).document(settings.bot_run_id)

        self._bot_doc_ref = bot_ref
        self._run_doc_ref = run_ref
        self._events_collection_ref = run_ref.collection(settings.events_collection)
        self._trades_collection_ref = bot_ref.collection(settings.trades_collection)
        self._metrics_doc_ref = bot_ref.collection(settings.metrics_collection).document(
            settings.metrics_doc_id
        )

    async def _ensure_bot_namespace(self) -> None:
        if self._bot_doc_ref is None or self._run_doc_ref is None:
            raise RuntimeError("Firestore namespace references are not initialized.")

        metadata = self._run_metadata()
        bot_payload = {
            "bot_id": metadata["bot_id"],
            "env": metadata["env"],
            "schema_version": metadata["schema_version"],
            "config_doc": self._resolved_firestore_config_doc,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        run_payload = dict(metadata)
        run_payload.update(
            {
                "status": "running",
                "pid": os.getpid(),
                "started_at": firestore.SERVER_TIMESTAMP,
                "updated_at": firestore.SERVER_TIMESTAMP,
            }
        )

        await asyncio.gather(
            asyncio.to_thread(self._bot_doc_ref.set, bot_payload, merge=True),
            asyncio.to_thread(self._run_doc_ref.set, run_payload, merge=True),
        )

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
