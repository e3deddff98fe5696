from __future__ import annotations

from typing import Any

from redis.asyncio.client import Redis

from agent_trader.common import log_event

from .helpers import encode_json, now_iso, serialize_for_redis


class RedisStorageOps:
    async def sync_config_to_redis(self, config: dict[str, Any], *, source: str) -> None:
        """Replace the runtime config hash with ``config`` in one transaction."""
        redis_client = self._require_redis()
        key = self.settings.redis_config_key

        mapping = {str(name): serialize_for_redis(value) for name, value in config.items()}
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.delete(key)
        if mapping:
            pipeline.hset(key, mapping=mapping)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="config_synced",
            message="Runtime config mirrored to Redis",
            key=key,
            items=len(mapping),
            source=source,
        )

    async def get_runtime_config(self) -> dict[str, str]:
        return await self._require_redis().hgetall(self.settings.redis_config_key)

    async def append_trade_journal(self, entry: dict[str, Any]) -> None:
        """Push an event onto the capped journal list, newest first."""
        redis_client = self._require_redis()
        key = self.settings.trade_journal_key
        payload = {"recorded_at": now_iso(), "run_id": self.settings.bot_run_id}
        payload.update(entry)

        pipeline = redis_client.pipeline(transaction=True)
        pipeline.lpush(key, encode_json(payload))
        pipeline.ltrim(key, 0, self.settings.trade_journal_max_len - 1)
        await pipeline.execute()

    async def update_heartbeat(self, **status: Any) -> None:
        payload = {"at": now_iso(), "run_id": self.settings.bot_run_id}
        payload.update(status)
        ttl = self.settings.heartbeat_ttl_seconds
        await self._require_redis().set(
            self.settings.heartbeat_key,
            encode_json(payload),
            ex=ttl if ttl > 0 else None,
        )

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
