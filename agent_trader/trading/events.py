from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from agent_trader.common import log_event

from .types import TradeParams, TradeResult, now_epoch

TradeEventKind = Literal["trade_executed", "trade_failed"]
TradeEventHandler = Callable[["TradeEvent"], Awaitable[None] | None]

EVENT_TRADE_EXECUTED: TradeEventKind = "trade_executed"
EVENT_TRADE_FAILED: TradeEventKind = "trade_failed"


@dataclass(slots=True, frozen=True)
class TradeEvent:
    kind: TradeEventKind
    timestamp: float
    result: TradeResult | None = None
    reason: str | None = None
    error_kind: str | None = None
    params: TradeParams | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def executed(cls, result: TradeResult, *, params: TradeParams | None = None) -> "TradeEvent":
        return cls(kind=EVENT_TRADE_EXECUTED, timestamp=now_epoch(), result=result, params=params)

    @classmethod
    def failed(
        cls,
        *,
        reason: str,
        error_kind: str,
        params: TradeParams | None = None,
        details: dict[str, Any] | None = None,
    ) -> "TradeEvent":
        return cls(
            kind=EVENT_TRADE_FAILED,
            timestamp=now_epoch(),
            reason=reason,
            error_kind=error_kind,
            params=params,
            details=details or {},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "timestamp": self.timestamp,
            "details": dict(self.details),
        }
        if self.result is not None:
            payload["result"] = self.result.to_dict()
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.error_kind is not None:
            payload["error_kind"] = self.error_kind
        if self.params is not None:
            payload["input_token"] = self.params.input_token
            payload["output_token"] = self.params.output_token
            payload["amount"] = self.params.amount
            payload["strategy_id"] = self.params.strategy_id
        return payload


class _Subscription:
    def __init__(
        self,
        *,
        name: str,
        handler: TradeEventHandler,
        kinds: frozenset[str] | None,
        queue_size: int,
    ) -> None:
        self.name = name
        self.handler = handler
        self.kinds = kinds
        self.queue: asyncio.Queue[TradeEvent] = asyncio.Queue(maxsize=max(1, queue_size))
        self.task: asyncio.Task[None] | None = None
        self.dropped = 0

    def wants(self, event: TradeEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds


class EventChannel:
    """Publish/subscribe fan-out for trade events.

    Delivery is at-most-once: ``publish`` never awaits, each subscriber has a
    bounded queue drained by its own task, and a full queue drops the event.
    """

    def __init__(self, *, logger: logging.Logger, queue_size: int = 256) -> None:
        self._logger = logger
        self._queue_size = queue_size
        self._subscriptions: dict[str, _Subscription] = {}
        self._published = 0

    @property
    def published_count(self) -> int:
        return self._published

    def dropped_count(self, name: str) -> int:
        subscription = self._subscriptions.get(name)
        return subscription.dropped if subscription else 0

    def subscribe(
        self,
        name: str,
        handler: TradeEventHandler,
        *,
        kinds: set[str] | None = None,
        queue_size: int | None = None,
    ) -> None:
        if name in self._subscriptions:
            raise ValueError(f"Subscriber already registered: {name}")
        self._subscriptions[name] = _Subscription(
            name=name,
            handler=handler,
            kinds=frozenset(kinds) if kinds else None,
            queue_size=queue_size or self._queue_size,
        )

    async def unsubscribe(self, name: str) -> None:
        subscription = self._subscriptions.pop(name, None)
        if subscription is not None:
            await self._stop_subscription(subscription)

    def publish(self, event: TradeEvent) -> None:
        self._published += 1
        for subscription in list(self._subscriptions.values()):
            if not subscription.wants(event):
                continue
            self._ensure_dispatcher(subscription)
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                subscription.dropped += 1
                log_event(
                    self._logger,
                    level="warning",
                    event="event_dropped",
                    message="Subscriber queue is full; trade event dropped",
                    subscriber=subscription.name,
                    kind=event.kind,
                    dropped=subscription.dropped,
                )

    async def drain(self) -> None:
        for subscription in list(self._subscriptions.values()):
            if subscription.task is not None:
                await subscription.queue.join()

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await self._stop_subscription(subscription)
        self._subscriptions.clear()

    def _ensure_dispatcher(self, subscription: _Subscription) -> None:
        if subscription.task is not None and not subscription.task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        subscription.task = loop.create_task(
            self._dispatch(subscription),
            name=f"event-subscriber:{subscription.name}",
        )

    async def _dispatch(self, subscription: _Subscription) -> None:
        while True:
            event = await subscription.queue.get()
            try:
                outcome = subscription.handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="error",
                    event="event_handler_failed",
                    message="Trade event subscriber raised an error",
                    subscriber=subscription.name,
                    kind=event.kind,
                    error=str(error),
                )
            finally:
                subscription.queue.task_done()

    @staticmethod
    async def _stop_subscription(subscription: _Subscription) -> None:
        task = subscription.task
        subscription.task = None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
