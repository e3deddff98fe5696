from __future__ import annotations

import asyncio
import logging
import unittest

from agent_trader.trading.events import EventChannel, TradeEvent
from agent_trader.trading.types import TradeParams, TradeResult


def _result(trade_id: str = "trd-1") -> TradeResult:
    return TradeResult(
        id=trade_id,
        input_token="SOL",
        output_token="MEME",
        input_amount=10,
        output_amount=20,
        execution_price=2.0,
        slippage=0.0,
        price_impact=0.0,
        fee=0,
        route=("Orca",),
        timestamp=1.0,
    )


class EventChannelTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.channel = EventChannel(logger=logging.getLogger("test.events"), queue_size=8)

    async def asyncTearDown(self) -> None:
        await self.channel.close()

    async def test_subscribers_receive_published_events(self) -> None:
        first: list[TradeEvent] = []
        second: list[TradeEvent] = []

        async def async_handler(event: TradeEvent) -> None:
            second.append(event)

        self.channel.subscribe("first", first.append)
        self.channel.subscribe("second", async_handler)

        event = TradeEvent.executed(_result())
        self.channel.publish(event)
        await self.channel.drain()

        self.assertEqual(first, [event])
        self.assertEqual(second, [event])
        self.assertEqual(self.channel.published_count, 1)

    async def test_kind_filter(self) -> None:
        failures: list[TradeEvent] = []
        self.channel.subscribe("failures", failures.append, kinds={"trade_failed"})

        self.channel.publish(TradeEvent.executed(_result()))
        self.channel.publish(TradeEvent.failed(reason="NO_ROUTE", error_kind="NO_ROUTE"))
        await self.channel.drain()

        self.assertEqual([event.kind for event in failures], ["trade_failed"])

    async def test_publish_without_subscribers_is_a_noop(self) -> None:
        self.channel.publish(TradeEvent.executed(_result()))

        self.assertEqual(self.channel.published_count, 1)

    async def test_full_queue_drops_without_blocking_publisher(self) -> None:
        release = asyncio.Event()
        received: list[TradeEvent] = []

        async def slow_handler(event: TradeEvent) -> None:
            await release.wait()
            received.append(event)

        self.channel.subscribe("slow", slow_handler, queue_size=1)

        for index in range(3):
            self.channel.publish(TradeEvent.executed(_result(f"trd-{index}")))

        self.assertEqual(self.channel.dropped_count("slow"), 2)
        release.set()
        await self.channel.drain()
        self.assertEqual([event.result.id for event in received], ["trd-0"])

    async def test_handler_error_does_not_stop_delivery(self) -> None:
        received: list[str] = []

        def flaky(event: TradeEvent) -> None:
            if event.result is not None and event.result.id == "trd-bad":
                raise RuntimeError("boom")
            received.append(event.result.id if event.result else "")

        self.channel.subscribe("flaky", flaky)
        self.channel.publish(TradeEvent.executed(_result("trd-bad")))
        self.channel.publish(TradeEvent.executed(_result("trd-good")))
        await self.channel.drain()

        self.assertEqual(received, ["trd-good"])

    async def test_unsubscribe_stops_delivery(self) -> None:
        received: list[TradeEvent] = []
        self.channel.subscribe("gone", received.append)
        self.channel.publish(TradeEvent.executed(_result("trd-1")))
        await self.channel.drain()

        await self.channel.unsubscribe("gone")
        self.channel.publish(TradeEvent.executed(_result("trd-2")))
        await self.channel.drain()

        self.assertEqual(len(received), 1)

    async def test_duplicate_subscriber_name_is_refused(self) -> None:
        self.channel.subscribe("dup", lambda _event: None)

        with self.assertRaises(ValueError):
            self.channel.subscribe("dup", lambda _event: None)


class TradeEventTests(unittest.TestCase):
    def test_failed_event_serializes_params(self) -> None:
        params = TradeParams(input_token="SOL", output_token="MEME", amount=5, strategy_id="s1")

        payload = TradeEvent.failed(
            reason="PRICE_IMPACT",
            error_kind="ROUTE_REJECTED",
            params=params,
            details={"trade_id": "trd-9"},
        ).to_dict()

        self.assertEqual(payload["kind"], "trade_failed")
        self.assertEqual(payload["reason"], "PRICE_IMPACT")
        self.assertEqual(payload["amount"], 5)
        self.assertEqual(payload["strategy_id"], "s1")
        self.assertEqual(payload["details"], {"trade_id": "trd-9"})

    def test_executed_event_serializes_result(self) -> None:
        payload = TradeEvent.executed(_result()).to_dict()

        self.assertEqual(payload["result"]["route"], ["Orca"])
        self.assertNotIn("reason", payload)


if __name__ == "__main__":
    unittest.main()
