from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock

from agent_trader.common import close_resources, guarded_call, retry_delay, wait_with_stop


class GuardedCallTests(unittest.IsolatedAsyncioTestCase):
    async def test_failure_returns_default(self) -> None:
        async def boom() -> int:
            raise RuntimeError("boom")

        result = await guarded_call(boom, logger=logging.getLogger("test.async"), event="x", message="x", default=7)

        self.assertEqual(result, 7)

    async def test_sync_actions_are_supported(self) -> None:
        result = await guarded_call(lambda: 3, logger=logging.getLogger("test.async"), event="x", message="x")

        self.assertEqual(result, 3)

    async def test_reraise(self) -> None:
        def boom() -> None:
            raise ValueError("bad")

        with self.assertRaises(ValueError):
            await guarded_call(boom, logger=logging.getLogger("test.async"), event="x", message="x", reraise=True)

    async def test_close_resources_continues_after_failure(self) -> None:
        first = AsyncMock(side_effect=RuntimeError("stuck"))
        second = AsyncMock()

        await close_resources(
            {"first": first, "second": second},
            logger=logging.getLogger("test.async"),
            reason="shutdown",
        )

        first.assert_awaited_once()
        second.assert_awaited_once()


class RetryDelayTests(unittest.TestCase):
    def test_grows_with_attempt_and_is_capped(self) -> None:
        first = retry_delay(1, base_seconds=1.0, max_seconds=10.0)
        third = retry_delay(3, base_seconds=1.0, max_seconds=10.0)

        self.assertGreaterEqual(first, 1.0)
        self.assertLessEqual(first, 1.25)
        self.assertGreaterEqual(third, 3.0)
        self.assertEqual(retry_delay(50, base_seconds=1.0, max_seconds=10.0), 10.0)

    def test_zero_base_disables_delay(self) -> None:
        self.assertEqual(retry_delay(4, base_seconds=0.0, max_seconds=10.0), 0.0)


class WaitWithStopTests(unittest.IsolatedAsyncioTestCase):
    async def test_returns_early_when_stopped(self) -> None:
        stop_event = asyncio.Event()
        stop_event.set()

        await asyncio.wait_for(wait_with_stop(stop_event, 30.0), timeout=1.0)


if __name__ == "__main__":
    unittest.main()
