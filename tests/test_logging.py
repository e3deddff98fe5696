from __future__ import annotations

import io
import json
import logging
import unittest

from agent_trader.common import JsonFormatter, log_event, sanitize_text
from agent_trader.common.logging import sanitize_value


class SanitizeTests(unittest.TestCase):
    def test_query_strings_and_keys_are_masked(self) -> None:
        text = "GET https://api.example.com/quote?api-key=abc123&x=1 failed, api_key=zzz private_key: 5Kd3"

        masked = sanitize_text(text)

        self.assertNotIn("abc123", masked)
        self.assertNotIn("zzz", masked)
        self.assertNotIn("5Kd3", masked)
        self.assertIn("https://api.example.com/quote", masked)

    def test_keypair_byte_arrays_are_masked(self) -> None:
        raw = "bad key " + str(list(range(64)))

        self.assertEqual(sanitize_text(raw), "bad key [***]")

    def test_sensitive_fields_are_masked_by_name(self) -> None:
        masked = sanitize_value({"private_key": "5Kd3abc", "rpc": {"api_key": "k"}, "amount": 5})

        self.assertEqual(masked, {"private_key": "***", "rpc": {"api_key": "***"}, "amount": 5})


class LogEventTests(unittest.TestCase):
    def test_emits_json_with_event_and_fields(self) -> None:
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonFormatter())
        logger = logging.getLogger("test.logging.json")
        logger.handlers = [handler]
        logger.propagate = False
        logger.setLevel(logging.INFO)

        log_event(
            logger,
            level="warning",
            event="trade_failed",
            message="Trade failed",
            trade_id="trd-1",
            route=["Orca"],
            url="https://rpc.example.com/?api-key=secret",
        )

        payload = json.loads(stream.getvalue())
        self.assertEqual(payload["level"], "WARNING")
        self.assertEqual(payload["event"], "trade_failed")
        self.assertEqual(payload["trade_id"], "trd-1")
        self.assertEqual(payload["route"], ["Orca"])
        self.assertNotIn("secret", payload["url"])


if __name__ == "__main__":
    unittest.main()
