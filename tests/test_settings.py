from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from agent_trader.bot_runtime.settings import AppSettings, parse_probe_amounts

MEME = "MeMe1111111111111111111111111111111111111111"
BONK = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


class ProbeAmountParsingTests(unittest.TestCase):
    def test_pairs_are_parsed_and_malformed_pairs_dropped(self) -> None:
        raw = f"{MEME}=5000, {BONK} = 250000000 ,broken,=10,{MEME}x=0"

        self.assertEqual(parse_probe_amounts(raw), {MEME: 5_000, BONK: 250_000_000})

    def test_empty_value_means_no_overrides(self) -> None:
        self.assertEqual(parse_probe_amounts(""), {})


class AppSettingsTests(unittest.TestCase):
    def test_signal_and_wallet_settings_from_env(self) -> None:
        env = {
            "SIGNAL_PROBE_AMOUNTS": f"{BONK}=100",
            "ADVISORY_URL": " https://advisor.invalid/score ",
            "SOL_RESERVE_LAMPORTS": "-5",
        }
        with patch.dict(os.environ, env):
            settings = AppSettings.from_env()

        self.assertEqual(settings.probe_amounts, {BONK: 100})
        self.assertEqual(settings.advisory_url, "https://advisor.invalid/score")
        self.assertEqual(settings.sol_reserve_lamports, 0)


if __name__ == "__main__":
    unittest.main()
