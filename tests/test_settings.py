from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from swap_engine.runtime import AppSettings
from swap_engine.trading.fees import DEFAULT_FEE_RECEIVER


class AppSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.default_slippage_bps, 250)
        self.assertEqual(settings.default_priority_fee_lamports, 12_000_000)
        self.assertTrue(settings.anti_mev_default)
        self.assertEqual(settings.fee_receiver, DEFAULT_FEE_RECEIVER)
        self.assertEqual(settings.confirm_timeout_seconds, 45.0)
        self.assertEqual(settings.jito_block_engine_url, "https://mainnet.block-engine.jito.wtf")

    def test_values_are_clamped(self) -> None:
        env = {
            "DEFAULT_SLIPPAGE_BPS": "50000",
            "MAX_PRIORITY_FEE_LAMPORTS": "1000",
            "DEFAULT_PRIORITY_FEE_LAMPORTS": "999999",
            "SEND_MAX_ATTEMPTS": "0",
            "CONFIRM_TIMEOUT_SECONDS": "1",
            "CONFIRM_POLL_INTERVAL_SECONDS": "0",
            "ANTI_MEV_DEFAULT": "false",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.default_slippage_bps, 10_000)
        self.assertEqual(settings.default_priority_fee_lamports, 1_000)
        self.assertEqual(settings.send_max_attempts, 1)
        self.assertEqual(settings.confirm_timeout_seconds, 5.0)
        self.assertEqual(settings.confirm_poll_interval_seconds, 0.25)
        self.assertFalse(settings.anti_mev_default)

    def test_unparseable_values_fall_back_to_defaults(self) -> None:
        with patch.dict(os.environ, {"DEFAULT_SLIPPAGE_BPS": "lots", "HTTP_TIMEOUT_SECONDS": "soon"}, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.default_slippage_bps, 250)
        self.assertEqual(settings.http_timeout_seconds, 8.0)

    def test_trade_settings_mirror_defaults(self) -> None:
        with patch.dict(os.environ, {"DEFAULT_SLIPPAGE_BPS": "75", "QUOTE_MAX_AGE_SECONDS": "10"}, clear=True):
            trade = AppSettings.from_env().trade_settings()

        self.assertEqual(trade.slippage_bps, 75)
        self.assertEqual(trade.quote_max_age_seconds, 10.0)
        self.assertEqual(trade.clamp_priority_fee(10**12), trade.max_priority_fee_atomic)


if __name__ == "__main__":
    unittest.main()
