from __future__ import annotations

import os
from dataclasses import dataclass

from swap_engine.trading.fees import DEFAULT_FEE_RECEIVER
from swap_engine.trading.types import MAX_SLIPPAGE_BPS, TradeSettings, to_bool, to_float, to_int

DEFAULT_JITO_BLOCK_ENGINE_URL = "https://mainnet.block-engine.jito.wtf"


@dataclass(slots=True)
class AppSettings:
    solana_rpc_url: str
    jupiter_quote_api: str
    jupiter_swap_api: str
    jupiter_token_api: str
    jupiter_price_api: str
    jupiter_api_key: str
    jito_block_engine_url: str
    fee_receiver: str
    private_key: str
    token_mint: str
    default_slippage_bps: int
    default_priority_fee_lamports: int
    max_priority_fee_lamports: int
    anti_mev_default: bool
    quote_max_age_seconds: float
    balance_refresh_seconds: float
    send_max_attempts: int
    send_retry_backoff_seconds: float
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    http_timeout_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        max_priority_fee = max(0, to_int(os.getenv("MAX_PRIORITY_FEE_LAMPORTS"), 100_000_000))
        return cls(
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", "").strip(),
            jupiter_quote_api=os.getenv("JUPITER_QUOTE_API", "https://lite-api.jup.ag/swap/v1/quote").strip(),
            jupiter_swap_api=os.getenv("JUPITER_SWAP_API", "https://lite-api.jup.ag/swap/v1/swap").strip(),
            jupiter_token_api=os.getenv("JUPITER_TOKEN_API", "https://lite-api.jup.ag/tokens/v2/search").strip(),
            jupiter_price_api=os.getenv("JUPITER_PRICE_API", "https://lite-api.jup.ag/price/v3").strip(),
            jupiter_api_key=os.getenv("JUPITER_API_KEY", "").strip(),
            jito_block_engine_url=os.getenv("JITO_BLOCK_ENGINE_URL", DEFAULT_JITO_BLOCK_ENGINE_URL).strip(),
            fee_receiver=os.getenv("FEE_RECEIVER", DEFAULT_FEE_RECEIVER).strip(),
            private_key=os.getenv("PRIVATE_KEY", ""),
            token_mint=os.getenv("TOKEN_MINT", "").strip(),
            default_slippage_bps=min(
                MAX_SLIPPAGE_BPS,
                max(0, to_int(os.getenv("DEFAULT_SLIPPAGE_BPS"), 250)),
            ),
            default_priority_fee_lamports=min(
                max_priority_fee,
                max(0, to_int(os.getenv("DEFAULT_PRIORITY_FEE_LAMPORTS"), 12_000_000)),
            ),
            max_priority_fee_lamports=max_priority_fee,
            anti_mev_default=to_bool(os.getenv("ANTI_MEV_DEFAULT"), True),
            quote_max_age_seconds=max(1.0, to_float(os.getenv("QUOTE_MAX_AGE_SECONDS"), 30.0)),
            balance_refresh_seconds=max(1.0, to_float(os.getenv("BALANCE_REFRESH_SECONDS"), 30.0)),
            send_max_attempts=max(1, to_int(os.getenv("SEND_MAX_ATTEMPTS"), 3)),
            send_retry_backoff_seconds=max(
                0.1,
                to_float(os.getenv("SEND_RETRY_BACKOFF_SECONDS"), 0.8),
            ),
            confirm_timeout_seconds=max(
                5.0,
                to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 45.0),
            ),
            confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 8.0)),
        )

    def trade_settings(self) -> TradeSettings:
        return TradeSettings(
            slippage_bps=self.default_slippage_bps,
            priority_fee_atomic=self.default_priority_fee_lamports,
            max_priority_fee_atomic=self.max_priority_fee_lamports,
            anti_mev=self.anti_mev_default,
            quote_max_age_seconds=self.quote_max_age_seconds,
        )
