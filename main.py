from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from decimal import Decimal
from typing import Any

from dotenv import load_dotenv

from swap_engine.common import RetryPolicy, log_event
from swap_engine.runtime import AppSettings, setup_logger
from swap_engine.trading import (
    BalanceOracle,
    FeePolicy,
    JitoRelayClient,
    JupiterClient,
    KeypairWallet,
    LedgerRpcClient,
    QuoteProvider,
    SubmissionChannel,
    SOL_MINT,
    TokenBalance,
    TradeError,
    TradeRequest,
    TradeSession,
    TransactionBuilder,
)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, tuple):
        return list(value)
    return str(value)


def _print(payload: Any) -> None:
    print(json.dumps(payload, default=_json_default, indent=2, sort_keys=True))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="swap-engine", description="Swap SOL against a configured SPL token.")
    parser.add_argument("--token-mint", help="Token mint to trade (defaults to TOKEN_MINT).")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-format", choices=["json", "text"], default="json")
    commands = parser.add_subparsers(dest="command", required=True)

    balances = commands.add_parser("balances", help="Show SOL and token balances for the configured wallet.")
    balances.add_argument(
        "--watch",
        action="store_true",
        help="Keep refreshing on BALANCE_REFRESH_SECONDS and print each snapshot until interrupted.",
    )

    quote = commands.add_parser("quote", help="Quote a buy or sell without submitting.")
    quote.add_argument("mode", choices=["buy", "sell"])
    quote.add_argument("amount")
    quote.add_argument("--slippage-bps", type=int)

    for name, help_text in (("buy", "Spend AMOUNT SOL on the token."), ("sell", "Sell AMOUNT tokens for SOL.")):
        trade = commands.add_parser(name, help=help_text)
        trade.add_argument("amount")
        trade.add_argument("--slippage-bps", type=int)
        trade.add_argument("--priority-fee", type=int, help="Priority fee (or relay tip) in lamports.")
        trade.add_argument("--no-anti-mev", action="store_true", help="Submit through the public RPC.")
    return parser


def _print_balances(balances: dict[str, TokenBalance]) -> None:
    _print(
        {
            mint: {
                "symbol": balance.symbol,
                "balance": balance.balance,
                "usd_value": balance.usd_value,
                "stale": balance.stale,
            }
            for mint, balance in balances.items()
        }
    )


async def _watch_balances(oracle: BalanceOracle, session: TradeSession, *, interval_seconds: float) -> None:
    wallet = session.wallet_session.public_key
    mints = [SOL_MINT, session.token_mint]
    oracle.start(wallet, mints, interval_seconds)
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            _print_balances({mint: balance for mint in mints if (balance := oracle.cached(wallet, mint)) is not None})
    finally:
        await oracle.stop()


async def run(args: argparse.Namespace, *, settings: AppSettings, logger: logging.Logger) -> int:
    token_mint = (args.token_mint or settings.token_mint).strip()
    if not token_mint:
        raise SystemExit("TOKEN_MINT is required (set it or pass --token-mint).")

    rpc = LedgerRpcClient(logger=logger, rpc_url=settings.solana_rpc_url, timeout_seconds=settings.http_timeout_seconds)
    jupiter = JupiterClient(
        logger=logger,
        quote_api=settings.jupiter_quote_api,
        swap_api=settings.jupiter_swap_api,
        token_api=settings.jupiter_token_api,
        price_api=settings.jupiter_price_api,
        api_key=settings.jupiter_api_key,
        timeout_seconds=settings.http_timeout_seconds,
    )
    relay = JitoRelayClient(
        logger=logger,
        block_engine_url=settings.jito_block_engine_url,
        timeout_seconds=settings.http_timeout_seconds,
    )
    send_policy = RetryPolicy(
        max_attempts=settings.send_max_attempts,
        backoff_seconds=settings.send_retry_backoff_seconds,
    )
    trade_settings = settings.trade_settings()
    oracle = BalanceOracle(logger=logger, rpc=rpc, jupiter=jupiter)
    session = TradeSession(
        logger=logger,
        token_mint=token_mint,
        balances=oracle,
        quotes=QuoteProvider(logger=logger, jupiter=jupiter, quote_max_age_seconds=trade_settings.quote_max_age_seconds),
        fees=FeePolicy(settings.fee_receiver),
        builder=TransactionBuilder(logger=logger, jupiter=jupiter, lookup_resolver=rpc.get_lookup_table_addresses),
        submission=SubmissionChannel(
            logger=logger,
            rpc=rpc,
            relay=relay,
            retry_policy=send_policy,
            confirm_timeout_seconds=settings.confirm_timeout_seconds,
            confirm_poll_interval_seconds=settings.confirm_poll_interval_seconds,
        ),
        settings=trade_settings,
    )

    try:
        await rpc.connect()
        await jupiter.connect()

        if args.command == "quote":
            quote = await session.request_quote(mode=args.mode, amount=args.amount, slippage_bps=args.slippage_bps)
            _print(quote.summary())
            return 0

        if not settings.private_key.strip():
            raise SystemExit("PRIVATE_KEY is required for this command.")
        session.attach_wallet(KeypairWallet.from_private_key(settings.private_key))

        if args.command == "balances":
            _print_balances(await session.refresh_balances())
            if args.watch:
                await _watch_balances(oracle, session, interval_seconds=settings.balance_refresh_seconds)
            return 0

        request = TradeRequest.from_input(
            mode=args.command,
            amount=args.amount,
            settings=trade_settings,
            slippage_bps=args.slippage_bps,
            priority_fee_atomic=args.priority_fee,
            anti_mev=False if args.no_anti_mev else None,
        )
        if request.anti_mev:
            await relay.connect()
        outcome = await session.submit_trade(request)
        _print(outcome.to_dict())
        return 0
    finally:
        for client in (relay, jupiter, rpc):
            with contextlib.suppress(Exception):
                await client.close()


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logger = setup_logger(level=args.log_level, log_format=args.log_format)
    settings = AppSettings.from_env()

    try:
        return asyncio.run(run(args, settings=settings, logger=logger))
    except TradeError as error:
        log_event(
            logger,
            level="error",
            event="command_failed",
            message=error.user_message,
            command=args.command,
            kind=error.kind.value,
            error=str(error),
            signature=error.signature,
        )
        _print(error.to_dict())
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
