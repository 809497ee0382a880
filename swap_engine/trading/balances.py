from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from decimal import Decimal
from typing import Any

import aiohttp

from swap_engine.common import RetryPolicy, cancel_task, guarded_call, log_event

from .errors import UpstreamError
from .jupiter import JupiterClient
from .rpc import LedgerRpcClient, RpcMethodError
from .types import (
    NATIVE_TOKEN,
    SOL_MINT,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    TokenBalance,
    TokenDescriptor,
    from_atomic,
    to_int,
)

UNKNOWN_SYMBOL = "Unknown"
_BalanceKey = tuple[str, str]


def _token_amount_from_accounts(accounts: list[dict[str, Any]]) -> tuple[int, int | None]:
    """Sum of parsed token account amounts and the decimals they report."""
    total = 0
    decimals: int | None = None
    for account in accounts:
        data = account.get("account", {}).get("data")
        parsed = data.get("parsed") if isinstance(data, dict) else None
        info = parsed.get("info") if isinstance(parsed, dict) else None
        token_amount = info.get("tokenAmount") if isinstance(info, dict) else None
        if not isinstance(token_amount, dict):
            continue
        total += max(0, to_int(token_amount.get("amount"), 0))
        if decimals is None and token_amount.get("decimals") is not None:
            decimals = to_int(token_amount.get("decimals"), 0)
    return total, decimals


class BalanceOracle:
    """Wallet balances with per-(wallet, mint) single-flight refresh.

    Concurrent callers for the same key share one in-flight query. When a
    refresh fails the last known value is served with ``stale=True``; with
    nothing cached the failure propagates as ``UpstreamError``.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: LedgerRpcClient,
        jupiter: JupiterClient | None = None,
        retry_policy: RetryPolicy | None = None,
        validation_timeout_seconds: float = 5.0,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._jupiter = jupiter
        self._retry_policy = retry_policy or RetryPolicy()
        self._validation_timeout_seconds = validation_timeout_seconds
        self._cache: dict[_BalanceKey, TokenBalance] = {}
        self._inflight: dict[_BalanceKey, asyncio.Task[TokenBalance]] = {}
        self._descriptors: dict[str, TokenDescriptor] = {SOL_MINT: NATIVE_TOKEN}
        self._refresh_task: asyncio.Task[None] | None = None

    def cached(self, wallet: str, mint: str) -> TokenBalance | None:
        return self._cache.get((wallet, mint))

    async def describe(self, mint: str) -> TokenDescriptor:
        known = self._descriptors.get(mint)
        if known is not None:
            return known

        symbol = UNKNOWN_SYMBOL
        decimals: int | None = None
        if self._jupiter is not None:
            info = await guarded_call(
                lambda: self._jupiter.token_info(mint),
                logger=self._logger,
                event="token_metadata_failed",
                message="Token metadata lookup failed; falling back to on-chain data",
                mint=mint,
            )
            if isinstance(info, dict):
                symbol = str(info.get("symbol") or "").strip() or UNKNOWN_SYMBOL
                if info.get("decimals") is not None:
                    decimals = to_int(info.get("decimals"), 0)

        try:
            if decimals is None:
                decimals = await self._rpc.get_token_decimals(mint)
            owner = await self._rpc.get_account_owner(mint)
        except (aiohttp.ClientError, asyncio.TimeoutError, RpcMethodError) as error:
            raise UpstreamError(f"token metadata lookup failed for {mint}: {error}", transient=True) from error
        token_program = TOKEN_2022_PROGRAM_ID if owner == TOKEN_2022_PROGRAM_ID else TOKEN_PROGRAM_ID

        descriptor = TokenDescriptor(mint=mint, decimals=decimals, symbol=symbol, token_program=token_program)
        self._descriptors[mint] = descriptor
        return descriptor

    async def _usd_price(self, mint: str) -> Decimal:
        if self._jupiter is None:
            return Decimal(0)
        prices = await guarded_call(
            lambda: self._jupiter.prices([mint]),
            logger=self._logger,
            event="token_price_failed",
            message="Token price lookup failed; USD value reported as zero",
            default={},
            mint=mint,
        )
        return Decimal(str(prices.get(mint, 0))) if prices else Decimal(0)

    async def _query(self, wallet: str, mint: str) -> TokenBalance:
        descriptor = await self.describe(mint)
        if mint == SOL_MINT:
            amount = await self._retry_policy.run(
                lambda: self._rpc.get_balance(wallet),
                logger=self._logger,
                event="balance_query_retry",
                message="Native balance query failed; retrying",
                mint=mint,
            )
            decimals = descriptor.decimals
        else:
            accounts = await self._retry_policy.run(
                lambda: self._rpc.get_token_accounts(wallet, mint),
                logger=self._logger,
                event="balance_query_retry",
                message="Token balance query failed; retrying",
                mint=mint,
            )
            # No token account yet means a zero balance.
            amount, reported_decimals = _token_amount_from_accounts(accounts)
            decimals = descriptor.decimals if reported_decimals is None else reported_decimals

        price = await self._usd_price(mint)
        return TokenBalance(
            mint=mint,
            balance_atomic=amount,
            decimals=decimals,
            symbol=descriptor.symbol,
            usd_value=(from_atomic(amount, decimals) * price).quantize(Decimal("0.01")),
            fetched_at=time.monotonic(),
        )

    async def _refresh_key(self, wallet: str, mint: str) -> TokenBalance:
        key = (wallet, mint)
        try:
            balance = await self._query(wallet, mint)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            cached = self._cache.get(key)
            log_event(
                self._logger,
                level="warning",
                event="balance_refresh_failed",
                message="Balance refresh failed",
                mint=mint,
                serving_stale=cached is not None,
                error=str(error),
                error_type=type(error).__name__,
            )
            if cached is None:
                if isinstance(error, UpstreamError):
                    raise
                raise UpstreamError(
                    f"balance refresh failed for {mint}: {error}",
                    transient=bool(getattr(error, "transient", False)),
                ) from error
            stale = replace(cached, stale=True)
            self._cache[key] = stale
            return stale

        self._cache[key] = balance
        return balance

    async def refresh_one(self, wallet: str, mint: str) -> TokenBalance:
        key = (wallet, mint)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh_key(wallet, mint))
            self._inflight[key] = task

            def _done(finished: asyncio.Task[TokenBalance], key: _BalanceKey = key) -> None:
                if self._inflight.get(key) is finished:
                    del self._inflight[key]
                if not finished.cancelled():
                    finished.exception()

            task.add_done_callback(_done)
        # One caller being cancelled must not cancel the shared query.
        return await asyncio.shield(task)

    async def refresh(self, wallet: str, mints: list[str]) -> dict[str, TokenBalance]:
        unique = list(dict.fromkeys(mints))
        results = await asyncio.gather(*(self.refresh_one(wallet, mint) for mint in unique))
        return dict(zip(unique, results))

    async def get_native_balance(self, wallet: str) -> int:
        return (await self.refresh_one(wallet, SOL_MINT)).balance_atomic

    async def get_token_balance(self, wallet: str, mint: str) -> TokenBalance:
        return await self.refresh_one(wallet, mint)

    async def snapshot_for_validation(self, wallet: str, mint: str) -> TokenBalance:
        """Fresh balance for a pre-trade check, bounded by the validation timeout.

        On timeout the cached value (marked stale) is used when one exists.
        """
        try:
            return await asyncio.wait_for(self.refresh_one(wallet, mint), timeout=self._validation_timeout_seconds)
        except asyncio.TimeoutError as error:
            cached = self._cache.get((wallet, mint))
            log_event(
                self._logger,
                level="warning",
                event="balance_validation_timeout",
                message="Balance lookup for trade validation timed out",
                mint=mint,
                timeout_seconds=self._validation_timeout_seconds,
                serving_stale=cached is not None,
            )
            if cached is None:
                raise UpstreamError("balance lookup timed out", transient=True) from error
            return replace(cached, stale=True)

    def start(self, wallet: str, mints: list[str], interval_seconds: float = 30.0) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop(wallet, list(mints), interval_seconds))

    async def stop(self) -> None:
        await cancel_task(self._refresh_task)
        self._refresh_task = None

    async def _refresh_loop(self, wallet: str, mints: list[str], interval_seconds: float) -> None:
        while True:
            await guarded_call(
                lambda: self.refresh(wallet, mints),
                logger=self._logger,
                event="balance_timer_refresh_failed",
                message="Scheduled balance refresh failed",
                mint_count=len(mints),
            )
            await asyncio.sleep(max(1.0, interval_seconds))
