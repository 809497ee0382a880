from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from swap_engine.common import log_event, parse_retry_after_seconds

from .rpc import rpc_error_message
from .types import to_int

JITO_TRANSACTIONS_PATH = "/api/v1/transactions"
# Block engine JSON-RPC code for "rate limited / network congested".
JITO_RATE_LIMIT_CODE = -32097


class JitoRelayError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code

    @property
    def transient(self) -> bool:
        return self.status is not None and self.status >= 500


class JitoRateLimitError(JitoRelayError):
    transient = True

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: float | None = None,
        status: int | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message, status=status, code=code)
        self.retry_after_seconds = retry_after_seconds


class JitoRelayClient:
    """Private relay submission through the Jito block engine.

    Transactions go to ``sendTransaction`` with ``bundleOnly=true`` so they
    never reach the public mempool; the priority fee embedded by the
    aggregator doubles as the relay tip.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        block_engine_url: str,
        timeout_seconds: float = 8.0,
    ) -> None:
        self._logger = logger
        self._block_engine_url = block_engine_url.strip().rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    @property
    def endpoint(self) -> str:
        return f"{self._block_engine_url}{JITO_TRANSACTIONS_PATH}?bundleOnly=true"

    async def connect(self) -> None:
        if not self._block_engine_url:
            raise ValueError("JITO_BLOCK_ENGINE_URL is required for anti-MEV submission.")
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def send_transaction(self, signed_tx_base64: str) -> str:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Jito HTTP session is not initialized.")

        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "sendTransaction",
            "params": [signed_tx_base64, {"encoding": "base64"}],
        }

        async with self._session.post(self.endpoint, json=payload) as response:
            status = response.status
            retry_after_seconds = parse_retry_after_seconds(response.headers.get("Retry-After"))
            bundle_id = response.headers.get("x-bundle-id")
            raw_text = await response.text()

        parsed: Any = None
        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text}

        if status == 429:
            raise JitoRateLimitError(
                f"Jito transaction submission failed: status={status} body={str(raw_text)[:240]!r}",
                retry_after_seconds=retry_after_seconds,
                status=status,
            )

        error_payload = parsed.get("error") if isinstance(parsed, dict) else None
        code = to_int(error_payload.get("code"), 0) if isinstance(error_payload, dict) else 0
        if error_payload and code == JITO_RATE_LIMIT_CODE:
            raise JitoRateLimitError(
                f"Jito transaction submission rate-limited: {rpc_error_message(error_payload)}",
                retry_after_seconds=retry_after_seconds,
                status=status,
                code=code,
            )

        if status >= 400:
            raise JitoRelayError(
                f"Jito transaction submission failed: status={status} body={str(raw_text)[:240]!r}",
                status=status,
                code=code or None,
            )
        if error_payload:
            raise JitoRelayError(
                f"Jito transaction submission failed: {rpc_error_message(error_payload)}",
                status=status,
                code=code or None,
            )

        signature = parsed.get("result") if isinstance(parsed, dict) else None
        if not isinstance(signature, str) or not signature.strip():
            raise JitoRelayError(f"Unexpected Jito sendTransaction response: {parsed}", status=status)

        log_event(
            self._logger,
            level="info",
            event="jito_transaction_submitted",
            message="Transaction submitted to Jito block engine",
            signature=signature,
            bundle_id=bundle_id,
        )
        return signature.strip()
