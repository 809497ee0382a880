from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from swap_engine.common import log_event, parse_retry_after_seconds, sanitize_text

from .rpc import TRANSIENT_HTTP_STATUSES

DEFAULT_QUOTE_API = "https://lite-api.jup.ag/swap/v1/quote"
DEFAULT_SWAP_API = "https://lite-api.jup.ag/swap/v1/swap"
DEFAULT_TOKEN_API = "https://lite-api.jup.ag/tokens/v2/search"
DEFAULT_PRICE_API = "https://lite-api.jup.ag/price/v3"


class JupiterApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        error_code: str | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error_code = error_code
        self.retry_after_seconds = retry_after_seconds

    @property
    def transient(self) -> bool:
        return self.status is not None and self.status in TRANSIENT_HTTP_STATUSES


def _error_fields(payload: Any) -> tuple[str, str | None]:
    if not isinstance(payload, dict):
        return str(payload), None
    error_code = payload.get("errorCode")
    message = payload.get("error") or payload.get("message") or payload
    if isinstance(message, dict):
        error_code = error_code or message.get("code")
        message = message.get("message") or message
    return str(message), (str(error_code) if error_code else None)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class JupiterClient:
    """HTTP client for the Jupiter quote, swap, token and price APIs."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        quote_api: str = DEFAULT_QUOTE_API,
        swap_api: str = DEFAULT_SWAP_API,
        token_api: str = DEFAULT_TOKEN_API,
        price_api: str = DEFAULT_PRICE_API,
        api_key: str = "",
        timeout_seconds: float = 8.0,
    ) -> None:
        self._logger = logger
        self._quote_api = quote_api.strip()
        self._swap_api = swap_api.strip()
        self._token_api = token_api.strip()
        self._price_api = price_api.strip()
        self._api_key = api_key.strip()
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None
        self._missing_api_key_logged = False

    def _build_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "swap-engine/1.0",
        }
        if self._api_key:
            headers["x-api-key"] = self._api_key
        elif not self._missing_api_key_logged:
            self._missing_api_key_logged = True
            log_event(
                self._logger,
                level="info",
                event="jupiter_api_key_missing",
                message="JUPITER_API_KEY is not set; using the keyless rate limits",
            )
        return headers

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self.connect()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Jupiter HTTP session is not initialized.")

        query = {key: _query_value(value) for key, value in (params or {}).items() if value is not None}
        async with self._session.request(
            method,
            url,
            params=query or None,
            json=payload,
            headers=self._build_headers(),
        ) as response:
            status = response.status
            retry_after_seconds = parse_retry_after_seconds(response.headers.get("Retry-After"))
            body = await response.text()

        try:
            data = json.loads(body) if body else {}
        except json.JSONDecodeError:
            data = None

        if status >= 400 or (isinstance(data, dict) and (data.get("error") or data.get("errorCode"))):
            message, error_code = _error_fields(data if data is not None else body[:240])
            log_event(
                self._logger,
                level="warning",
                event="jupiter_api_error",
                message="Jupiter API returned an error",
                url=url,
                status=status,
                error_code=error_code,
                error=message,
            )
            raise JupiterApiError(
                f"Jupiter API error: status={status} error={sanitize_text(message)}",
                status=status,
                error_code=error_code,
                retry_after_seconds=retry_after_seconds,
            )
        if data is None:
            raise JupiterApiError(
                f"Jupiter API returned a non-JSON body: status={status} body={sanitize_text(body[:240])!r}",
                status=status,
            )
        return data

    async def quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        extra_params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": int(amount),
            "slippageBps": int(slippage_bps),
            "swapMode": "ExactIn",
        }
        if extra_params:
            params.update(extra_params)
        data = await self._request("GET", self._quote_api, params=params)
        if not isinstance(data, dict):
            raise JupiterApiError(f"Unexpected quote response: {data}")
        return data

    async def swap(
        self,
        *,
        quote_response: dict[str, Any],
        user_public_key: str,
        prioritization_fee: int | dict[str, int],
        dynamic_compute_unit_limit: bool = True,
        wrap_and_unwrap_sol: bool = True,
    ) -> dict[str, Any]:
        payload = {
            "quoteResponse": quote_response,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": wrap_and_unwrap_sol,
            "dynamicComputeUnitLimit": dynamic_compute_unit_limit,
            "prioritizationFeeLamports": prioritization_fee,
        }
        data = await self._request("POST", self._swap_api, payload=payload)
        if not isinstance(data, dict):
            raise JupiterApiError(f"Unexpected swap response: {data}")
        return data

    async def token_info(self, mint: str) -> dict[str, Any] | None:
        data = await self._request("GET", self._token_api, params={"query": mint})
        items = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
        for item in items:
            if isinstance(item, dict) and str(item.get("id") or item.get("address") or "") == mint:
                return item
        return None

    async def prices(self, mints: list[str]) -> dict[str, float]:
        """USD prices keyed by mint. Mints without a price are omitted."""
        if not mints:
            return {}
        data = await self._request("GET", self._price_api, params={"ids": ",".join(mints)})
        if not isinstance(data, dict):
            return {}
        # price/v2 nests entries under "data"; price/v3 keys them at the top level.
        entries = data.get("data") if isinstance(data.get("data"), dict) else data
        prices: dict[str, float] = {}
        for mint in mints:
            entry = entries.get(mint)
            if not isinstance(entry, dict):
                continue
            raw_price = entry.get("usdPrice", entry.get("price"))
            try:
                price = float(raw_price)
            except (TypeError, ValueError):
                continue
            if price >= 0:
                prices[mint] = price
        return prices
