from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from .types import to_int

TRANSIENT_HTTP_STATUSES = {408, 425, 429, 500, 502, 503, 504}
# JSON-RPC "node is behind" / "request timed out" style server errors.
TRANSIENT_RPC_CODES = {-32004, -32005, -32014, -32016}


class RpcMethodError(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        message: str,
        status: int | None = None,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.status = status
        self.code = code
        self.data = data

    @property
    def transient(self) -> bool:
        if self.status is not None and self.status in TRANSIENT_HTTP_STATUSES:
            return True
        return self.code is not None and self.code in TRANSIENT_RPC_CODES


def rpc_error_message(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
    return str(payload)


class LedgerRpcClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        timeout_seconds: float = 8.0,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url.strip()
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None
        self._request_id = 0

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required.")
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self.get_latest_blockhash()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        self._request_id += 1
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        async with self._session.post(self._rpc_url, json=payload) as response:
            status = response.status
            raw_text = await response.text()

        try:
            body = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            body = {"raw_text": raw_text[:240]}

        if status >= 400:
            raise RpcMethodError(
                method=method,
                status=status,
                data=body,
                message=f"RPC call failed: method={method} status={status}",
            )
        if not isinstance(body, dict):
            raise RpcMethodError(method=method, message=f"Invalid RPC response for {method}: {body}")

        error_payload = body.get("error")
        if error_payload:
            code = to_int(error_payload.get("code"), 0) if isinstance(error_payload, dict) else None
            raise RpcMethodError(
                method=method,
                code=code or None,
                data=error_payload,
                message=f"RPC error for {method}: {rpc_error_message(error_payload)}",
            )

        return body.get("result")

    async def get_balance(self, owner: str) -> int:
        result = await self.call("getBalance", [owner, {"commitment": "confirmed"}])
        if not isinstance(result, dict):
            raise RpcMethodError(method="getBalance", message=f"Unexpected getBalance response: {result}")
        return max(0, to_int(result.get("value"), 0))

    async def get_token_accounts(self, owner: str, mint: str) -> list[dict[str, Any]]:
        """Parsed token accounts of ``owner`` for ``mint`` (empty if none exist)."""
        result = await self.call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        if not isinstance(result, dict) or not isinstance(result.get("value"), list):
            raise RpcMethodError(
                method="getTokenAccountsByOwner",
                message=f"Unexpected getTokenAccountsByOwner response: {result}",
            )
        return [item for item in result["value"] if isinstance(item, dict)]

    async def get_account_owner(self, address: str) -> str | None:
        result = await self.call("getAccountInfo", [address, {"encoding": "base64", "commitment": "confirmed"}])
        if not isinstance(result, dict):
            raise RpcMethodError(method="getAccountInfo", message=f"Unexpected getAccountInfo response: {result}")
        value = result.get("value")
        if not isinstance(value, dict):
            return None
        owner = str(value.get("owner") or "").strip()
        return owner or None

    async def get_token_decimals(self, mint: str) -> int:
        result = await self.call("getTokenSupply", [mint, {"commitment": "confirmed"}])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            raise RpcMethodError(method="getTokenSupply", message=f"Unexpected getTokenSupply response: {result}")
        return max(0, to_int(value.get("decimals"), 0))

    async def get_latest_blockhash(self) -> tuple[str, int | None]:
        result = await self.call("getLatestBlockhash", [{"commitment": "confirmed"}])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            raise RpcMethodError(
                method="getLatestBlockhash",
                message=f"Unexpected getLatestBlockhash response: {result}",
            )

        blockhash = str(value.get("blockhash") or "").strip()
        if not blockhash:
            raise RpcMethodError(method="getLatestBlockhash", message=f"Missing blockhash in RPC response: {result}")
        last_valid_block_height = to_int(value.get("lastValidBlockHeight"), -1)
        return blockhash, (last_valid_block_height if last_valid_block_height >= 0 else None)

    async def get_block_height(self) -> int:
        result = await self.call("getBlockHeight", [{"commitment": "confirmed"}])
        height = to_int(result, -1)
        if height < 0:
            raise RpcMethodError(method="getBlockHeight", message=f"Unexpected getBlockHeight response: {result}")
        return height

    async def send_transaction(self, signed_tx_base64: str) -> str:
        result = await self.call(
            "sendTransaction",
            [
                signed_tx_base64,
                {
                    "encoding": "base64",
                    "skipPreflight": True,
                    "maxRetries": 0,
                },
            ],
        )
        signature = str(result or "").strip()
        if not signature:
            raise RpcMethodError(method="sendTransaction", message=f"sendTransaction returned no signature: {result}")
        return signature

    async def get_signature_status(self, signature: str) -> dict[str, Any] | None:
        result = await self.call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": False}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, list):
            raise RpcMethodError(
                method="getSignatureStatuses",
                message=f"Unexpected getSignatureStatuses response: {result}",
            )
        status = value[0] if value else None
        return status if isinstance(status, dict) else None

    async def get_lookup_table_addresses(self, table_address: str) -> list[str]:
        result = await self.call("getAccountInfo", [table_address, {"encoding": "jsonParsed", "commitment": "confirmed"}])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            raise RpcMethodError(method="getAccountInfo", message=f"Address lookup table not found: {table_address}")
        data = value.get("data")
        parsed = data.get("parsed") if isinstance(data, dict) else None
        info = parsed.get("info") if isinstance(parsed, dict) else None
        addresses = info.get("addresses") if isinstance(info, dict) else None
        if not isinstance(addresses, list):
            raise RpcMethodError(
                method="getAccountInfo",
                message=f"Address lookup table addresses are missing for {table_address}: {value}",
            )
        return [str(address).strip() for address in addresses if str(address or "").strip()]
