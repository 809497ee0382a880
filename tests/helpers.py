from __future__ import annotations

import base64
import json
import time
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from swap_engine.trading.types import SOL_MINT, Quote, TokenBalance, TokenDescriptor

TOKEN_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
TOKEN = TokenDescriptor(mint=TOKEN_MINT, decimals=6, symbol="USDC")
FEE_RECEIVER = "Hv66YTLHXUWNq7KeMboFkonu8YjJUygMstgAeB1htD24"


def make_quote(
    *,
    input_mint: str = SOL_MINT,
    output_mint: str = TOKEN_MINT,
    in_amount: int = 1_000_000_000,
    out_amount: int = 150_000_000,
    issued_at: float | None = None,
) -> Quote:
    raw = {
        "inputMint": input_mint,
        "outputMint": output_mint,
        "inAmount": str(in_amount),
        "outAmount": str(out_amount),
        "otherAmountThreshold": str(out_amount * 99 // 100),
        "slippageBps": 250,
        "priceImpactPct": "0.001",
        "routePlan": [{"swapInfo": {"label": "Whirlpool"}}],
    }
    return Quote(
        input_mint=input_mint,
        output_mint=output_mint,
        in_amount=in_amount,
        out_amount=out_amount,
        price_impact_pct=Decimal("0.001"),
        slippage_bps=250,
        route_meta={"hops": 1, "labels": ("Whirlpool",)},
        raw=raw,
        issued_at=time.monotonic() if issued_at is None else issued_at,
    )


def make_balance(mint: str, amount_atomic: int, decimals: int, symbol: str = "SOL") -> TokenBalance:
    return TokenBalance(
        mint=mint,
        balance_atomic=amount_atomic,
        decimals=decimals,
        symbol=symbol,
        usd_value=Decimal(0),
        fetched_at=time.monotonic(),
    )


class SwapFixture:
    """A Jupiter-shaped v0 swap transaction with compute-budget instructions and a lookup table."""

    def __init__(self, payer: Pubkey, *, data_size: int = 8) -> None:
        self.payer = payer
        self.swap_program = Pubkey.new_unique()
        self.pool = Pubkey.new_unique()
        self.table_key = Pubkey.new_unique()
        self.table_addresses = [Pubkey.new_unique() for _ in range(3)]
        table = AddressLookupTableAccount(self.table_key, self.table_addresses)
        self.compute_unit_limit = 200_000

        instructions = [
            set_compute_unit_limit(self.compute_unit_limit),
            set_compute_unit_price(1_000),
            Instruction(
                self.swap_program,
                bytes([7]) * data_size,
                [
                    AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
                    AccountMeta(pubkey=self.pool, is_signer=False, is_writable=True),
                    AccountMeta(pubkey=self.table_addresses[0], is_signer=False, is_writable=True),
                    AccountMeta(pubkey=self.table_addresses[2], is_signer=False, is_writable=False),
                ],
            ),
        ]
        self.message = MessageV0.try_compile(payer, instructions, [table], Hash.default())

    @property
    def tables(self) -> dict[str, list[str]]:
        return {str(self.table_key): [str(address) for address in self.table_addresses]}

    def loaded(self, message: MessageV0) -> list[Pubkey]:
        addresses: list[Pubkey] = []
        for lookup in message.address_table_lookups:
            addresses.extend(self.table_addresses[i] for i in bytes(lookup.writable_indexes))
        for lookup in message.address_table_lookups:
            addresses.extend(self.table_addresses[i] for i in bytes(lookup.readonly_indexes))
        return addresses

    def transaction_bytes(self) -> bytes:
        placeholders = [Signature.default()] * self.message.header.num_required_signatures
        return bytes(VersionedTransaction.populate(self.message, placeholders))

    def swap_response(self, *, last_valid_block_height: int = 1_000) -> dict[str, Any]:
        return {
            "swapTransaction": base64.b64encode(self.transaction_bytes()).decode("ascii"),
            "lastValidBlockHeight": last_valid_block_height,
        }


def decompile(message: MessageV0, loaded: list[Pubkey]) -> list[tuple[Pubkey, bytes, list[Pubkey]]]:
    keys = [*message.account_keys, *loaded]
    return [
        (keys[ix.program_id_index], bytes(ix.data), [keys[index] for index in bytes(ix.accounts)])
        for ix in message.instructions
    ]


def make_unsigned_transaction(payer: Pubkey) -> bytes:
    message = MessageV0.try_compile(payer, [set_compute_unit_price(1)], [], Hash.default())
    return bytes(VersionedTransaction.populate(message, [Signature.default()]))


def make_jupiter() -> MagicMock:
    jupiter = MagicMock()
    jupiter.quote = AsyncMock()
    jupiter.swap = AsyncMock()
    jupiter.token_info = AsyncMock(return_value=None)
    jupiter.prices = AsyncMock(return_value={})
    return jupiter


def make_rpc() -> MagicMock:
    rpc = MagicMock()
    rpc.get_balance = AsyncMock(return_value=0)
    rpc.get_token_accounts = AsyncMock(return_value=[])
    rpc.get_token_decimals = AsyncMock(return_value=6)
    rpc.get_account_owner = AsyncMock(return_value="TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
    rpc.send_transaction = AsyncMock()
    rpc.get_signature_status = AsyncMock(return_value=None)
    rpc.get_block_height = AsyncMock(return_value=0)
    return rpc


class FakeResponse:
    def __init__(self, status: int, body: Any = None, *, headers: dict[str, str] | None = None) -> None:
        self.status = status
        self.headers = headers or {}
        self._text = body if isinstance(body, str) else json.dumps(body) if body is not None else ""

    async def text(self) -> str:
        return self._text

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        return None


class FakeHttpSession:
    """Stands in for ``aiohttp.ClientSession``; replays queued responses and records requests."""

    def __init__(self, *responses: FakeResponse) -> None:
        self._responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        return self._responses.pop(0)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    async def close(self) -> None:
        return None
