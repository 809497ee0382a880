from __future__ import annotations

import asyncio
import contextlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.transaction import VersionedTransaction

SIGN_IN_MESSAGE = (
    "Welcome to TwoCat! Click to sign in and accept the TwoCat Terms of Service: https://twocat.com/tos"
)


@runtime_checkable
class WalletCapability(Protocol):
    """What the engine needs from a wallet: an address and two signing calls.

    ``sign_transaction`` returns the signed transaction. A user declining the
    request is reported by raising ``UserRejection``.
    """

    @property
    def public_key(self) -> str: ...

    async def sign_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction: ...

    async def sign_message(self, message: bytes) -> bytes: ...


def parse_private_key(raw: str) -> Keypair:
    value = raw.strip()

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    with contextlib.suppress(Exception):
        return Keypair.from_base58_string(value)

    raise ValueError("Unsupported PRIVATE_KEY format.")


class KeypairWallet:
    """Local signer backed by a solders ``Keypair`` (CLI and automation use)."""

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @classmethod
    def from_private_key(cls, raw: str) -> "KeypairWallet":
        return cls(parse_private_key(raw))

    @property
    def public_key(self) -> str:
        return str(self._keypair.pubkey())

    async def sign_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        message = transaction.message
        signature = self._keypair.sign_message(to_bytes_versioned(message))
        return VersionedTransaction.populate(message, [signature])

    async def sign_message(self, message: bytes) -> bytes:
        return bytes(self._keypair.sign_message(message))


class WalletEventType(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class WalletEvent:
    type: WalletEventType
    public_key: str | None = None
    wallet: WalletCapability | None = None
    error: str | None = None
    timestamp: float = field(default_factory=time.time)


_CLOSED = object()


class WalletSubscription:
    def __init__(self, stream: "WalletEventStream", queue: "asyncio.Queue[Any]") -> None:
        self._stream = stream
        self._queue = queue

    def __aiter__(self) -> AsyncIterator[WalletEvent]:
        return self

    async def __anext__(self) -> WalletEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            self.close()
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        self._stream._unsubscribe(self._queue)


class WalletEventStream:
    """Fan-out of wallet connect/disconnect/error notifications.

    Every subscriber gets its own queue, registered at ``subscribe()`` time,
    so events published afterwards are never missed.
    """

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue[Any]] = []
        self._closed = False

    def subscribe(self) -> WalletSubscription:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        if self._closed:
            queue.put_nowait(_CLOSED)
        else:
            self._queues.append(queue)
        return WalletSubscription(self, queue)

    def publish(self, event: WalletEvent) -> None:
        if self._closed:
            return
        for queue in list(self._queues):
            queue.put_nowait(event)

    def connected(self, wallet: WalletCapability) -> None:
        self.publish(WalletEvent(type=WalletEventType.CONNECTED, public_key=wallet.public_key, wallet=wallet))

    def disconnected(self) -> None:
        self.publish(WalletEvent(type=WalletEventType.DISCONNECTED))

    def error(self, message: str) -> None:
        self.publish(WalletEvent(type=WalletEventType.ERROR, error=message))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in list(self._queues):
            queue.put_nowait(_CLOSED)

    def _unsubscribe(self, queue: "asyncio.Queue[Any]") -> None:
        with contextlib.suppress(ValueError):
            self._queues.remove(queue)
