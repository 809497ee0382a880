from __future__ import annotations

import asyncio
import json
import unittest

from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from swap_engine.trading.wallet import (
    KeypairWallet,
    WalletCapability,
    WalletEventStream,
    WalletEventType,
    parse_private_key,
)
from tests.helpers import make_unsigned_transaction


class PrivateKeyTests(unittest.TestCase):
    def test_base58_and_json_array_formats(self) -> None:
        keypair = Keypair()

        from_base58 = parse_private_key(str(keypair))
        from_array = parse_private_key(json.dumps(list(bytes(keypair))))

        self.assertEqual(from_base58.pubkey(), keypair.pubkey())
        self.assertEqual(from_array.pubkey(), keypair.pubkey())

    def test_malformed_json_array(self) -> None:
        with self.assertRaises(ValueError):
            parse_private_key("[1, 2")


class KeypairWalletTests(unittest.IsolatedAsyncioTestCase):
    async def test_signs_transactions_and_messages(self) -> None:
        keypair = Keypair()
        wallet = KeypairWallet(keypair)
        self.assertIsInstance(wallet, WalletCapability)
        self.assertEqual(wallet.public_key, str(keypair.pubkey()))

        unsigned = VersionedTransaction.from_bytes(make_unsigned_transaction(keypair.pubkey()))
        signed = await wallet.sign_transaction(unsigned)
        self.assertNotEqual(signed.signatures[0], Signature.default())

        raw = await wallet.sign_message(b"hello")
        self.assertTrue(Signature.from_bytes(raw).verify(keypair.pubkey(), b"hello"))


class WalletEventStreamTests(unittest.IsolatedAsyncioTestCase):
    async def test_subscribers_receive_events_published_after_subscribe(self) -> None:
        stream = WalletEventStream()
        first = stream.subscribe()
        second = stream.subscribe()
        wallet = KeypairWallet(Keypair())

        stream.connected(wallet)
        stream.error("popup blocked")
        stream.close()

        events = [event async for event in first]
        self.assertEqual([event.type for event in events], [WalletEventType.CONNECTED, WalletEventType.ERROR])
        self.assertIs(events[0].wallet, wallet)
        self.assertEqual(events[0].public_key, wallet.public_key)
        self.assertEqual(events[1].error, "popup blocked")
        self.assertEqual(len([event async for event in second]), 2)

    async def test_subscribe_after_close_ends_immediately(self) -> None:
        stream = WalletEventStream()
        stream.close()

        events = await asyncio.wait_for(self._collect(stream), timeout=1.0)

        self.assertEqual(events, [])

    async def _collect(self, stream: WalletEventStream) -> list:
        return [event async for event in stream.subscribe()]


if __name__ == "__main__":
    unittest.main()
