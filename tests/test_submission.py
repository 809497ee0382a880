from __future__ import annotations

import base64
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

import aiohttp
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.transaction import VersionedTransaction

from swap_engine.common import RetryPolicy
from swap_engine.trading.errors import (
    NetworkTimeout,
    SlippageExceeded,
    TransactionExpired,
    TransactionFailed,
    UpstreamError,
    UserRejection,
)
from swap_engine.trading.relay import JitoRateLimitError
from swap_engine.trading.rpc import RpcMethodError
from swap_engine.trading.submission import SubmissionChannel
from swap_engine.trading.types import ConfirmationStatus
from swap_engine.trading.wallet import KeypairWallet
from tests.helpers import make_rpc, make_unsigned_transaction


def make_channel(rpc: MagicMock, *, relay: MagicMock | None = None, **kwargs) -> SubmissionChannel:
    return SubmissionChannel(
        logger=logging.getLogger("test.submission"),
        rpc=rpc,
        relay=relay,
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0, max_backoff_seconds=0),
        **kwargs,
    )


class SigningTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.keypair = Keypair()
        self.unsigned = make_unsigned_transaction(self.keypair.pubkey())
        self.channel = make_channel(make_rpc())

    async def test_sign_returns_signed_transaction(self) -> None:
        signed = await self.channel.sign(self.unsigned, KeypairWallet(self.keypair))
        self.assertTrue(signed.signatures[0].verify(self.keypair.pubkey(), to_bytes_versioned(signed.message)))

    async def test_wallet_failure_is_a_user_rejection(self) -> None:
        wallet = MagicMock()
        wallet.sign_transaction = AsyncMock(side_effect=RuntimeError("User rejected the request."))
        with self.assertRaises(UserRejection):
            await self.channel.sign(self.unsigned, wallet)

    async def test_unsigned_result_is_a_user_rejection(self) -> None:
        wallet = MagicMock()
        wallet.sign_transaction = AsyncMock(side_effect=lambda transaction: transaction)
        with self.assertRaises(UserRejection):
            await self.channel.sign(self.unsigned, wallet)


class BroadcastTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        keypair = Keypair()
        wallet = KeypairWallet(keypair)
        self.signed = await wallet.sign_transaction(
            VersionedTransaction.from_bytes(make_unsigned_transaction(keypair.pubkey()))
        )
        self.signature = str(self.signed.signatures[0])
        self.encoded = base64.b64encode(bytes(self.signed)).decode("ascii")
        self.rpc = make_rpc()

    async def test_transient_failure_resends_identical_bytes(self) -> None:
        self.rpc.send_transaction.side_effect = [aiohttp.ClientConnectionError("reset"), self.signature]
        channel = make_channel(self.rpc)

        signature = await channel.broadcast(self.signed, anti_mev=False)

        self.assertEqual(signature, self.signature)
        self.assertEqual(self.rpc.send_transaction.await_count, 2)
        for call in self.rpc.send_transaction.await_args_list:
            self.assertEqual(call.args, (self.encoded,))

    async def test_relay_rate_limit_is_retried(self) -> None:
        relay = MagicMock()
        relay.send_transaction = AsyncMock(
            side_effect=[JitoRateLimitError("rate limited", status=429, retry_after_seconds=1.0), self.signature]
        )
        channel = make_channel(self.rpc, relay=relay)

        signature = await channel.broadcast(self.signed, anti_mev=True)

        self.assertEqual(signature, self.signature)
        self.assertEqual(relay.send_transaction.await_count, 2)
        self.rpc.send_transaction.assert_not_awaited()

    async def test_rejected_broadcast_is_not_retried(self) -> None:
        self.rpc.send_transaction.side_effect = RpcMethodError(
            method="sendTransaction",
            message="Transaction simulation failed",
            code=-32002,
        )
        channel = make_channel(self.rpc)

        with self.assertRaises(UpstreamError) as caught:
            await channel.broadcast(self.signed, anti_mev=False)

        self.assertEqual(caught.exception.signature, self.signature)
        self.rpc.send_transaction.assert_awaited_once()

    async def test_unacknowledged_broadcast_still_returns_signature(self) -> None:
        self.rpc.send_transaction.side_effect = aiohttp.ClientConnectionError("reset")
        channel = make_channel(self.rpc)

        with self.assertLogs("test.submission", level="WARNING") as logs:
            signature = await channel.broadcast(self.signed, anti_mev=False)

        self.assertEqual(signature, self.signature)
        self.assertEqual(self.rpc.send_transaction.await_count, 3)
        self.assertIn("transaction_send_unacknowledged", [getattr(record, "event", None) for record in logs.records])

    async def test_anti_mev_without_relay_fails(self) -> None:
        channel = make_channel(self.rpc)
        with self.assertRaises(UpstreamError):
            await channel.broadcast(self.signed, anti_mev=True)
        self.rpc.send_transaction.assert_not_awaited()
        self.assertFalse(channel.supports_anti_mev)
        self.assertTrue(make_channel(self.rpc, relay=MagicMock()).supports_anti_mev)


class SubmitTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.keypair = Keypair()
        self.wallet = KeypairWallet(self.keypair)
        self.unsigned = make_unsigned_transaction(self.keypair.pubkey())
        self.rpc = make_rpc()
        self.rpc.get_block_height.return_value = 900
        self.channel = make_channel(self.rpc)

    async def test_signs_then_broadcasts(self) -> None:
        seen: list[str] = []

        signature = await self.channel.submit(
            self.unsigned,
            self.wallet,
            1_000,
            anti_mev=False,
            on_broadcast=seen.append,
        )

        self.assertEqual(seen, [signature])
        self.rpc.get_block_height.assert_awaited_once()
        sent = VersionedTransaction.from_bytes(base64.b64decode(self.rpc.send_transaction.await_args.args[0]))
        self.assertEqual(str(sent.signatures[0]), signature)

    async def test_blockhash_expired_during_signing_is_not_sent(self) -> None:
        self.rpc.get_block_height.return_value = 1_001
        seen: list[str] = []

        with self.assertRaises(TransactionExpired) as caught:
            await self.channel.submit(self.unsigned, self.wallet, 1_000, anti_mev=False, on_broadcast=seen.append)

        self.assertFalse(caught.exception.details["broadcast"])
        self.assertIsNotNone(caught.exception.signature)
        self.assertEqual(seen, [])
        self.rpc.send_transaction.assert_not_awaited()

    async def test_height_lookup_failure_still_broadcasts(self) -> None:
        self.rpc.get_block_height.side_effect = aiohttp.ClientConnectionError("reset")

        with self.assertLogs("test.submission", level="WARNING"):
            await self.channel.submit(self.unsigned, self.wallet, 1_000, anti_mev=False)

        self.rpc.send_transaction.assert_awaited_once()

    async def test_rejected_signature_sends_nothing(self) -> None:
        wallet = MagicMock()
        wallet.sign_transaction = AsyncMock(side_effect=RuntimeError("User rejected the request."))

        with self.assertRaises(UserRejection):
            await self.channel.submit(self.unsigned, wallet, 1_000, anti_mev=False)

        self.rpc.get_block_height.assert_not_awaited()
        self.rpc.send_transaction.assert_not_awaited()


class ConfirmationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.rpc = make_rpc()
        self.channel = make_channel(self.rpc, confirm_timeout_seconds=0.2, confirm_poll_interval_seconds=0.01)

    async def test_confirmed_status_returns_slot(self) -> None:
        self.rpc.get_signature_status.return_value = {"slot": 55, "err": None, "confirmationStatus": "confirmed"}

        result = await self.channel.confirm("sig", 1_000)

        self.assertEqual(result.confirmation_status, ConfirmationStatus.CONFIRMED)
        self.assertEqual(result.slot, 55)
        self.assertEqual(result.signature, "sig")

    async def test_processed_status_keeps_polling(self) -> None:
        self.rpc.get_signature_status.side_effect = [
            {"slot": 9, "err": None, "confirmationStatus": "processed"},
            {"slot": 9, "err": None, "confirmationStatus": "finalized"},
        ]

        result = await self.channel.confirm("sig", None)

        self.assertEqual(result.slot, 9)
        self.assertEqual(self.rpc.get_signature_status.await_count, 2)

    async def test_slippage_error_is_reported_as_slippage(self) -> None:
        self.rpc.get_signature_status.return_value = {
            "slot": 10,
            "err": {"InstructionError": [3, {"Custom": 6001}]},
            "confirmationStatus": "confirmed",
        }
        with self.assertRaises(SlippageExceeded) as caught:
            await self.channel.confirm("sig", 1_000)
        self.assertEqual(caught.exception.signature, "sig")

    async def test_other_program_error_is_a_failed_transaction(self) -> None:
        self.rpc.get_signature_status.return_value = {
            "slot": 10,
            "err": {"InstructionError": [2, {"Custom": 1}]},
            "confirmationStatus": "confirmed",
        }
        with self.assertRaises(TransactionFailed):
            await self.channel.confirm("sig", 1_000)

    async def test_expired_blockhash_raises_expired(self) -> None:
        self.rpc.get_block_height.return_value = 1_001

        with self.assertRaises(TransactionExpired) as caught:
            await self.channel.confirm("sig", 1_000)

        self.assertEqual(caught.exception.signature, "sig")
        # Status is checked once more after the expiry is observed.
        self.assertEqual(self.rpc.get_signature_status.await_count, 2)

    async def test_late_landing_after_expiry_is_confirmed(self) -> None:
        self.rpc.get_block_height.return_value = 1_001
        self.rpc.get_signature_status.side_effect = [
            None,
            {"slot": 77, "err": None, "confirmationStatus": "confirmed"},
        ]

        result = await self.channel.confirm("sig", 1_000)

        self.assertEqual(result.slot, 77)

    async def test_poll_errors_do_not_abort_confirmation(self) -> None:
        self.rpc.get_signature_status.side_effect = [
            aiohttp.ClientConnectionError("reset"),
            {"slot": 3, "err": None, "confirmationStatus": "confirmed"},
        ]

        result = await self.channel.confirm("sig", None)

        self.assertEqual(result.slot, 3)

    async def test_deadline_raises_network_timeout(self) -> None:
        channel = make_channel(self.rpc, confirm_timeout_seconds=0.05, confirm_poll_interval_seconds=0.01)

        with self.assertRaises(NetworkTimeout) as caught:
            await channel.confirm("sig", None)

        self.assertEqual(caught.exception.signature, "sig")
        self.assertGreater(self.rpc.get_signature_status.await_count, 1)


if __name__ == "__main__":
    unittest.main()
