from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Callable

from solders.transaction import VersionedTransaction

from swap_engine.common import RetryPolicy, guarded_call, is_transient_network_error, log_event

from .errors import (
    NetworkTimeout,
    SlippageExceeded,
    TradeError,
    TransactionExpired,
    TransactionFailed,
    UpstreamError,
    UserRejection,
)
from .relay import JitoRelayClient
from .rpc import LedgerRpcClient
from .types import ConfirmationStatus, SubmissionResult, to_int
from .wallet import WalletCapability

# Jupiter aggregator program error raised when the minimum output is not met.
JUPITER_SLIPPAGE_ERROR_CODES = frozenset({6001})


def _custom_error_code(err: Any) -> int | None:
    """Extract ``Custom(n)`` from an ``InstructionError`` status payload."""
    if not isinstance(err, dict):
        return None
    instruction_error = err.get("InstructionError")
    if not isinstance(instruction_error, list) or len(instruction_error) < 2:
        return None
    detail = instruction_error[1]
    if isinstance(detail, dict) and "Custom" in detail:
        return to_int(detail.get("Custom"), -1)
    return None


class SubmissionChannel:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: LedgerRpcClient,
        relay: JitoRelayClient | None = None,
        retry_policy: RetryPolicy | None = None,
        confirm_timeout_seconds: float = 45.0,
        confirm_poll_interval_seconds: float = 1.0,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._relay = relay
        self._retry_policy = retry_policy or RetryPolicy()
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._confirm_poll_interval_seconds = confirm_poll_interval_seconds

    @property
    def supports_anti_mev(self) -> bool:
        return self._relay is not None

    async def sign(self, unsigned_tx: bytes, wallet: WalletCapability) -> VersionedTransaction:
        transaction = VersionedTransaction.from_bytes(unsigned_tx)
        try:
            signed = await wallet.sign_transaction(transaction)
        except (TradeError, asyncio.CancelledError):
            raise
        except Exception as error:
            raise UserRejection(f"wallet did not sign the transaction: {error}") from error
        if not signed.signatures or signed.signatures[0] == transaction.signatures[0]:
            raise UserRejection("wallet returned an unsigned transaction")
        return signed

    async def _send_once(self, encoded: str, *, anti_mev: bool) -> str:
        if anti_mev:
            if self._relay is None:
                raise UpstreamError("anti-MEV submission requested but no relay is configured")
            return await self._relay.send_transaction(encoded)
        return await self._rpc.send_transaction(encoded)

    async def broadcast(self, signed: VersionedTransaction, *, anti_mev: bool) -> str:
        """Send ``signed`` and return its signature.

        Retries resend the identical signed bytes, so a retried broadcast can
        land at most once. When every attempt fails transiently the signature is
        still returned: the transaction may have landed and confirmation decides.
        """
        signature = str(signed.signatures[0])
        encoded = base64.b64encode(bytes(signed)).decode("ascii")
        channel = "jito" if anti_mev else "rpc"
        try:
            returned = await self._retry_policy.run(
                lambda: self._send_once(encoded, anti_mev=anti_mev),
                logger=self._logger,
                event="transaction_send_retry",
                message="Transaction broadcast failed; retrying with the same signed bytes",
                signature=signature,
                channel=channel,
            )
        except Exception as error:
            if not is_transient_network_error(error):
                raise UpstreamError(
                    f"transaction broadcast rejected: {error}",
                    signature=signature,
                    status=getattr(error, "status", None),
                ) from error
            log_event(
                self._logger,
                level="warning",
                event="transaction_send_unacknowledged",
                message="Broadcast was never acknowledged; waiting for confirmation in case it landed",
                signature=signature,
                channel=channel,
                error=str(error),
                error_type=type(error).__name__,
            )
            return signature

        if returned and returned != signature:
            log_event(
                self._logger,
                level="warning",
                event="transaction_signature_mismatch",
                message="Broadcast endpoint returned a different signature",
                signature=signature,
                returned_signature=returned,
                channel=channel,
            )
        log_event(
            self._logger,
            level="info",
            event="transaction_sent",
            message="Transaction broadcast",
            signature=signature,
            channel=channel,
        )
        return signature

    async def submit(
        self,
        unsigned_tx: bytes,
        wallet: WalletCapability,
        last_valid_block_height: int | None,
        *,
        anti_mev: bool,
        on_broadcast: Callable[[str], None] | None = None,
    ) -> str:
        """Sign through ``wallet`` and broadcast; returns the transaction signature.

        A wallet can hold the transaction for a long time, so the blockhash
        window is checked again after signing and an already expired
        transaction is never sent. ``on_broadcast`` runs right before the first
        send, once the outcome can no longer be abandoned.
        """
        signed = await self.sign(unsigned_tx, wallet)
        signature = str(signed.signatures[0])

        if last_valid_block_height is not None:
            block_height = await guarded_call(
                self._rpc.get_block_height,
                logger=self._logger,
                event="pre_broadcast_height_check_failed",
                message="Could not read block height before broadcast; sending anyway",
                signature=signature,
            )
            if block_height is not None and block_height > last_valid_block_height:
                log_event(
                    self._logger,
                    level="warning",
                    event="transaction_expired_before_broadcast",
                    message="Blockhash expired while the wallet was signing; not broadcasting",
                    signature=signature,
                    block_height=block_height,
                    last_valid_block_height=last_valid_block_height,
                )
                raise TransactionExpired(signature=signature, details={"broadcast": False})

        if on_broadcast is not None:
            on_broadcast(signature)
        return await self.broadcast(signed, anti_mev=anti_mev)

    async def confirm(self, signature: str, last_valid_block_height: int | None) -> SubmissionResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._confirm_timeout_seconds

        while True:
            try:
                status = await self._rpc.get_signature_status(signature)
                if status is not None:
                    result = self._interpret_status(signature, status)
                    if result is not None:
                        return result
                if last_valid_block_height is not None:
                    block_height = await self._rpc.get_block_height()
                    if block_height > last_valid_block_height:
                        # Re-check once: the transaction may have landed in the final blocks.
                        status = await self._rpc.get_signature_status(signature)
                        result = self._interpret_status(signature, status) if status is not None else None
                        if result is not None:
                            return result
                        log_event(
                            self._logger,
                            level="warning",
                            event="transaction_expired",
                            message="Blockhash expired before the transaction was confirmed",
                            signature=signature,
                            block_height=block_height,
                            last_valid_block_height=last_valid_block_height,
                        )
                        raise TransactionExpired(signature=signature)
            except (TradeError, asyncio.CancelledError):
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="confirmation_poll_failed",
                    message="Confirmation poll failed; will poll again",
                    signature=signature,
                    error=str(error),
                    error_type=type(error).__name__,
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                log_event(
                    self._logger,
                    level="error",
                    event="transaction_confirmation_timeout",
                    message="Transaction confirmation timed out; outcome unknown",
                    signature=signature,
                    timeout_seconds=self._confirm_timeout_seconds,
                )
                raise NetworkTimeout(signature=signature)
            await asyncio.sleep(min(self._confirm_poll_interval_seconds, remaining))

    def _interpret_status(self, signature: str, status: dict[str, Any]) -> SubmissionResult | None:
        err = status.get("err")
        if err:
            code = _custom_error_code(err)
            log_event(
                self._logger,
                level="warning",
                event="transaction_failed_onchain",
                message="Transaction landed with an error",
                signature=signature,
                error=err,
                custom_code=code,
            )
            if code in JUPITER_SLIPPAGE_ERROR_CODES:
                raise SlippageExceeded(signature=signature, details={"error": err})
            raise TransactionFailed(signature=signature, details={"error": err})

        confirmation = str(status.get("confirmationStatus") or "").lower()
        if confirmation in {"confirmed", "finalized"}:
            slot = to_int(status.get("slot"), -1)
            log_event(
                self._logger,
                level="info",
                event="transaction_confirmed",
                message="Transaction confirmed",
                signature=signature,
                confirmation_status=confirmation,
                slot=slot if slot >= 0 else None,
            )
            return SubmissionResult(
                signature=signature,
                confirmation_status=ConfirmationStatus.CONFIRMED,
                slot=slot if slot >= 0 else None,
            )
        return None
