from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Callable

from solders.pubkey import Pubkey
from solders.signature import Signature

from swap_engine.common import cancel_task, guarded_call, log_event

from .balances import BalanceOracle
from .builder import TransactionBuilder
from .errors import (
    InsufficientBalance,
    InvalidAmount,
    InvalidInput,
    TradeError,
    TradeInProgress,
    UserRejection,
    WalletNotConnected,
)
from .fees import FeePolicy
from .quotes import QuoteProvider
from .submission import SubmissionChannel
from .types import (
    SOL_MINT,
    PrioritizationConfig,
    Quote,
    TokenBalance,
    TokenDescriptor,
    TradeMode,
    TradeOutcome,
    TradeRequest,
    TradeSettings,
    WalletSession,
    from_atomic,
    to_atomic,
)
from .wallet import SIGN_IN_MESSAGE, WalletCapability, WalletEventStream, WalletEventType


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SIGNING = "signing"
    SIGNED = "signed"
    TRADING = "trading"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTED}),
    SessionState.CONNECTED: frozenset({SessionState.DISCONNECTED, SessionState.SIGNING, SessionState.TRADING}),
    SessionState.SIGNING: frozenset({SessionState.DISCONNECTED, SessionState.CONNECTED, SessionState.SIGNED}),
    SessionState.SIGNED: frozenset({SessionState.DISCONNECTED, SessionState.CONNECTED, SessionState.TRADING}),
    SessionState.TRADING: frozenset({SessionState.DISCONNECTED, SessionState.CONNECTED, SessionState.SIGNED}),
}

StateCallback = Callable[[SessionState, SessionState], None]


@dataclass(slots=True)
class _TradeAttempt:
    request: TradeRequest
    wallet: WalletCapability
    task: asyncio.Task[TradeOutcome] | None = None
    broadcast_started: bool = False
    signature: str | None = None


class TradeSession:
    """Per-wallet trade lifecycle: connect, optional sign-in, one trade at a time.

    ``submit_trade`` reserves the session synchronously, so a second call made
    while an attempt is running fails with ``TradeInProgress`` before it
    suspends. Once a transaction has been broadcast the attempt runs to
    resolution even if the caller stops waiting.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        token_mint: str,
        balances: BalanceOracle,
        quotes: QuoteProvider,
        fees: FeePolicy,
        builder: TransactionBuilder,
        submission: SubmissionChannel,
        settings: TradeSettings | None = None,
        sign_in_message: str = SIGN_IN_MESSAGE,
    ) -> None:
        self._logger = logger
        self._token_mint = token_mint
        self._balances = balances
        self._quotes = quotes
        self._fees = fees
        self._builder = builder
        self._submission = submission
        self._settings = settings or TradeSettings()
        self._sign_in_message = sign_in_message.encode("utf-8")

        self._state = SessionState.DISCONNECTED
        self._wallet: WalletCapability | None = None
        self._authenticated = False
        self._detach_pending = False
        self._attempt: _TradeAttempt | None = None
        self._callbacks: list[StateCallback] = []
        self._watchers: list[asyncio.Queue[SessionState]] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def wallet(self) -> WalletCapability | None:
        return self._wallet

    @property
    def wallet_session(self) -> WalletSession:
        wallet = self._wallet
        return WalletSession(
            public_key=wallet.public_key if wallet is not None else "",
            connected=wallet is not None,
            sign_capability=wallet,
        )

    @property
    def settings(self) -> TradeSettings:
        return self._settings

    @property
    def token_mint(self) -> str:
        return self._token_mint

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return unsubscribe

    def watch(self) -> AsyncIterator[SessionState]:
        queue: asyncio.Queue[SessionState] = asyncio.Queue()
        self._watchers.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue[SessionState]) -> AsyncIterator[SessionState]:
        try:
            while True:
                yield await queue.get()
        finally:
            with contextlib.suppress(ValueError):
                self._watchers.remove(queue)

    def _transition(self, new_state: SessionState, *, reason: str) -> None:
        previous = self._state
        if new_state == previous:
            return
        if new_state not in _TRANSITIONS[previous]:
            raise RuntimeError(f"invalid session transition {previous.value} -> {new_state.value}")
        self._state = new_state
        log_event(
            self._logger,
            level="info",
            event="session_state_changed",
            message="Trade session state changed",
            previous_state=previous.value,
            state=new_state.value,
            reason=reason,
        )
        for callback in list(self._callbacks):
            try:
                callback(previous, new_state)
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="session_observer_failed",
                    message="Session state observer raised",
                    state=new_state.value,
                    error=str(error),
                    error_type=type(error).__name__,
                )
        for queue in list(self._watchers):
            queue.put_nowait(new_state)

    def _base_state(self) -> SessionState:
        if self._wallet is None:
            return SessionState.DISCONNECTED
        return SessionState.SIGNED if self._authenticated else SessionState.CONNECTED

    def attach_wallet(self, wallet: WalletCapability) -> None:
        if not wallet.public_key:
            raise WalletNotConnected("wallet has no public key")
        if self._state is SessionState.TRADING:
            raise TradeInProgress("cannot switch wallets while a trade is in progress")
        if self._wallet is not None and self._wallet.public_key == wallet.public_key:
            self._wallet = wallet
            return
        if self._wallet is not None:
            self._transition(SessionState.DISCONNECTED, reason="wallet_replaced")
        self._wallet = wallet
        self._authenticated = False
        self._detach_pending = False
        self._transition(SessionState.CONNECTED, reason="wallet_attached")

    def detach_wallet(self) -> None:
        if self._state is SessionState.TRADING:
            self._detach_pending = True
            log_event(
                self._logger,
                level="warning",
                event="wallet_detach_deferred",
                message="Wallet disconnected during a trade; detaching once the attempt resolves",
            )
            return
        self._wallet = None
        self._authenticated = False
        self._transition(SessionState.DISCONNECTED, reason="wallet_detached")

    def apply_wallet_session(self, wallet_session: WalletSession) -> None:
        """Sync with a wallet session owned by the caller's UI shell."""
        if wallet_session.connected and wallet_session.sign_capability is not None:
            self.attach_wallet(wallet_session.sign_capability)
        elif self._wallet is not None:
            self.detach_wallet()

    def follow_wallet_events(self, stream: WalletEventStream) -> asyncio.Task[None]:
        subscription = stream.subscribe()

        async def _follow() -> None:
            async for event in subscription:
                if event.type is WalletEventType.CONNECTED and event.wallet is not None:
                    await guarded_call(
                        lambda: self.attach_wallet(event.wallet),
                        logger=self._logger,
                        event="wallet_attach_failed",
                        message="Could not attach wallet from connect event",
                        public_key=event.public_key,
                    )
                elif event.type is WalletEventType.DISCONNECTED:
                    self.detach_wallet()
                elif event.type is WalletEventType.ERROR:
                    log_event(
                        self._logger,
                        level="warning",
                        event="wallet_error",
                        message="Wallet reported an error",
                        error=event.error,
                    )

        return asyncio.create_task(_follow())

    async def authenticate(self) -> bool:
        wallet = self._wallet
        if wallet is None:
            raise WalletNotConnected()
        if self._state is SessionState.SIGNED:
            return True
        if self._attempt is not None or self._state is not SessionState.CONNECTED:
            raise TradeInProgress(f"cannot sign in while {self._state.value}")

        self._transition(SessionState.SIGNING, reason="sign_in_requested")
        try:
            raw_signature = await wallet.sign_message(self._sign_in_message)
            verified = Signature.from_bytes(bytes(raw_signature)).verify(
                Pubkey.from_string(wallet.public_key),
                self._sign_in_message,
            )
            if not verified:
                raise UserRejection("sign-in signature did not verify")
        except (TradeError, asyncio.CancelledError):
            self._abort_sign_in(wallet)
            raise
        except Exception as error:
            self._abort_sign_in(wallet)
            raise UserRejection(f"sign-in failed: {error}") from error

        if self._wallet is not wallet:
            return False
        self._authenticated = True
        self._transition(SessionState.SIGNED, reason="sign_in_verified")
        return True

    def _abort_sign_in(self, wallet: WalletCapability) -> None:
        if self._wallet is wallet and self._state is SessionState.SIGNING:
            self._transition(SessionState.CONNECTED, reason="sign_in_failed")

    async def describe_pair(self, mode: TradeMode | str) -> tuple[TokenDescriptor, TokenDescriptor]:
        input_mint, output_mint = QuoteProvider.mints_for_mode(mode, self._token_mint)
        return await self._balances.describe(input_mint), await self._balances.describe(output_mint)

    async def request_quote(
        self,
        *,
        mode: TradeMode | str,
        amount: str,
        slippage_bps: int | None = None,
    ) -> Quote:
        request = TradeRequest.from_input(mode=mode, amount=amount, settings=self._settings, slippage_bps=slippage_bps)
        input_token, output_token = await self.describe_pair(request.mode)
        amount_atomic = to_atomic(request.amount, input_token.decimals)
        if amount_atomic <= 0:
            raise InvalidAmount("amount is below the smallest unit of the token")
        return await self._quotes.get_quote(
            input_mint=input_token.mint,
            output_mint=output_token.mint,
            amount_atomic=amount_atomic,
            slippage_bps=request.slippage_bps,
        )

    async def refresh_balances(self) -> dict[str, TokenBalance]:
        wallet = self._wallet
        if wallet is None:
            raise WalletNotConnected()
        return await self._balances.refresh(wallet.public_key, [SOL_MINT, self._token_mint])

    async def submit_trade(self, request: TradeRequest) -> TradeOutcome:
        if self._attempt is not None:
            raise TradeInProgress()
        wallet = self._wallet
        if wallet is None or self._state not in (SessionState.CONNECTED, SessionState.SIGNED):
            raise WalletNotConnected()
        request.validate()
        if request.anti_mev and not self._submission.supports_anti_mev:
            raise InvalidInput("anti-MEV submission requested but no relay is configured")
        priority_fee_atomic = self._settings.clamp_priority_fee(request.priority_fee_atomic)
        if priority_fee_atomic != request.priority_fee_atomic:
            log_event(
                self._logger,
                level="warning",
                event="priority_fee_clamped",
                message="Priority fee above the configured cap was clamped",
                requested=request.priority_fee_atomic,
                priority_fee_atomic=priority_fee_atomic,
            )
            request = replace(request, priority_fee_atomic=priority_fee_atomic)

        attempt = _TradeAttempt(request=request, wallet=wallet)
        self._attempt = attempt
        try:
            input_token, output_token = await self.describe_pair(request.mode)
            amount_atomic = to_atomic(request.amount, input_token.decimals)
            if amount_atomic <= 0:
                raise InvalidAmount("amount is below the smallest unit of the token")
            balance = await self._balances.snapshot_for_validation(wallet.public_key, input_token.mint)
            if amount_atomic > balance.balance_atomic:
                raise InsufficientBalance(
                    f"requested {request.amount} {input_token.symbol}, "
                    f"available {from_atomic(balance.balance_atomic, balance.decimals)}",
                    details={
                        "mint": input_token.mint,
                        "requested_atomic": amount_atomic,
                        "available_atomic": balance.balance_atomic,
                        "stale": balance.stale,
                    },
                )
            if self._wallet is not wallet:
                raise WalletNotConnected("wallet changed during validation")
        except BaseException:
            self._attempt = None
            raise

        self._transition(SessionState.TRADING, reason="trade_submitted")
        task = asyncio.create_task(
            self._run_attempt(attempt, input_token=input_token, output_token=output_token, amount_atomic=amount_atomic)
        )
        attempt.task = task
        task.add_done_callback(self._on_attempt_done)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.done() or attempt.broadcast_started:
                log_event(
                    self._logger,
                    level="warning",
                    event="trade_caller_cancelled",
                    message="Caller stopped waiting; broadcast trade keeps confirming in the background",
                    signature=attempt.signature,
                )
            else:
                await cancel_task(task)
            raise

    def _on_attempt_done(self, task: asyncio.Task[TradeOutcome]) -> None:
        if not task.cancelled():
            # Observed here so background completions never warn as unretrieved.
            task.exception()

    def _finish_attempt(self, attempt: _TradeAttempt) -> None:
        if self._attempt is attempt:
            self._attempt = None
        if self._detach_pending:
            self._detach_pending = False
            self._wallet = None
            self._authenticated = False
        self._transition(self._base_state(), reason="trade_resolved")

    async def _run_attempt(
        self,
        attempt: _TradeAttempt,
        *,
        input_token: TokenDescriptor,
        output_token: TokenDescriptor,
        amount_atomic: int,
    ) -> TradeOutcome:
        request = attempt.request
        wallet = attempt.wallet
        try:
            quote = await self._quotes.get_quote(
                input_mint=input_token.mint,
                output_mint=output_token.mint,
                amount_atomic=amount_atomic,
                slippage_bps=request.slippage_bps,
            )
            fee = self._fees.fee_for(payer=wallet.public_key, quote=quote, mode=request.mode)
            built = await self._builder.build(
                quote=quote,
                wallet_public_key=wallet.public_key,
                fee=fee,
                prioritization=PrioritizationConfig(
                    priority_fee_atomic=request.priority_fee_atomic,
                    anti_mev=request.anti_mev,
                ),
                token_program=input_token.token_program,
            )
            def _mark_broadcast(signature: str) -> None:
                attempt.broadcast_started = True
                attempt.signature = signature

            signature = await self._submission.submit(
                built.unsigned_tx,
                wallet,
                built.last_valid_block_height,
                anti_mev=request.anti_mev,
                on_broadcast=_mark_broadcast,
            )
            result = await self._submission.confirm(signature, built.last_valid_block_height)

            outcome = TradeOutcome(
                signature=signature,
                input_amount=quote.in_amount,
                output_amount=quote.out_amount,
                input_mint=quote.input_mint,
                output_mint=quote.output_mint,
                fee_atomic=fee.amount_atomic,
                mode=request.mode,
                anti_mev=request.anti_mev,
                slot=result.slot,
            )
            log_event(
                self._logger,
                level="info",
                event="trade_confirmed",
                message="Trade confirmed",
                **outcome.to_dict(),
            )
            if self._wallet is wallet:
                await guarded_call(
                    self.refresh_balances,
                    logger=self._logger,
                    event="post_trade_balance_refresh_failed",
                    message="Balance refresh after trade failed",
                    signature=signature,
                )
            return outcome
        except TradeError as error:
            log_event(
                self._logger,
                level="warning",
                event="trade_failed",
                message="Trade attempt failed",
                kind=error.kind.value,
                error=str(error),
                retryable=error.retryable,
                signature=error.signature or attempt.signature,
                mode=request.mode.value,
            )
            raise
        finally:
            self._finish_attempt(attempt)
