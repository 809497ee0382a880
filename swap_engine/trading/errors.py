from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    INVALID_AMOUNT = "invalid_amount"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NO_ROUTE_FOUND = "no_route_found"
    QUOTE_EXPIRED = "quote_expired"
    BUILD_ERROR = "build_error"
    USER_REJECTION = "user_rejection"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    TRANSACTION_EXPIRED = "transaction_expired"
    TRANSACTION_FAILED = "transaction_failed"
    NETWORK_TIMEOUT = "network_timeout"
    UPSTREAM_ERROR = "upstream_error"
    TRADE_IN_PROGRESS = "trade_in_progress"
    WALLET_NOT_CONNECTED = "wallet_not_connected"


class TradeError(Exception):
    """Base class for every failure surfaced by the trade engine.

    Callers branch on ``kind`` (or the subclass), never on the message text.
    ``retryable`` tells the caller whether a fresh attempt with a new quote is
    reasonable; it never authorizes resubmitting a broadcast transaction.
    """

    kind: ErrorKind = ErrorKind.UPSTREAM_ERROR
    retryable: bool = False
    user_message: str = "The trade failed. Please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        signature: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message or self.user_message)
        self.signature = signature
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": str(self),
            "user_message": self.user_message,
            "retryable": self.retryable,
            "signature": self.signature,
            "details": self.details,
        }


class InvalidInput(TradeError):
    kind = ErrorKind.INVALID_INPUT
    user_message = "Check the trade parameters."


class InvalidAmount(InvalidInput):
    kind = ErrorKind.INVALID_AMOUNT
    user_message = "Enter a valid trade amount."


class InsufficientBalance(TradeError):
    kind = ErrorKind.INSUFFICIENT_BALANCE
    user_message = "Your balance is too low for this trade."


class NoRouteFound(TradeError):
    kind = ErrorKind.NO_ROUTE_FOUND
    retryable = True
    user_message = "No swap route is available. Try a different amount later."


class QuoteExpired(TradeError):
    kind = ErrorKind.QUOTE_EXPIRED
    retryable = True
    user_message = "The price quote expired. Request a new quote."


class BuildError(TradeError):
    kind = ErrorKind.BUILD_ERROR
    user_message = "The swap transaction could not be prepared."


class UserRejection(TradeError):
    kind = ErrorKind.USER_REJECTION
    user_message = "You cancelled the signature request."


class SlippageExceeded(TradeError):
    kind = ErrorKind.SLIPPAGE_EXCEEDED
    retryable = True
    user_message = "The price moved beyond your slippage tolerance."


class TransactionExpired(TradeError):
    kind = ErrorKind.TRANSACTION_EXPIRED
    retryable = True
    user_message = "The transaction expired before it was included. No funds were moved."


class TransactionFailed(TradeError):
    kind = ErrorKind.TRANSACTION_FAILED
    user_message = "The transaction failed on-chain. No fee was charged."


class NetworkTimeout(TradeError):
    kind = ErrorKind.NETWORK_TIMEOUT
    user_message = "Confirmation timed out. Check the transaction in an explorer before retrying."


class UpstreamError(TradeError):
    kind = ErrorKind.UPSTREAM_ERROR
    retryable = True
    user_message = "A network service is unavailable. Please retry shortly."

    def __init__(
        self,
        message: str | None = None,
        *,
        transient: bool = False,
        status: int | None = None,
        signature: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, signature=signature, details=details)
        self.transient = transient
        self.status = status


class TradeInProgress(TradeError):
    kind = ErrorKind.TRADE_IN_PROGRESS
    user_message = "A trade is already in progress."


class WalletNotConnected(TradeError):
    kind = ErrorKind.WALLET_NOT_CONNECTED
    user_message = "Connect your wallet first."
