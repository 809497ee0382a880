from .balances import BalanceOracle
from .builder import TransactionBuilder, append_instructions, decode_fee_transfers, fee_instructions
from .errors import (
    BuildError,
    ErrorKind,
    InsufficientBalance,
    InvalidAmount,
    InvalidInput,
    NetworkTimeout,
    NoRouteFound,
    QuoteExpired,
    SlippageExceeded,
    TradeError,
    TradeInProgress,
    TransactionExpired,
    TransactionFailed,
    UpstreamError,
    UserRejection,
    WalletNotConnected,
)
from .fees import DEFAULT_FEE_RECEIVER, FEE_RATE, FeePolicy, compute_fee
from .jupiter import JupiterApiError, JupiterClient
from .quotes import QuoteProvider
from .relay import JitoRateLimitError, JitoRelayClient, JitoRelayError
from .rpc import LedgerRpcClient, RpcMethodError
from .session import SessionState, TradeSession
from .submission import SubmissionChannel
from .types import (
    SOL_MINT,
    BuiltTransaction,
    ConfirmationStatus,
    FeeInstruction,
    PrioritizationConfig,
    Quote,
    SubmissionResult,
    TokenBalance,
    TokenDescriptor,
    TradeMode,
    TradeOutcome,
    TradeRequest,
    TradeSettings,
    WalletSession,
)
from .wallet import (
    KeypairWallet,
    WalletCapability,
    WalletEvent,
    WalletEventStream,
    WalletEventType,
    parse_private_key,
)

__all__ = [
    "BalanceOracle",
    "BuildError",
    "BuiltTransaction",
    "ConfirmationStatus",
    "DEFAULT_FEE_RECEIVER",
    "ErrorKind",
    "FEE_RATE",
    "FeeInstruction",
    "FeePolicy",
    "InsufficientBalance",
    "InvalidAmount",
    "InvalidInput",
    "JitoRateLimitError",
    "JitoRelayClient",
    "JitoRelayError",
    "JupiterApiError",
    "JupiterClient",
    "KeypairWallet",
    "LedgerRpcClient",
    "NetworkTimeout",
    "NoRouteFound",
    "PrioritizationConfig",
    "Quote",
    "QuoteExpired",
    "QuoteProvider",
    "RpcMethodError",
    "SOL_MINT",
    "SessionState",
    "SlippageExceeded",
    "SubmissionChannel",
    "SubmissionResult",
    "TokenBalance",
    "TokenDescriptor",
    "TradeError",
    "TradeInProgress",
    "TradeMode",
    "TradeOutcome",
    "TradeRequest",
    "TradeSession",
    "TradeSettings",
    "TransactionBuilder",
    "TransactionExpired",
    "TransactionFailed",
    "UpstreamError",
    "UserRejection",
    "WalletCapability",
    "WalletEvent",
    "WalletEventStream",
    "WalletEventType",
    "WalletNotConnected",
    "WalletSession",
    "append_instructions",
    "compute_fee",
    "decode_fee_transfers",
    "fee_instructions",
    "parse_private_key",
]
