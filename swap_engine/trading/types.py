from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass, field
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import InvalidAmount, InvalidInput, QuoteExpired

if TYPE_CHECKING:
    from .wallet import WalletCapability

SOL_MINT = "So11111111111111111111111111111111111111112"
SOL_DECIMALS = 9
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"

MAX_SLIPPAGE_BPS = 10_000
AMOUNT_INPUT_RE = re.compile(r"^\d*\.?\d*$")


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(Decimal(str(value).strip()))
    except (TypeError, ValueError, InvalidOperation):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_decimal(value: Any, default: Decimal = Decimal(0)) -> Decimal:
    try:
        if value is None or str(value).strip() == "":
            return default
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    return parsed if parsed.is_finite() else default


def to_atomic(amount: str | Decimal, decimals: int) -> int:
    """Convert a UI amount to integer base units, rounding down."""
    value = amount if isinstance(amount, Decimal) else to_decimal(amount, Decimal(-1))
    if value < 0:
        raise InvalidAmount(f"amount is not a valid number: {amount!r}")
    scaled = value.scaleb(max(0, int(decimals)))
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def from_atomic(amount: int, decimals: int) -> Decimal:
    return Decimal(int(amount)).scaleb(-max(0, int(decimals)))


class TradeMode(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: "TradeMode | str") -> "TradeMode":
        if isinstance(value, TradeMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInput(f"unknown trade mode: {value!r}") from None


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    TIMEOUT = "timeout"


@dataclass(slots=True, frozen=True)
class WalletSession:
    public_key: str
    connected: bool
    sign_capability: "WalletCapability | None" = None


@dataclass(slots=True, frozen=True)
class TokenDescriptor:
    mint: str
    decimals: int
    symbol: str
    token_program: str = TOKEN_PROGRAM_ID


NATIVE_TOKEN = TokenDescriptor(mint=SOL_MINT, decimals=SOL_DECIMALS, symbol="SOL", token_program=SYSTEM_PROGRAM_ID)


@dataclass(slots=True, frozen=True)
class TokenBalance:
    mint: str
    balance_atomic: int
    decimals: int
    symbol: str
    usd_value: Decimal
    fetched_at: float
    stale: bool = False

    @property
    def balance(self) -> Decimal:
        return from_atomic(self.balance_atomic, self.decimals)

    def age_seconds(self, *, now: float | None = None) -> float:
        current = time.monotonic() if now is None else now
        return max(0.0, current - self.fetched_at)


@dataclass(slots=True, frozen=True)
class TradeSettings:
    slippage_bps: int = 250
    priority_fee_atomic: int = 12_000_000
    max_priority_fee_atomic: int = 100_000_000
    anti_mev: bool = True
    quote_max_age_seconds: float = 30.0

    def clamp_priority_fee(self, value: int) -> int:
        return max(0, min(int(value), self.max_priority_fee_atomic))


@dataclass(slots=True, frozen=True)
class TradeRequest:
    mode: TradeMode
    amount: str
    slippage_bps: int
    priority_fee_atomic: int
    anti_mev: bool

    @classmethod
    def from_input(
        cls,
        *,
        mode: TradeMode | str,
        amount: str,
        settings: TradeSettings,
        slippage_bps: int | None = None,
        priority_fee_atomic: int | None = None,
        anti_mev: bool | None = None,
    ) -> "TradeRequest":
        request = cls(
            mode=TradeMode.parse(mode),
            amount=str(amount).strip(),
            slippage_bps=settings.slippage_bps if slippage_bps is None else int(slippage_bps),
            priority_fee_atomic=settings.clamp_priority_fee(
                settings.priority_fee_atomic if priority_fee_atomic is None else priority_fee_atomic
            ),
            anti_mev=settings.anti_mev if anti_mev is None else bool(anti_mev),
        )
        request.validate()
        return request

    def validate(self) -> None:
        if not 0 <= self.slippage_bps <= MAX_SLIPPAGE_BPS:
            raise InvalidInput(f"slippage_bps must be within [0, {MAX_SLIPPAGE_BPS}], got {self.slippage_bps}")
        if self.priority_fee_atomic < 0:
            raise InvalidInput("priority fee cannot be negative")
        if not self.amount or self.amount == "." or not AMOUNT_INPUT_RE.match(self.amount):
            raise InvalidAmount(f"amount is not a valid number: {self.amount!r}")
        if to_decimal(self.amount) <= 0:
            raise InvalidAmount("amount must be greater than zero")


@dataclass(slots=True)
class Quote:
    """Aggregator quote for one attempt. Spent by the first ``consume()``."""

    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: Decimal
    slippage_bps: int
    route_meta: dict[str, Any]
    raw: dict[str, Any]
    issued_at: float = field(default_factory=time.monotonic)
    max_age_seconds: float = 30.0
    consumed: bool = False

    def is_stale(self, *, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else now
        return current - self.issued_at > self.max_age_seconds

    def consume(self) -> None:
        if self.consumed:
            raise QuoteExpired("quote was already used for a submission attempt")
        if self.is_stale():
            raise QuoteExpired(f"quote is older than {self.max_age_seconds:g}s; request a new one")
        self.consumed = True

    def summary(self) -> dict[str, Any]:
        return {
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "in_amount": self.in_amount,
            "out_amount": self.out_amount,
            "price_impact_pct": str(self.price_impact_pct),
            "slippage_bps": self.slippage_bps,
            **self.route_meta,
        }


@dataclass(slots=True, frozen=True)
class FeeInstruction:
    payer: str
    receiver: str
    amount_atomic: int
    mint: str = SOL_MINT

    @property
    def is_native(self) -> bool:
        return self.mint == SOL_MINT


@dataclass(slots=True, frozen=True)
class PrioritizationConfig:
    priority_fee_atomic: int
    anti_mev: bool
    dynamic_compute_unit_limit: bool = True

    def jupiter_fee_param(self) -> int | dict[str, int]:
        lamports = max(0, int(self.priority_fee_atomic))
        if self.anti_mev:
            return {"jitoTipLamports": lamports}
        return lamports


@dataclass(slots=True, frozen=True)
class BuiltTransaction:
    unsigned_tx: bytes
    last_valid_block_height: int | None
    fee: FeeInstruction
    quote_summary: dict[str, Any]


@dataclass(slots=True, frozen=True)
class SubmissionResult:
    signature: str
    confirmation_status: ConfirmationStatus
    slot: int | None = None


@dataclass(slots=True, frozen=True)
class TradeOutcome:
    signature: str
    input_amount: int
    output_amount: int
    input_mint: str
    output_mint: str
    fee_atomic: int
    mode: TradeMode
    anti_mev: bool
    slot: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["mode"] = self.mode.value
        return payload
