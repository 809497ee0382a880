from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal

from solders.pubkey import Pubkey

from .errors import BuildError
from .types import SOL_MINT, FeeInstruction, Quote, TradeMode

DEFAULT_FEE_RECEIVER = "Hv66YTLHXUWNq7KeMboFkonu8YjJUygMstgAeB1htD24"
FEE_RATE = Decimal("0.01")


def compute_fee(amount_atomic: int, *, rate: Decimal = FEE_RATE) -> int:
    """Platform fee in base units: ``floor(amount * rate)``, never negative."""
    if amount_atomic <= 0:
        return 0
    fee = (Decimal(int(amount_atomic)) * rate).to_integral_value(rounding=ROUND_FLOOR)
    return max(0, int(fee))


class FeePolicy:
    """Decides the platform fee for a quote.

    The fee is charged on the input side of the swap in the input asset:
    lamports for buys, the sold token for sells. Amounts that floor to zero
    still produce an instruction so every swap carries exactly one fee
    transfer.
    """

    def __init__(self, receiver: str = DEFAULT_FEE_RECEIVER, *, rate: Decimal = FEE_RATE) -> None:
        try:
            Pubkey.from_string(receiver)
        except ValueError as error:
            raise BuildError(f"invalid fee receiver address: {receiver!r}") from error
        if not Decimal(0) <= rate < Decimal(1):
            raise ValueError(f"fee rate must be within [0, 1), got {rate}")
        self._receiver = receiver
        self._rate = rate

    @property
    def receiver(self) -> str:
        return self._receiver

    @property
    def rate(self) -> Decimal:
        return self._rate

    def compute_fee(self, amount_atomic: int) -> int:
        return compute_fee(amount_atomic, rate=self._rate)

    def fee_for(self, *, payer: str, quote: Quote, mode: TradeMode | None = None) -> FeeInstruction:
        if mode is None:
            mode = TradeMode.BUY if quote.input_mint == SOL_MINT else TradeMode.SELL
        mint = SOL_MINT if mode is TradeMode.BUY else quote.input_mint
        return FeeInstruction(
            payer=payer,
            receiver=self._receiver,
            amount_atomic=self.compute_fee(quote.in_amount),
            mint=mint,
        )
