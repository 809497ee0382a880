from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any

import aiohttp

from swap_engine.common import log_event

from .errors import InvalidAmount, InvalidInput, NoRouteFound, UpstreamError
from .jupiter import JupiterApiError, JupiterClient
from .types import MAX_SLIPPAGE_BPS, SOL_MINT, Quote, TradeMode, to_decimal, to_int

NO_ROUTE_ERROR_CODES = frozenset(
    {
        "COULD_NOT_FIND_ANY_ROUTE",
        "NO_ROUTES_FOUND",
        "ROUTE_NOT_FOUND",
        "TOKEN_NOT_TRADABLE",
        "CIRCULAR_ARBITRAGE_IS_DISABLED",
    }
)
AMOUNT_ERROR_CODES = frozenset({"INVALID_AMOUNT", "AMOUNT_TOO_SMALL", "CANNOT_COMPUTE_OTHER_AMOUNT_THRESHOLD"})


def _route_labels(route_plan: list[Any]) -> tuple[str, ...]:
    labels: list[str] = []
    for step in route_plan:
        swap_info = step.get("swapInfo") if isinstance(step, dict) else None
        label = str(swap_info.get("label") or "").strip() if isinstance(swap_info, dict) else ""
        if label and label not in labels:
            labels.append(label)
    return tuple(labels)


class QuoteProvider:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        jupiter: JupiterClient,
        quote_max_age_seconds: float = 30.0,
    ) -> None:
        self._logger = logger
        self._jupiter = jupiter
        self._quote_max_age_seconds = quote_max_age_seconds

    @staticmethod
    def mints_for_mode(mode: TradeMode | str, token_mint: str) -> tuple[str, str]:
        if TradeMode.parse(mode) is TradeMode.BUY:
            return SOL_MINT, token_mint
        return token_mint, SOL_MINT

    async def get_quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount_atomic: int,
        slippage_bps: int,
    ) -> Quote:
        if amount_atomic <= 0:
            raise InvalidAmount(f"amount must be greater than zero, got {amount_atomic}")
        if not 0 <= slippage_bps <= MAX_SLIPPAGE_BPS:
            raise InvalidInput(f"slippage_bps must be within [0, {MAX_SLIPPAGE_BPS}], got {slippage_bps}")
        if input_mint == output_mint:
            raise InvalidInput("input and output mints must differ")

        try:
            payload = await self._jupiter.quote(
                input_mint=input_mint,
                output_mint=output_mint,
                amount=amount_atomic,
                slippage_bps=slippage_bps,
            )
        except JupiterApiError as error:
            if error.error_code in NO_ROUTE_ERROR_CODES:
                raise NoRouteFound(str(error), details={"error_code": error.error_code}) from error
            if error.error_code in AMOUNT_ERROR_CODES:
                raise InvalidAmount(str(error), details={"error_code": error.error_code}) from error
            raise UpstreamError(
                str(error),
                transient=error.transient,
                status=error.status,
                details={"error_code": error.error_code},
            ) from error
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise UpstreamError(f"quote request failed: {error}", transient=True) from error

        quote = self._parse_quote(payload, input_mint=input_mint, output_mint=output_mint, slippage_bps=slippage_bps)
        log_event(
            self._logger,
            level="info",
            event="quote_received",
            message="Swap quote received",
            **quote.summary(),
        )
        return quote

    def _parse_quote(
        self,
        payload: dict[str, Any],
        *,
        input_mint: str,
        output_mint: str,
        slippage_bps: int,
    ) -> Quote:
        route_plan = payload.get("routePlan")
        if not isinstance(route_plan, list):
            raise UpstreamError(f"quote response has no routePlan: {sorted(payload)}")
        if not route_plan:
            raise NoRouteFound("aggregator returned an empty route plan")

        in_amount = to_int(payload.get("inAmount"), -1)
        out_amount = to_int(payload.get("outAmount"), -1)
        if in_amount <= 0 or out_amount < 0:
            raise UpstreamError(
                f"quote response has invalid amounts: inAmount={payload.get('inAmount')!r} "
                f"outAmount={payload.get('outAmount')!r}"
            )
        if out_amount == 0:
            raise NoRouteFound("aggregator route yields no output")

        quoted_input = str(payload.get("inputMint") or input_mint)
        quoted_output = str(payload.get("outputMint") or output_mint)
        if quoted_input != input_mint or quoted_output != output_mint:
            raise UpstreamError(
                f"quote mints do not match the request: {quoted_input}->{quoted_output}",
                details={"requested": f"{input_mint}->{output_mint}"},
            )

        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=in_amount,
            out_amount=out_amount,
            price_impact_pct=to_decimal(payload.get("priceImpactPct"), Decimal(0)),
            slippage_bps=to_int(payload.get("slippageBps"), slippage_bps),
            route_meta={
                "hops": len(route_plan),
                "labels": _route_labels(route_plan),
                "context_slot": payload.get("contextSlot"),
                "min_out_amount": to_int(payload.get("otherAmountThreshold"), 0),
            },
            raw=payload,
            max_age_seconds=self._quote_max_age_seconds,
        )
