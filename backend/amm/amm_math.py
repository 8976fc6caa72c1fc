#!/usr/bin/env python3
"""
Constant-product swap math for the exchange program.

All arithmetic runs on raw integer units (lamports / token atoms) so the
client floors exactly where the on-chain program floors. Human-readable
Decimal values only appear at the edges (to_raw / from_raw and the ui_*
properties of SwapQuote).

    amount_after_fee = amount_in * (10000 - fee_bps) // 10000
    amount_out       = reserve_out * amount_after_fee // (reserve_in + amount_after_fee)
    minimum_out      = amount_out * (1 - slippage%) * safety_margin
"""

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, InvalidOperation
from enum import Enum
from typing import Tuple, Union

from amm.errors import AmmError, ErrorCategory
from config import (
    BPS_DENOMINATOR,
    DEFAULT_TOKEN_DECIMALS,
    HIGH_PRICE_IMPACT_PERCENT,
    MAX_FEE_RATE_BPS,
    PRICE_IMPACT_DISPLAY_CAP,
    SAFETY_MARGIN_BPS,
    SOL_DECIMALS,
)

Number = Union[int, float, str, Decimal]

# Slippage is carried in millionths so fractional percents (0.5%) stay exact
_SLIPPAGE_SCALE = 1_000_000


class SwapDirection(Enum):
    SOL_TO_TOKEN = "sol_to_token"
    TOKEN_TO_SOL = "token_to_sol"


def _as_decimal(value: Number, name: str) -> Decimal:
    try:
        # str() first so floats like 0.1 don't drag binary noise along
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"{name} is not a number: {value!r}") from e


def to_raw(amount: Number, decimals: int) -> int:
    """Convert a human amount to raw units, truncating extra precision."""
    value = _as_decimal(amount, "amount")
    if value < 0:
        raise ValueError(f"amount must be non-negative, got {value}")
    return int(value.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def from_raw(raw: int, decimals: int) -> Decimal:
    return Decimal(int(raw)).scaleb(-decimals)


def validate_fee_rate(fee_rate_bps: int):
    if fee_rate_bps < 0 or fee_rate_bps > MAX_FEE_RATE_BPS:
        raise AmmError(
            ErrorCategory.INVALID_POOL_CONFIGURATION,
            f"Pool fee rate {fee_rate_bps} bps is outside 0..{MAX_FEE_RATE_BPS}",
            {"fee_rate_bps": fee_rate_bps},
        )


def amount_after_fee(amount_in: int, fee_rate_bps: int) -> int:
    return amount_in * (BPS_DENOMINATOR - fee_rate_bps) // BPS_DENOMINATOR


def compute_amount_out(amount_in_after_fee: int, reserve_in: int, reserve_out: int) -> int:
    """Constant product: out = reserve_out * in / (reserve_in + in)."""
    if reserve_in <= 0 or reserve_out <= 0:
        raise AmmError(
            ErrorCategory.INSUFFICIENT_LIQUIDITY,
            "No liquidity in this pool",
            {"reason": "no_liquidity", "reserve_in": reserve_in, "reserve_out": reserve_out},
        )
    return (reserve_out * amount_in_after_fee) // (reserve_in + amount_in_after_fee)


def slippage_keep_fraction(slippage_percent: Number) -> int:
    """Return (1 - slippage%) scaled by _SLIPPAGE_SCALE."""
    slippage = _as_decimal(slippage_percent, "slippage_percent")
    if slippage < 0 or slippage > 100:
        raise ValueError(f"slippage_percent must be within 0..100, got {slippage}")
    slip_scaled = int((slippage * _SLIPPAGE_SCALE / 100).to_integral_value(rounding=ROUND_DOWN))
    return _SLIPPAGE_SCALE - slip_scaled


def apply_slippage(amount: int, slippage_percent: Number, safety_margin_bps: int = SAFETY_MARGIN_BPS) -> int:
    """Minimum acceptable amount after slippage tolerance and the fixed safety margin."""
    keep = slippage_keep_fraction(slippage_percent)
    return amount * keep * safety_margin_bps // (_SLIPPAGE_SCALE * BPS_DENOMINATOR)


def price_impact_percent(amount_in: int, reserve_in: int) -> Decimal:
    """input / liquidity * 100, uncapped."""
    if reserve_in <= 0:
        return Decimal(0)
    return Decimal(amount_in) * 100 / Decimal(reserve_in)


@dataclass(frozen=True)
class SwapQuote:
    """Derived, never cached across reserve changes. Amounts are raw units."""
    direction: SwapDirection
    input_amount: int
    amount_after_fee: int
    expected_output: int
    minimum_output: int
    price_impact_percent: Decimal       # capped, display only
    raw_price_impact_percent: Decimal
    fee_rate_bps: int
    slippage_percent: Decimal
    input_decimals: int
    output_decimals: int
    reduced_confidence: bool = False    # token decimals were assumed

    @property
    def fee_amount(self) -> int:
        return self.input_amount - self.amount_after_fee

    @property
    def ui_input_amount(self) -> Decimal:
        return from_raw(self.input_amount, self.input_decimals)

    @property
    def ui_expected_output(self) -> Decimal:
        return from_raw(self.expected_output, self.output_decimals)

    @property
    def ui_minimum_output(self) -> Decimal:
        return from_raw(self.minimum_output, self.output_decimals)

    @property
    def is_high_impact(self) -> bool:
        return self.raw_price_impact_percent > HIGH_PRICE_IMPACT_PERCENT

    def to_dict(self) -> dict:
        return {
            "direction": self.direction.value,
            "input_amount": str(self.ui_input_amount),
            "expected_output": str(self.ui_expected_output),
            "minimum_output": str(self.ui_minimum_output),
            "price_impact_percent": float(self.price_impact_percent),
            "fee_rate_bps": self.fee_rate_bps,
            "reduced_confidence": self.reduced_confidence,
        }


def compute_quote(
    token_reserve: int,
    sol_reserve: int,
    fee_rate_bps: int,
    input_amount: Number,
    direction: SwapDirection,
    slippage_percent: Number,
    token_decimals: int = DEFAULT_TOKEN_DECIMALS,
    reduced_confidence: bool = False,
) -> SwapQuote:
    """
    Quote a swap against one reserve snapshot.

    Args:
        token_reserve: Raw token reserve
        sol_reserve: Raw lamport reserve (same fetch as token_reserve)
        fee_rate_bps: Pool fee in basis points
        input_amount: Human-readable input (SOL or tokens depending on direction)
        direction: SwapDirection
        slippage_percent: User tolerance, e.g. 1 for 1%
        token_decimals: Mint decimals
        reduced_confidence: Carried through when decimals were defaulted

    Raises:
        AmmError: INVALID_POOL_CONFIGURATION for a bad fee rate,
                  INSUFFICIENT_LIQUIDITY when either reserve is zero
        ValueError: On negative amounts or slippage outside 0..100
    """
    validate_fee_rate(fee_rate_bps)

    if direction == SwapDirection.SOL_TO_TOKEN:
        input_decimals, output_decimals = SOL_DECIMALS, token_decimals
        reserve_in, reserve_out = sol_reserve, token_reserve
    else:
        input_decimals, output_decimals = token_decimals, SOL_DECIMALS
        reserve_in, reserve_out = token_reserve, sol_reserve

    raw_in = to_raw(input_amount, input_decimals)
    after_fee = amount_after_fee(raw_in, fee_rate_bps)
    amount_out = compute_amount_out(after_fee, reserve_in, reserve_out)
    minimum_out = apply_slippage(amount_out, slippage_percent)

    impact = price_impact_percent(raw_in, reserve_in)

    return SwapQuote(
        direction=direction,
        input_amount=raw_in,
        amount_after_fee=after_fee,
        expected_output=amount_out,
        minimum_output=minimum_out,
        price_impact_percent=min(impact, Decimal(PRICE_IMPACT_DISPLAY_CAP)),
        raw_price_impact_percent=impact,
        fee_rate_bps=fee_rate_bps,
        slippage_percent=_as_decimal(slippage_percent, "slippage_percent"),
        input_decimals=input_decimals,
        output_decimals=output_decimals,
        reduced_confidence=reduced_confidence,
    )


# ── Liquidity Math ──────────────────────────────────────────────────

def compute_lp_tokens(token_amount: int, sol_amount: int, token_reserve: int,
                      sol_reserve: int, lp_supply: int) -> int:
    """LP tokens minted for a deposit (raw units)."""
    if lp_supply == 0:
        # First deposit: geometric mean of the two sides
        return math.isqrt(token_amount * sol_amount)
    if token_reserve <= 0 or sol_reserve <= 0:
        raise AmmError(ErrorCategory.INSUFFICIENT_LIQUIDITY, "No liquidity in this pool",
                       {"reason": "no_liquidity"})
    return min(token_amount * lp_supply // token_reserve, sol_amount * lp_supply // sol_reserve)


def compute_withdrawal(lp_amount: int, token_reserve: int, sol_reserve: int,
                       lp_supply: int) -> Tuple[int, int]:
    """Pro-rata (token_out, sol_out) for burning lp_amount."""
    if lp_supply <= 0 or lp_amount > lp_supply:
        raise AmmError(
            ErrorCategory.INSUFFICIENT_LIQUIDITY,
            "Withdrawal exceeds pool LP supply",
            {"lp_amount": lp_amount, "lp_supply": lp_supply},
        )
    return lp_amount * token_reserve // lp_supply, lp_amount * sol_reserve // lp_supply
