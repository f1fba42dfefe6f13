"""
Uniswap V2 Math Implementation.

Implements the exact constant product formula (x * y = k) used by Uniswap V2
and its forks (SushiSwap, PancakeSwap, etc.) in integer arithmetic, with the
same truncation the pair contracts apply on-chain.
"""
import logging
from math import isqrt
from typing import Tuple

logger = logging.getLogger(__name__)

# Uniswap V2 charges 0.3%: amountIn * 997 / 1000
DEFAULT_FEE_NUMERATOR = 997
DEFAULT_FEE_DENOMINATOR = 1000


def get_amount_out(amount_in: int,
                   reserve_in: int,
                   reserve_out: int,
                   fee_numerator: int = DEFAULT_FEE_NUMERATOR,
                   fee_denominator: int = DEFAULT_FEE_DENOMINATOR) -> int:
    """
    Output amount for an exact input, as UniswapV2Library.getAmountOut.

    Formula: amountOut = (amountIn * 997 * reserveOut) / (reserveIn * 1000 + amountIn * 997)

    Returns 0 for a zero input or an empty pool instead of reverting.
    """
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0

    amount_in_with_fee = amount_in * fee_numerator
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * fee_denominator + amount_in_with_fee
    return numerator // denominator


def get_amount_in(amount_out: int,
                  reserve_in: int,
                  reserve_out: int,
                  fee_numerator: int = DEFAULT_FEE_NUMERATOR,
                  fee_denominator: int = DEFAULT_FEE_DENOMINATOR) -> int:
    """
    Input required for an exact output, as UniswapV2Library.getAmountIn.

    Formula: amountIn = (reserveIn * amountOut * 1000) / ((reserveOut - amountOut) * 997) + 1

    Raises:
        ValueError: If the output cannot be produced by the pool.
    """
    if amount_out <= 0:
        return 0
    if reserve_in <= 0 or reserve_out <= 0 or amount_out >= reserve_out:
        raise ValueError(f"Insufficient liquidity for output {amount_out}")

    numerator = reserve_in * amount_out * fee_denominator
    denominator = (reserve_out - amount_out) * fee_numerator
    return numerator // denominator + 1


class UniswapV2Math:
    """
    Exact implementation of Uniswap V2 constant product AMM math.

    Holds the fee ratio of one venue so callers do not have to thread it
    through every call.
    """

    def __init__(self,
                 fee_numerator: int = DEFAULT_FEE_NUMERATOR,
                 fee_denominator: int = DEFAULT_FEE_DENOMINATOR):
        """
        Initialize Uniswap V2 math.

        Args:
            fee_numerator: Fraction of the input kept after fees (997 for 0.3%)
            fee_denominator: Fee precision (1000 for Uniswap V2)
        """
        if not 0 < fee_numerator <= fee_denominator:
            raise ValueError("Fee numerator must be in (0, fee_denominator]")
        self.fee_numerator = fee_numerator
        self.fee_denominator = fee_denominator

    def calculate_amount_out(self, amount_in: int, reserve_in: int, reserve_out: int) -> int:
        """Calculate output amount for a given input."""
        return get_amount_out(amount_in, reserve_in, reserve_out,
                              self.fee_numerator, self.fee_denominator)

    def calculate_amount_in(self, amount_out: int, reserve_in: int, reserve_out: int) -> int:
        """Calculate required input amount for a desired output."""
        return get_amount_in(amount_out, reserve_in, reserve_out,
                             self.fee_numerator, self.fee_denominator)

    def swap(self, amount_in: int, reserve_in: int, reserve_out: int) -> Tuple[int, int, int]:
        """
        Execute a swap against virtual reserves.

        Returns:
            Tuple of (amount_out, new_reserve_in, new_reserve_out)
        """
        amount_out = self.calculate_amount_out(amount_in, reserve_in, reserve_out)
        return amount_out, reserve_in + amount_in, reserve_out - amount_out

    def calculate_price_impact_bps(self, amount_in: int, reserve_in: int, reserve_out: int) -> int:
        """
        Price impact of a trade in basis points.

        Price impact = 1 - (post_trade_price / pre_trade_price)
        """
        if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
            return 0

        amount_out, new_reserve_in, new_reserve_out = self.swap(amount_in, reserve_in, reserve_out)
        if amount_out <= 0:
            return 10_000

        # post/pre = (new_out / new_in) / (out / in)
        ratio_numerator = new_reserve_out * reserve_in * 10_000
        ratio_denominator = new_reserve_in * reserve_out
        return 10_000 - ratio_numerator // ratio_denominator

    def closed_form_sandwich_seed(self, reserve_in: int, reserve_out: int, victim_amount: int) -> int:
        """
        Unconstrained fee-free optimum used to seed the integer search.

        X0 = sqrt(reserveIn * reserveOut * V) - reserveIn, floored at zero.
        """
        if reserve_in <= 0 or reserve_out <= 0 or victim_amount <= 0:
            return 0
        return max(0, isqrt(reserve_in * reserve_out * victim_amount) - reserve_in)
