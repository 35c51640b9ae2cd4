"""
Trade validation: slippage, fees, and parameter ranges.

Pure functions. Everything here runs before the engine mutates anything.
"""

from amm.errors import (
    InvalidFeeRate, InvalidInput, LiquidityTooHigh, LiquidityTooLow,
    SlippageExceeded,
)
from amm.models import BPS_DENOMINATOR, checked_mul, checked_sub


MAX_FEE_RATE_BPS = 1000      # 10%


def validate_slippage(expected: int, actual: int, tolerance_bps: int) -> None:
    """
    Fail if actual deviates from expected by more than tolerance_bps.

    The allowed deviation is floor(expected * tolerance_bps / 10000), in
    either direction.
    """
    if expected == 0:
        raise InvalidInput("expected amount must be positive")
    difference = abs(actual - expected)
    allowed = checked_mul(expected, tolerance_bps) // BPS_DENOMINATOR
    if difference > allowed:
        raise SlippageExceeded(
            f"expected {expected}, got {actual} "
            f"(tolerance {tolerance_bps} bps)",
            expected=expected, actual=actual, tolerance_bps=tolerance_bps)


def calculate_fee(amount: int, fee_rate_bps: int) -> int:
    """floor(amount * fee_rate_bps / 10000)."""
    if not 0 <= fee_rate_bps <= BPS_DENOMINATOR:
        raise InvalidInput(f"fee rate {fee_rate_bps} bps out of range")
    return checked_mul(amount, fee_rate_bps) // BPS_DENOMINATOR


def amount_after_fee(amount: int, fee_rate_bps: int) -> int:
    return checked_sub(amount, calculate_fee(amount, fee_rate_bps))


def validate_fee_rate(fee_rate_bps: int) -> None:
    if not 0 <= fee_rate_bps <= MAX_FEE_RATE_BPS:
        raise InvalidFeeRate(
            f"fee rate must be 0-{MAX_FEE_RATE_BPS} bps, got {fee_rate_bps}")


def validate_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise InvalidInput(f"{name} {value} outside [{low}, {high}]")


def validate_liquidity(liquidity: int, min_liquidity: int,
                       max_liquidity: int) -> None:
    if liquidity < min_liquidity:
        raise LiquidityTooLow(
            f"liquidity {liquidity} below minimum {min_liquidity}")
    if liquidity > max_liquidity:
        raise LiquidityTooHigh(
            f"liquidity {liquidity} above maximum {max_liquidity}")
