"""Fixed-point price math for concentrated-liquidity pools.

A pool publishes its price as ``sqrtPriceX96 = sqrt(token1 / token0) * 2**96``
in raw (undecimalized) units. Squaring that value overflows 64-bit floats'
precision long before it overflows Python ints, so every step up to the final
narrowing stays in integer arithmetic:

    raw_ratio = sqrtPriceX96**2 / 2**192            (token1 per token0, raw)
    ratio     = raw_ratio * 10**(decimals0 - decimals1)

The division is carried out against a 10**36 fixed-point denominator, which
keeps quotes many orders of magnitude below 1 (fresh memecoins) exact to ~36
significant digits before conversion to float.
"""

from __future__ import annotations

import math

Q96 = 2**96
Q192 = Q96 * Q96

DEFAULT_PRECISION_EXPONENT = 36
DEFAULT_MAX_PRICE_USD = 1_000_000.0


def pool_ratio(
    sqrt_price_x96: int,
    decimals0: int,
    decimals1: int,
    invert: bool = False,
    precision_exponent: int = DEFAULT_PRECISION_EXPONENT,
) -> float:
    """Convert a pool's sqrtPriceX96 into a decimal-adjusted price ratio.

    Args:
        sqrt_price_x96: Pool square-root price scaled by 2**96.
        decimals0: Decimal places of token0.
        decimals1: Decimal places of token1.
        invert: If False, returns the price of token0 in units of token1.
            If True, returns the price of token1 in units of token0.
        precision_exponent: Fixed-point denominator exponent (10**n).

    Returns:
        The ratio as a float. 0.0 if the input is non-positive or the ratio
        underflows the fixed-point precision.

    Raises:
        OverflowError: If the ratio is too large to narrow to a float.
    """
    if sqrt_price_x96 <= 0:
        return 0.0

    numerator = sqrt_price_x96 * sqrt_price_x96
    denominator = Q192

    shift = decimals0 - decimals1
    if shift >= 0:
        numerator *= 10**shift
    else:
        denominator *= 10**-shift

    if invert:
        numerator, denominator = denominator, numerator

    scale = 10**precision_exponent
    fixed = (numerator * scale) // denominator
    return fixed / scale


def validate_quote(value: float, max_price: float = DEFAULT_MAX_PRICE_USD) -> float | None:
    """Return ``value`` if it is a usable quote, else None.

    A usable quote is finite, strictly positive and not above ``max_price``.
    """
    if not math.isfinite(value) or value <= 0 or value > max_price:
        return None
    return value


def compute_usd_quote(
    sqrt_price_x96: int,
    decimals0: int,
    decimals1: int,
    reference_is_token0: bool,
    anchor_usd: float,
    max_price: float = DEFAULT_MAX_PRICE_USD,
    precision_exponent: int = DEFAULT_PRECISION_EXPONENT,
) -> float | None:
    """Price the non-reference side of a pool in USD.

    Args:
        sqrt_price_x96: Pool square-root price scaled by 2**96.
        decimals0: Decimal places of token0.
        decimals1: Decimal places of token1.
        reference_is_token0: True if token0 is the reference asset, in which
            case the ratio is inverted to price token1.
        anchor_usd: Current USD price of one unit of the reference asset.
        max_price: Sanity ceiling; quotes above it are rejected.
        precision_exponent: Fixed-point denominator exponent.

    Returns:
        USD price per unit, or None when the computation is invalid
        (non-finite, non-positive, above the ceiling).
    """
    try:
        ratio = pool_ratio(
            sqrt_price_x96,
            decimals0,
            decimals1,
            invert=reference_is_token0,
            precision_exponent=precision_exponent,
        )
    except OverflowError:
        return None

    return validate_quote(ratio * anchor_usd, max_price)
