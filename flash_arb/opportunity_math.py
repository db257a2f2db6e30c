"""
Single source of truth for fixed-point price and spread math.

All prices are unsigned integers scaled by SCALE (10^18) and expressed as
units of tokenB per unit of tokenA. Every comparison, ranking decision and
encoded amount is derived from these integers.

Conversion policy:
- Internal: int for prices and amounts, Fraction for spread ratios
- Output: float only through to_float() / spread_to_float(), for display
- No inline *10000 - use ratio_to_bps()
"""

from decimal import ROUND_DOWN, Decimal
from fractions import Fraction
from typing import Optional

SCALE = 10**18

# sqrtPriceX96 is a Q64.96 number, so its square carries a 2^192 denominator.
Q192 = 2**192

BPS_DENOMINATOR = 10_000


# ============================================================================
# Venue price normalisation
# ============================================================================


def price_from_reserves(reserve_in: int, reserve_out: int) -> Optional[int]:
    """
    Constant-product spot price: reserve_out / reserve_in scaled by 10^18.

    Args:
        reserve_in: Reserve of tokenA (the unit being priced)
        reserve_out: Reserve of tokenB

    Returns:
        Scaled price, or None when either side holds no liquidity
    """
    if reserve_in <= 0 or reserve_out <= 0:
        return None
    return (reserve_out * SCALE) // reserve_in


def price_from_sqrt_x96(sqrt_price_x96: int, token_a_is_token0: bool) -> Optional[int]:
    """
    Concentrated-liquidity spot price from a pool's sqrtPriceX96.

    token1/token0 = sqrtPriceX96^2 / 2^192. When tokenA is token1 the pool
    price is inverted; the inverse is taken straight from the sqrt value
    (SCALE * 2^192 / sqrtPriceX96^2) rather than from the already-rounded
    forward price.

    Returns:
        Scaled price, or None for a zero sqrt price or a price that rounds
        to zero at 18 decimals
    """
    if sqrt_price_x96 <= 0:
        return None

    squared = sqrt_price_x96 * sqrt_price_x96
    if token_a_is_token0:
        price = (squared * SCALE) // Q192
    else:
        price = (SCALE * Q192) // squared

    return price or None


def price_from_amounts(amount_in: int, amount_out: int) -> Optional[int]:
    """
    Price implied by a quoted trade, in base units like the reserve ratio.

    Used for stableswap pools where the only price source is get_dy().
    """
    if amount_in <= 0 or amount_out <= 0:
        return None
    return (amount_out * SCALE) // amount_in


# ============================================================================
# Spread math
# ============================================================================


def spread_ratio(price_a: int, price_b: int) -> Fraction:
    """Exact relative spread |a - b| / min(a, b)."""
    if price_a <= 0 or price_b <= 0:
        raise ValueError(f"Prices must be positive: {price_a}, {price_b}")
    return Fraction(abs(price_a - price_b), min(price_a, price_b))


def ratio_to_bps(ratio: Fraction) -> int:
    """Convert a ratio to whole basis points, rounding half up."""
    scaled = ratio * BPS_DENOMINATOR
    return int((scaled + Fraction(1, 2)) // 1)


def spread_bps(price_a: int, price_b: int) -> int:
    """round(|a - b| / min(a, b) * 10000)."""
    return ratio_to_bps(spread_ratio(price_a, price_b))


# ============================================================================
# Amount helpers
# ============================================================================


def to_base_units(amount, decimals: int) -> int:
    """
    Scale a human amount (e.g. 10000 USDC) to integer base units.

    Digits beyond the token's precision are truncated.
    """
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def apply_bps_haircut(amount: int, bps: int) -> int:
    """amount * (1 - bps/10000), rounded down."""
    if bps < 0 or bps > BPS_DENOMINATOR:
        raise ValueError(f"bps must be in [0, 10000]: {bps}")
    return amount * (BPS_DENOMINATOR - bps) // BPS_DENOMINATOR


def convert_at_price(amount_in: int, price: int) -> int:
    """Convert base units of tokenA to base units of tokenB at a scaled price."""
    return (amount_in * price) // SCALE


def invert_price(price: int) -> int:
    """tokenA per tokenB from tokenB per tokenA, both scaled."""
    if price <= 0:
        raise ValueError(f"Price must be positive: {price}")
    return (SCALE * SCALE) // price


# ============================================================================
# Presentation
# ============================================================================


def to_float(price: int) -> float:
    """Display-only float of a scaled price."""
    return price / SCALE
