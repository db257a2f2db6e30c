"""
Venue adapter modules for different AMM types.
"""

from .v2 import fetch_pool, quote_from_reserves, quote_pair, swap_out
from .v3 import DEFAULT_FEE_TIERS, quote_from_slot0, quote_pool

__all__ = [
    "DEFAULT_FEE_TIERS",
    "fetch_pool",
    "quote_from_reserves",
    "quote_from_slot0",
    "quote_pair",
    "quote_pool",
    "swap_out",
]
