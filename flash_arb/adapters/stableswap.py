"""
Curve-style stableswap adapter.

Stableswap pools expose no spot price, so the price is taken from get_dy()
for one whole unit of tokenA.
"""

import asyncio
from typing import Optional, Sequence

from web3 import Web3

from ..abi import STABLESWAP_POOL_ABI
from ..opportunity_math import price_from_amounts
from ..types import StableswapCoords, VenueKind, VenueQuote
from ..utils import get_logger, same_address
from .rpc import call_with_backoff

logger = get_logger(__name__)


def coin_indexes(
    coins: Sequence[str], token_a: str, token_b: str
) -> Optional[tuple]:
    """Return (i, j) for tokenA/tokenB in the pool's coin list, or None."""
    i = next((n for n, c in enumerate(coins) if same_address(c, token_a)), None)
    j = next((n for n, c in enumerate(coins) if same_address(c, token_b)), None)
    if i is None or j is None or i == j:
        return None
    return i, j


def quote_pool(
    web3: Web3,
    venue_id: str,
    pool_addr: str,
    coins: Sequence[str],
    token_a: str,
    token_b: str,
    decimals_a: int,
) -> Optional[VenueQuote]:
    """
    Quote tokenB per tokenA from a stableswap pool.

    Args:
        coins: The pool's coin addresses in index order (from config)
        decimals_a: Precision of tokenA, to size the one-unit probe

    Returns:
        VenueQuote, or None when the pool does not hold both tokens or
        quotes zero output

    Raises:
        VenueQueryError: If the read fails
    """
    indexes = coin_indexes(coins, token_a, token_b)
    if indexes is None:
        return None
    i, j = indexes

    pool_addr = Web3.to_checksum_address(pool_addr)
    pool = web3.eth.contract(address=pool_addr, abi=STABLESWAP_POOL_ABI)
    dx = 10**decimals_a
    dy = call_with_backoff(
        pool.functions.get_dy(i, j, dx).call, what=pool_addr, venue=venue_id
    )

    price = price_from_amounts(dx, int(dy))
    if price is None:
        logger.debug(f"{venue_id}: pool {pool_addr} quoted zero output")
        return None

    return VenueQuote(
        venue_id=venue_id,
        kind=VenueKind.STABLESWAP,
        pool_address=pool_addr,
        price=price,
        liquidity=int(dy),
        stableswap=StableswapCoords(pool=pool_addr, i=i, j=j),
    )


async def quote_pool_async(
    web3: Web3,
    venue_id: str,
    pool_addr: str,
    coins: Sequence[str],
    token_a: str,
    token_b: str,
    decimals_a: int,
) -> Optional[VenueQuote]:
    """Async version of quote_pool (runs in the default thread pool)."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(
        None, quote_pool, web3, venue_id, pool_addr, coins, token_a, token_b, decimals_a
    )
