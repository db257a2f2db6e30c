"""
Uniswap V3 style adapter for concentrated-liquidity pools.

Each fee tier is its own pool, so a pair yields up to one quote per tier.
Prices come from slot0's sqrtPriceX96 and are converted with integer math
only.
"""

import asyncio
from typing import List, Optional, Sequence

from web3 import Web3

from ..abi import UNISWAP_V3_FACTORY_ABI, UNISWAP_V3_POOL_ABI
from ..exceptions import VenueQueryError
from ..opportunity_math import price_from_sqrt_x96
from ..types import VenueKind, VenueQuote
from ..utils import get_logger, is_zero_address, same_address
from .rpc import call_with_backoff

logger = get_logger(__name__)

# Hundredths of a basis point: 0.05%, 0.30%, 1.00%
DEFAULT_FEE_TIERS = (500, 3000, 10000)


def get_pool_address(
    web3: Web3,
    factory_addr: str,
    token_a: str,
    token_b: str,
    fee: int,
    venue: Optional[str] = None,
) -> Optional[str]:
    """Resolve the pool for one fee tier, None if it was never created."""
    factory = web3.eth.contract(
        address=Web3.to_checksum_address(factory_addr), abi=UNISWAP_V3_FACTORY_ABI
    )
    pool_addr = call_with_backoff(
        factory.functions.getPool(
            Web3.to_checksum_address(token_a), Web3.to_checksum_address(token_b), fee
        ).call,
        what=f"getPool({fee}) on {factory_addr}",
        venue=venue,
    )
    if is_zero_address(pool_addr):
        return None
    return Web3.to_checksum_address(pool_addr)


def quote_from_slot0(
    venue_id: str,
    pool_addr: str,
    token0: str,
    sqrt_price_x96: int,
    liquidity: int,
    fee: int,
    token_a: str,
) -> Optional[VenueQuote]:
    """
    Build a VenueQuote from raw pool state.

    Returns None for pools with no active liquidity or a degenerate price.
    """
    if liquidity <= 0:
        return None

    price = price_from_sqrt_x96(sqrt_price_x96, same_address(token0, token_a))
    if price is None:
        return None

    return VenueQuote(
        venue_id=venue_id,
        kind=VenueKind.CONCENTRATED,
        pool_address=pool_addr,
        price=price,
        liquidity=liquidity,
        fee_tier=fee,
    )


def quote_pool(
    web3: Web3,
    venue_id: str,
    factory_addr: str,
    token_a: str,
    token_b: str,
    fee: int,
) -> Optional[VenueQuote]:
    """
    Quote tokenB per tokenA on one fee tier.

    Raises:
        VenueQueryError: If any read fails
    """
    pool_addr = get_pool_address(web3, factory_addr, token_a, token_b, fee, venue=venue_id)
    if pool_addr is None:
        logger.debug(f"{venue_id}: no {fee} pool for {token_a}/{token_b}")
        return None

    pool = web3.eth.contract(address=pool_addr, abi=UNISWAP_V3_POOL_ABI)

    def read():
        slot0 = pool.functions.slot0().call()
        liquidity = pool.functions.liquidity().call()
        token0 = pool.functions.token0().call()
        return int(slot0[0]), int(liquidity), token0

    sqrt_price_x96, liquidity, token0 = call_with_backoff(
        read, what=pool_addr, venue=venue_id
    )

    quote = quote_from_slot0(
        venue_id, pool_addr, token0, sqrt_price_x96, liquidity, fee, token_a
    )
    if quote is None:
        logger.debug(f"{venue_id}: pool {pool_addr} has no active liquidity")
    return quote


async def quote_fee_tiers_async(
    web3: Web3,
    venue_id: str,
    factory_addr: str,
    token_a: str,
    token_b: str,
    fee_tiers: Sequence[int] = DEFAULT_FEE_TIERS,
) -> List[VenueQuote]:
    """
    Quote every fee tier concurrently.

    A tier that fails or has no pool is dropped; the others still count.
    """
    loop = asyncio.get_event_loop()

    async def one(fee: int) -> Optional[VenueQuote]:
        try:
            return await loop.run_in_executor(
                None, quote_pool, web3, venue_id, factory_addr, token_a, token_b, fee
            )
        except VenueQueryError as e:
            logger.debug(f"{venue_id}: fee tier {fee} skipped: {e}")
            return None

    results = await asyncio.gather(*[one(fee) for fee in fee_tiers])
    return [quote for quote in results if quote is not None]
