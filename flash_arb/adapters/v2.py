"""
Uniswap V2 style adapter for constant-product AMM pools.

Resolves a pair through its factory, reads reserves and normalises them to
a tokenB-per-tokenA price. Also carries the integer x*y=k swap math used by
the settlement simulator.
"""

import asyncio
from typing import Optional, Tuple

from web3 import Web3

from ..abi import UNISWAP_V2_FACTORY_ABI, UNISWAP_V2_PAIR_ABI
from ..opportunity_math import BPS_DENOMINATOR, price_from_reserves
from ..types import VenueKind, VenueQuote
from ..utils import get_logger, is_zero_address, same_address
from .rpc import call_with_backoff

logger = get_logger(__name__)


def get_pair_address(
    web3: Web3, factory_addr: str, token_a: str, token_b: str, venue: Optional[str] = None
) -> Optional[str]:
    """
    Look up the pair for (token_a, token_b) on a V2 factory.

    Returns:
        Checksummed pair address, or None if the factory has no such pair
    """
    factory = web3.eth.contract(
        address=Web3.to_checksum_address(factory_addr), abi=UNISWAP_V2_FACTORY_ABI
    )
    pair_addr = call_with_backoff(
        factory.functions.getPair(
            Web3.to_checksum_address(token_a), Web3.to_checksum_address(token_b)
        ).call,
        what=f"getPair on {factory_addr}",
        venue=venue,
    )
    if is_zero_address(pair_addr):
        return None
    return Web3.to_checksum_address(pair_addr)


def fetch_pool(
    web3: Web3, pair_addr: str, max_retries: int = 3
) -> Tuple[str, str, int, int]:
    """
    Fetch token addresses and reserves from a Uniswap V2 style pair.

    Args:
        web3: Web3 instance connected to the chain
        pair_addr: Checksummed address of the pair contract
        max_retries: Maximum number of retry attempts on rate limits

    Returns:
        Tuple of (token0_addr, token1_addr, reserve0, reserve1)

    Raises:
        VenueQueryError: If RPC calls fail after all retries
        ValueError: If pair address is invalid
    """
    if not Web3.is_checksum_address(pair_addr):
        raise ValueError(f"Invalid pair address: {pair_addr}")

    pair = web3.eth.contract(address=pair_addr, abi=UNISWAP_V2_PAIR_ABI)

    def read():
        token0 = pair.functions.token0().call()
        token1 = pair.functions.token1().call()
        reserves = pair.functions.getReserves().call()
        return token0, token1, int(reserves[0]), int(reserves[1])

    token0, token1, r0, r1 = call_with_backoff(
        read, what=pair_addr, max_retries=max_retries
    )
    return (
        Web3.to_checksum_address(token0),
        Web3.to_checksum_address(token1),
        r0,
        r1,
    )


def quote_from_reserves(
    venue_id: str,
    pair_addr: str,
    token0: str,
    reserve0: int,
    reserve1: int,
    token_a: str,
) -> Optional[VenueQuote]:
    """
    Build a VenueQuote from raw pair state.

    The pair's token0 decides orientation: if it is tokenA the price is
    r1/r0, otherwise r0/r1. Zero reserve on either side yields None.
    """
    if same_address(token0, token_a):
        reserve_a, reserve_b = reserve0, reserve1
    else:
        reserve_a, reserve_b = reserve1, reserve0

    price = price_from_reserves(reserve_a, reserve_b)
    if price is None:
        return None

    return VenueQuote(
        venue_id=venue_id,
        kind=VenueKind.CONSTANT_PRODUCT,
        pool_address=pair_addr,
        price=price,
        liquidity=min(reserve_a, reserve_b),
    )


def quote_pair(
    web3: Web3, venue_id: str, factory_addr: str, token_a: str, token_b: str
) -> Optional[VenueQuote]:
    """
    Quote tokenB per tokenA on one V2 venue.

    Returns:
        VenueQuote, or None when the pair does not exist or is empty

    Raises:
        VenueQueryError: If any read fails
    """
    pair_addr = get_pair_address(web3, factory_addr, token_a, token_b, venue=venue_id)
    if pair_addr is None:
        logger.debug(f"{venue_id}: no pair for {token_a}/{token_b}")
        return None

    token0, _, r0, r1 = fetch_pool(web3, pair_addr)
    quote = quote_from_reserves(venue_id, pair_addr, token0, r0, r1, token_a)
    if quote is None:
        logger.debug(f"{venue_id}: pair {pair_addr} has an empty reserve")
    return quote


async def quote_pair_async(
    web3: Web3, venue_id: str, factory_addr: str, token_a: str, token_b: str
) -> Optional[VenueQuote]:
    """
    Async version of quote_pair.

    Runs the synchronous RPC calls in the default thread pool so the event
    loop stays free for the other venues of the same scan.
    """
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(
        None, quote_pair, web3, venue_id, factory_addr, token_a, token_b
    )


def swap_out(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int = 30) -> int:
    """
    Calculate output amount for a V2 swap using constant-product formula.

    Formula (with fee embedded, integer like the pair contract):
        amountInWithFee = amountIn * (10000 - feeBps)
        amountOut = amountInWithFee * reserveOut
                    / (reserveIn * 10000 + amountInWithFee)

    Raises:
        ValueError: If inputs are invalid (negative, zero reserves, etc.)
    """
    if amount_in <= 0:
        raise ValueError(f"amount_in must be positive: {amount_in}")
    if reserve_in <= 0 or reserve_out <= 0:
        raise ValueError(
            f"Reserves must be positive: in={reserve_in}, out={reserve_out}"
        )
    if fee_bps < 0 or fee_bps >= BPS_DENOMINATOR:
        raise ValueError(f"Fee must be in [0, 10000) bps: {fee_bps}")

    amount_in_with_fee = amount_in * (BPS_DENOMINATOR - fee_bps)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * BPS_DENOMINATOR + amount_in_with_fee

    return numerator // denominator
