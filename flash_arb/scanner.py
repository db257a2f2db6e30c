"""
Pool scanner: quotes one token pair on every configured venue, then ranks
the cross-venue spreads.

Venue reads inside a pair run concurrently. A venue that fails or has no
pool is left out of that scan; it never fails the pair.
"""

import asyncio
from typing import List, Sequence, Tuple

from web3 import Web3

from .adapters import stableswap, v2, v3
from .adapters.v3 import DEFAULT_FEE_TIERS
from .config import ChainConfig
from .exceptions import VenueQueryError
from .matcher import match_opportunities
from .types import Opportunity, VenueQuote
from .utils import get_logger

logger = get_logger(__name__)

V2_VENUE = "sushiswap"
V3_VENUE = "uniswap_v3"


class PoolScanner:
    """
    Collects VenueQuotes for a pair from the chain's venues.

    Args:
        web3: Web3 instance connected to the chain
        chain: Venue and token registry
        fee_tiers: Concentrated-liquidity tiers to quote
        max_concurrency: Cap on simultaneous venue reads
    """

    def __init__(
        self,
        web3: Web3,
        chain: ChainConfig,
        fee_tiers: Sequence[int] = DEFAULT_FEE_TIERS,
        max_concurrency: int = 5,
    ):
        self.web3 = web3
        self.chain = chain
        self.fee_tiers = tuple(fee_tiers)
        self.max_concurrency = max_concurrency

    async def _guarded(
        self, semaphore: asyncio.Semaphore, venue: str, coro
    ) -> List[VenueQuote]:
        async with semaphore:
            try:
                result = await coro
            except VenueQueryError as e:
                logger.debug(f"{venue} excluded: {e}")
                return []
            except Exception as e:
                logger.warning(f"{venue} excluded, unexpected error: {e}")
                return []
        if result is None:
            return []
        if isinstance(result, list):
            return result
        return [result]

    async def fetch_quotes(self, token_a: str, token_b: str) -> List[VenueQuote]:
        """
        Quote tokenB per tokenA on every venue that has a pool for the pair.

        Args:
            token_a: Address of the token being priced
            token_b: Address of the token the price is denominated in

        Returns:
            Quotes in venue order: constant-product, concentrated tiers,
            then stableswap pools
        """
        # One per call: a semaphore must belong to the loop running the scan
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks = []
        if self.chain.v2_factory:
            tasks.append(
                self._guarded(
                    semaphore,
                    V2_VENUE,
                    v2.quote_pair_async(
                        self.web3, V2_VENUE, self.chain.v2_factory, token_a, token_b
                    ),
                )
            )
        if self.chain.uniswap_v3_factory:
            tasks.append(
                self._guarded(
                    semaphore,
                    V3_VENUE,
                    v3.quote_fee_tiers_async(
                        self.web3,
                        V3_VENUE,
                        self.chain.uniswap_v3_factory,
                        token_a,
                        token_b,
                        self.fee_tiers,
                    ),
                )
            )

        decimals_a = self._decimals(token_a)
        for pool in self.chain.stableswap_pools:
            if stableswap.coin_indexes(pool["coins"], token_a, token_b) is None:
                continue
            tasks.append(
                self._guarded(
                    semaphore,
                    pool["name"],
                    stableswap.quote_pool_async(
                        self.web3,
                        pool["name"],
                        pool["address"],
                        pool["coins"],
                        token_a,
                        token_b,
                        decimals_a,
                    ),
                )
            )

        results = await asyncio.gather(*tasks)
        return [quote for venue_quotes in results for quote in venue_quotes]

    def _decimals(self, token: str) -> int:
        for info in self.chain.tokens.values():
            if info["address"].lower() == token.lower():
                return info["decimals"]
        return 18

    async def scan_pair(
        self, symbol_a: str, symbol_b: str, min_profit_bps: int
    ) -> Tuple[List[VenueQuote], List[Opportunity]]:
        """Quote one configured pair and rank its opportunities."""
        token_a = self.chain.token(symbol_a)["address"]
        token_b = self.chain.token(symbol_b)["address"]

        quotes = await self.fetch_quotes(token_a, token_b)
        if len(quotes) < 2:
            logger.debug(f"{symbol_a}/{symbol_b}: {len(quotes)} venue(s) quoted, nothing to compare")

        opportunities = match_opportunities(quotes, min_profit_bps, (token_a, token_b))
        return quotes, opportunities
