"""
Opportunity matcher: pairwise comparison of venue quotes for one pair.

Every unordered pair of quotes is compared once. The cheaper venue is the
buy leg, the dearer venue the sell leg. Nothing about fees, gas or slippage
is deducted here; the settlement outcome is the only real profit check.
"""

from itertools import combinations
from typing import List, Sequence, Tuple

from .opportunity_math import ratio_to_bps, spread_ratio
from .types import Opportunity, VenueQuote


def match_opportunities(
    quotes: Sequence[VenueQuote],
    min_profit_bps: int,
    pair_id: Tuple[str, str],
) -> List[Opportunity]:
    """
    Find two-venue opportunities at or above a profit threshold.

    Args:
        quotes: Normalised quotes for one pair, in fetch order
        min_profit_bps: Opportunities strictly below this are dropped
        pair_id: (tokenA, tokenB) the quotes are priced in

    Returns:
        Opportunities sorted by profit_bps descending. The sort is stable,
        so equal spreads keep the order their quote pairs were enumerated in.
    """
    opportunities: List[Opportunity] = []

    for a, b in combinations(quotes, 2):
        if a.price <= 0 or b.price <= 0 or a.price == b.price:
            continue

        ratio = spread_ratio(a.price, b.price)
        profit_bps = ratio_to_bps(ratio)
        if profit_bps < min_profit_bps:
            continue

        buy, sell = (a, b) if a.price < b.price else (b, a)
        opportunities.append(
            Opportunity(
                buy=buy,
                sell=sell,
                spread_ratio=ratio,
                profit_bps=profit_bps,
                pair_id=pair_id,
            )
        )

    opportunities.sort(key=lambda o: o.profit_bps, reverse=True)
    return opportunities
