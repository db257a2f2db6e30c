"""
Core data types for flash-loan arbitrage scanning and settlement.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from fractions import Fraction
from typing import List, Optional, Tuple, Union

from .opportunity_math import to_float


class VenueKind(IntEnum):
    """
    Pricing curve of a venue.

    The integer values are the venue-type byte the settlement contract
    decodes, so they must never be renumbered.
    """

    CONCENTRATED = 1
    CONSTANT_PRODUCT = 2
    STABLESWAP = 3


@dataclass(frozen=True)
class StableswapCoords:
    """Curve-style pool address plus coin indexes for (tokenIn, tokenOut)."""

    pool: str
    i: int
    j: int


@dataclass(frozen=True)
class VenueQuote:
    """
    A normalised price for one venue and one token pair.

    Attributes:
        venue_id: Configured venue name (e.g. "uniswap_v3", "sushiswap")
        kind: Pricing curve of the venue
        pool_address: On-chain address of the pool that was read
        price: tokenB per tokenA in base units, scaled by 10^18
        liquidity: Reserve or active-liquidity magnitude, informational
        fee_tier: Concentrated-liquidity fee tier (e.g. 500 for 0.05%)
        stableswap: Pool coordinates for stableswap venues
    """

    venue_id: str
    kind: VenueKind
    pool_address: str
    price: int
    liquidity: int
    fee_tier: Optional[int] = None
    stableswap: Optional[StableswapCoords] = None

    @property
    def price_float(self) -> float:
        return to_float(self.price)

    @property
    def label(self) -> str:
        if self.fee_tier is not None:
            return f"{self.venue_id}:{self.fee_tier}"
        return self.venue_id


@dataclass(frozen=True)
class Opportunity:
    """
    A two-venue price discrepancy for one pair.

    Invariant: buy.price < sell.price.
    """

    buy: VenueQuote
    sell: VenueQuote
    spread_ratio: Fraction
    profit_bps: int
    pair_id: Tuple[str, str]

    def __post_init__(self):
        if not self.buy.price < self.sell.price:
            raise ValueError(
                f"Buy price {self.buy.price} must be below sell price {self.sell.price}"
            )

    @property
    def token_a(self) -> str:
        return self.pair_id[0]

    @property
    def token_b(self) -> str:
        return self.pair_id[1]

    def describe(self) -> str:
        return (
            f"{self.profit_bps} bps | {self.buy.label} @ {self.buy.price_float:.6f}"
            f" -> {self.sell.label} @ {self.sell.price_float:.6f}"
        )


# ============================================================================
# Settlement routing (tagged variants over VenueKind)
# ============================================================================


@dataclass(frozen=True)
class ConstantProductRoute:
    """Leg routed through the constant-product router."""

    kind = VenueKind.CONSTANT_PRODUCT


@dataclass(frozen=True)
class ConcentratedRoute:
    """Leg routed through the concentrated-liquidity router at one fee tier."""

    fee_tier: int
    kind = VenueKind.CONCENTRATED

    def __post_init__(self):
        if not 0 < self.fee_tier < 2**24:
            raise ValueError(f"Fee tier must fit uint24 and be positive: {self.fee_tier}")


@dataclass(frozen=True)
class StableswapRoute:
    """Leg routed through a stableswap pool by coin index."""

    pool: str
    i: int
    j: int
    kind = VenueKind.STABLESWAP


LegRoute = Union[ConstantProductRoute, ConcentratedRoute, StableswapRoute]


@dataclass(frozen=True)
class SettlementPlan:
    """
    Everything the settlement contract needs for one borrow-swap-swap-repay.

    Leg 1 swaps borrowed_token -> intermediate_token, leg 2 swaps back.
    Immutable once built.
    """

    leg1: LegRoute
    leg2: LegRoute
    borrowed_token: str
    intermediate_token: str
    borrow_amount: int
    min_out_leg1: int = 0
    min_out_leg2: int = 0

    def __post_init__(self):
        if self.borrow_amount < 0:
            raise ValueError(f"borrow_amount must be non-negative: {self.borrow_amount}")
        if self.min_out_leg1 < 0 or self.min_out_leg2 < 0:
            raise ValueError("Minimum outputs must be non-negative")

    def route(self, leg: int) -> LegRoute:
        if leg == 1:
            return self.leg1
        if leg == 2:
            return self.leg2
        raise ValueError(f"Settlement plans have two legs, got {leg}")

    def min_out(self, leg: int) -> int:
        return self.min_out_leg1 if leg == 1 else self.min_out_leg2

    def leg_summary(self) -> dict:
        return {
            "leg1": self.leg1.kind.name,
            "leg2": self.leg2.kind.name,
            "min_out_leg1": self.min_out_leg1,
            "min_out_leg2": self.min_out_leg2,
        }


@dataclass(frozen=True)
class LoanAdvance:
    """A flash loan for the lifetime of one settlement call."""

    asset: str
    principal: int
    premium: int

    @property
    def repayment(self) -> int:
        return self.principal + self.premium


# ============================================================================
# Settlement events
# ============================================================================


@dataclass(frozen=True)
class FlashLoanInitiated:
    asset: str
    amount: int


@dataclass(frozen=True)
class ArbExecuted:
    borrowed_asset: str
    principal: int
    profit: int


SettlementEvent = Union[FlashLoanInitiated, ArbExecuted]


class SettlementState(Enum):
    ADVANCED = "advanced"
    LEG1_SWAPPED = "leg1_swapped"
    LEG2_SWAPPED = "leg2_swapped"
    REPAYMENT_VERIFIED = "repayment_verified"
    SETTLED = "settled"
    ABORTED = "aborted"


@dataclass
class SettlementResult:
    """Outcome of a settlement that reached SETTLED."""

    state: SettlementState
    loan: LoanAdvance
    profit: int
    leg1_out: int
    leg2_out: int
    events: List[SettlementEvent] = field(default_factory=list)
