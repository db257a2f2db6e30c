"""
Flash-loan cross-venue arbitrage engine.

Scans a token pair across constant-product, concentrated-liquidity and
stableswap venues, ranks the price gaps and settles the best one as a single
borrow -> swap -> swap -> repay transaction.
"""

PROJECT_NAME = "flash-arb"
VERSION = "0.1.0"

from flash_arb.exceptions import (
    AuthorizationError,
    FlashArbError,
    InsufficientFundsError,
    PlanningError,
    ReentrancyError,
    RelayError,
    SettlementAborted,
    SlippageError,
    SubmissionError,
    UnsupportedVenueError,
    VenueQueryError,
)
from flash_arb.matcher import match_opportunities
from flash_arb.types import Opportunity, SettlementPlan, VenueKind, VenueQuote

__all__ = [
    "PROJECT_NAME",
    "VERSION",
    "AuthorizationError",
    "FlashArbError",
    "InsufficientFundsError",
    "Opportunity",
    "PlanningError",
    "ReentrancyError",
    "RelayError",
    "SettlementAborted",
    "SettlementPlan",
    "SlippageError",
    "SubmissionError",
    "UnsupportedVenueError",
    "VenueKind",
    "VenueQueryError",
    "VenueQuote",
    "match_opportunities",
]
