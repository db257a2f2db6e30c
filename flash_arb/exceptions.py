"""
Exception hierarchy for the flash-loan arbitrage engine.

Each failure category of the pipeline has its own type so callers can tell
a skipped venue from a voided settlement or a rejected caller.
"""

from typing import Any, Dict, Optional


class FlashArbError(Exception):
    """Base exception for all flash-loan arbitrage errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class VenueQueryError(FlashArbError):
    """Raised when a single venue read fails (missing pool, reverted call)."""

    def __init__(
        self,
        message: str,
        venue: Optional[str] = None,
        pool: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.venue = venue
        self.pool = pool


class PlanningError(FlashArbError):
    """Raised when an opportunity cannot be turned into a settlement plan."""

    pass


class UnsupportedVenueError(PlanningError):
    """Raised for a venue kind the settlement contract cannot route through."""

    def __init__(
        self,
        message: str,
        venue_kind: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.venue_kind = venue_kind


class SubmissionError(FlashArbError):
    """Raised when gas estimation or the ledger rejects a settlement request."""

    def __init__(
        self,
        message: str,
        asset: Optional[str] = None,
        amount: Optional[int] = None,
        legs: Optional[Dict[str, Any]] = None,
        tx_hash: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.asset = asset
        self.amount = amount
        self.legs = legs or {}
        self.tx_hash = tx_hash


class AuthorizationError(FlashArbError):
    """Raised when an unexpected caller drives a settlement transition."""

    def __init__(
        self,
        message: str,
        caller: Optional[str] = None,
        expected: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.caller = caller
        self.expected = expected


class ReentrancyError(AuthorizationError):
    """Raised when a settlement starts while another one is still running."""

    pass


class SettlementAborted(FlashArbError):
    """
    Raised when a settlement is voided.

    Attributes:
        state: The settlement state whose transition failed
        leg: Failing leg (1 or 2) when the abort came from a swap
    """

    def __init__(
        self,
        message: str,
        state: Any = None,
        leg: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.state = state
        self.leg = leg


class SlippageError(SettlementAborted):
    """Raised when a leg returns less than its minimum output."""

    def __init__(
        self,
        message: str,
        state: Any = None,
        leg: Optional[int] = None,
        expected: Optional[int] = None,
        actual: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, state, leg, details)
        self.expected = expected
        self.actual = actual


class InsufficientFundsError(SettlementAborted):
    """Raised when the post-swap balance cannot cover principal + premium."""

    def __init__(
        self,
        message: str,
        state: Any = None,
        required: Optional[int] = None,
        available: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, state, None, details)
        self.required = required
        self.available = available


class RelayError(FlashArbError):
    """Raised when the private relay rejects a bundle request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.endpoint = endpoint
