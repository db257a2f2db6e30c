"""
Settlement engine: the borrow -> swap -> swap -> repay state machine.

This is an in-process model of the on-chain settlement contract. It runs
against a Ledger of token balances so a plan can be dry-run before it is
sent, and so the contract's guarantees can be exercised in tests:

- Only the operator can start a settlement; only the loan facility can
  drive it after the loan is advanced.
- One settlement at a time; an overlapping call is rejected, not queued.
- Each leg must return at least its minimum output.
- Repayment is verified before anything else moves, and any failure rolls
  every balance back to where it was before the call.

States: ADVANCED -> LEG1_SWAPPED -> LEG2_SWAPPED -> REPAYMENT_VERIFIED ->
SETTLED, or ABORTED from any of them.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, List, Mapping, Optional, Tuple

from .adapters.v2 import swap_out
from .codec import decode_plan
from .exceptions import (
    AuthorizationError,
    InsufficientFundsError,
    ReentrancyError,
    SettlementAborted,
    SlippageError,
    UnsupportedVenueError,
)
from .opportunity_math import BPS_DENOMINATOR, apply_bps_haircut, convert_at_price
from .types import (
    ArbExecuted,
    FlashLoanInitiated,
    LegRoute,
    LoanAdvance,
    SettlementEvent,
    SettlementPlan,
    SettlementResult,
    SettlementState,
    VenueKind,
)
from .utils import get_logger, same_address, short_addr

logger = get_logger(__name__)

# Aave V3 flash loan premium: 0.05%
DEFAULT_PREMIUM_BPS = 5


class LedgerTransferError(ValueError):
    """Raised when a transfer exceeds the sender's balance (an ERC20 revert)."""

    pass


class Ledger:
    """
    Token balances keyed by (token, holder), plus an event log.

    transaction() gives all-or-nothing semantics: if the block raises,
    balances and the event log are restored to their state on entry.
    """

    def __init__(self):
        self._balances: Dict[Tuple[str, str], int] = defaultdict(int)
        self.events: List[SettlementEvent] = []

    @staticmethod
    def _key(token: str, holder: str) -> Tuple[str, str]:
        return token.lower(), holder.lower()

    def balance_of(self, token: str, holder: str) -> int:
        return self._balances.get(self._key(token, holder), 0)

    def mint(self, token: str, holder: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"Cannot mint a negative amount: {amount}")
        self._balances[self._key(token, holder)] += amount

    def transfer(self, token: str, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"Cannot transfer a negative amount: {amount}")
        available = self.balance_of(token, sender)
        if available < amount:
            raise LedgerTransferError(
                f"transfer amount exceeds balance: {short_addr(sender)} holds "
                f"{available} of {short_addr(token)}, needs {amount}"
            )
        self._balances[self._key(token, sender)] -= amount
        self._balances[self._key(token, recipient)] += amount

    def emit(self, event: SettlementEvent) -> None:
        self.events.append(event)

    def snapshot(self) -> Dict[Tuple[str, str], int]:
        return {k: v for k, v in self._balances.items() if v}

    @contextmanager
    def transaction(self):
        balances = dict(self._balances)
        event_count = len(self.events)
        try:
            yield self
        except BaseException:
            self._balances = defaultdict(int, balances)
            del self.events[event_count:]
            raise


# ============================================================================
# Venues
# ============================================================================


class SwapVenue(ABC):
    """
    A venue the engine can swap through.

    The venue holds its own inventory on the ledger: the input is moved to
    the venue's address and the output is paid out of its balance.
    """

    def __init__(self, address: str):
        self.address = address

    @abstractmethod
    def quote_out(
        self, ledger: Ledger, route: LegRoute, token_in: str, token_out: str, amount_in: int
    ) -> int:
        """Output the venue pays for amount_in, before any transfer."""

    def swap(
        self,
        ledger: Ledger,
        holder: str,
        route: LegRoute,
        token_in: str,
        token_out: str,
        amount_in: int,
    ) -> int:
        amount_out = self.quote_out(ledger, route, token_in, token_out, amount_in)
        ledger.transfer(token_in, holder, self.address, amount_in)
        ledger.transfer(token_out, self.address, holder, amount_out)
        return amount_out


class ConstantProductVenue(SwapVenue):
    """
    x*y=k pool whose reserves are its own ledger balances.

    One instance stands in for the constant-product router; the route
    carries no extra coordinates.
    """

    def __init__(self, address: str, fee_bps: int = 30):
        super().__init__(address)
        self.fee_bps = fee_bps

    def quote_out(self, ledger, route, token_in, token_out, amount_in):
        return swap_out(
            amount_in,
            ledger.balance_of(token_in, self.address),
            ledger.balance_of(token_out, self.address),
            self.fee_bps,
        )


class QuotedPriceVenue(SwapVenue):
    """
    Router that fills at fixed quoted prices, keyed by route and direction.

    Used for dry runs: each leg fills at the price the scanner saw, less the
    route's fee.
    """

    def __init__(self, address: str):
        super().__init__(address)
        self._prices: Dict[Tuple[LegRoute, str, str], Tuple[int, int]] = {}

    def set_price(
        self, route: LegRoute, token_in: str, token_out: str, price: int, fee_bps: int = 0
    ) -> None:
        """price is token_out per token_in, base units, scaled by 10^18."""
        self._prices[(route, token_in.lower(), token_out.lower())] = (price, fee_bps)

    def quote_out(self, ledger, route, token_in, token_out, amount_in):
        key = (route, token_in.lower(), token_out.lower())
        if key not in self._prices:
            raise LedgerTransferError(
                f"No {route.kind.name} liquidity for {short_addr(token_in)} -> "
                f"{short_addr(token_out)}"
            )
        price, fee_bps = self._prices[key]
        return apply_bps_haircut(convert_at_price(amount_in, price), fee_bps)


# ============================================================================
# Loan facility
# ============================================================================


class LoanFacility:
    """
    Flash-loan pool: advances principal, calls the receiver, pulls repayment.

    The whole loan runs inside one ledger transaction.
    """

    def __init__(self, ledger: Ledger, address: str, premium_bps: int = DEFAULT_PREMIUM_BPS):
        if not 0 <= premium_bps < BPS_DENOMINATOR:
            raise ValueError(f"premium_bps must be in [0, 10000): {premium_bps}")
        self.ledger = ledger
        self.address = address
        self.premium_bps = premium_bps

    def premium_for(self, amount: int) -> int:
        return amount * self.premium_bps // BPS_DENOMINATOR

    def flash_loan(
        self,
        caller: str,
        receiver: "SettlementEngine",
        asset: str,
        amount: int,
        params: bytes,
    ) -> SettlementResult:
        """
        Advance `amount` of `asset` to receiver and run its callback.

        caller is passed to the callback as the initiator.

        Raises:
            SettlementAborted: The pool cannot cover the loan
        """
        premium = self.premium_for(amount)
        with self.ledger.transaction():
            try:
                self.ledger.transfer(asset, self.address, receiver.address, amount)
            except LedgerTransferError as e:
                raise SettlementAborted(
                    f"Loan facility cannot advance {amount} {short_addr(asset)}: {e}",
                    state=None,
                ) from e
            result = receiver.execute_operation(
                self.address, asset, amount, premium, caller, params
            )
            self.ledger.transfer(asset, receiver.address, self.address, amount + premium)
        return result


# ============================================================================
# Engine
# ============================================================================


class SettlementEngine:
    """
    Settlement contract model.

    Args:
        ledger: Balances the engine, venues and facility share
        address: The engine's own ledger address
        operator: The only account allowed to start a settlement; profit
            is paid here
        facility: Flash-loan pool
        venues: Swap venue for every VenueKind. A missing kind is rejected
            here rather than when a plan first needs it.
    """

    def __init__(
        self,
        ledger: Ledger,
        address: str,
        operator: str,
        facility: LoanFacility,
        venues: Mapping[VenueKind, SwapVenue],
    ):
        missing = [kind.name for kind in VenueKind if kind not in venues]
        if missing:
            raise ValueError(f"No swap venue configured for: {', '.join(missing)}")

        self.ledger = ledger
        self.address = address
        self.operator = operator
        self.facility = facility
        self._venues: Dict[VenueKind, SwapVenue] = dict(venues)

        self._locked = False
        self.state: Optional[SettlementState] = None
        self.history: List[SettlementState] = []

    def _enter(self, state: SettlementState) -> None:
        self.state = state
        self.history.append(state)

    def execute_arbitrage(
        self, caller: str, asset: str, amount: int, params: bytes
    ) -> SettlementResult:
        """
        Start a settlement: borrow `amount` of `asset` and run the encoded plan.

        Raises:
            AuthorizationError: caller is not the operator
            ReentrancyError: another settlement is in progress
            SettlementAborted: any leg or the repayment check failed; the
                ledger is unchanged
        """
        if not same_address(caller, self.operator):
            raise AuthorizationError(
                "Only the operator can start a settlement",
                caller=caller,
                expected=self.operator,
            )
        if self._locked:
            raise ReentrancyError(
                "A settlement is already in progress", caller=caller
            )

        self._locked = True
        self.history = []
        try:
            with self.ledger.transaction():
                event_start = len(self.ledger.events)
                self.ledger.emit(FlashLoanInitiated(asset=asset, amount=amount))
                result = self.facility.flash_loan(
                    self.address, self, asset, amount, params
                )
                result.events = list(self.ledger.events[event_start:])
            return result
        except Exception as e:
            self._enter(SettlementState.ABORTED)
            logger.warning(f"Settlement of {amount} {short_addr(asset)} aborted: {e}")
            raise
        finally:
            self._locked = False

    def execute_operation(
        self,
        caller: str,
        asset: str,
        amount: int,
        premium: int,
        initiator: str,
        params: bytes,
    ) -> SettlementResult:
        """
        Flash-loan callback.

        Only the facility may call it, and only during a settlement this
        engine started.
        """
        if not same_address(caller, self.facility.address):
            raise AuthorizationError(
                "Settlement callback must come from the loan facility",
                caller=caller,
                expected=self.facility.address,
            )
        if not same_address(initiator, self.address):
            raise AuthorizationError(
                "Flash loan was not initiated by this engine",
                caller=initiator,
                expected=self.address,
            )
        if not self._locked:
            raise AuthorizationError(
                "Flash loan callback outside a settlement this engine started",
                caller=initiator,
                expected=self.operator,
            )

        loan = LoanAdvance(asset=asset, principal=amount, premium=premium)
        self._enter(SettlementState.ADVANCED)

        try:
            plan = decode_plan(params, borrow_amount=amount)
        except UnsupportedVenueError as e:
            raise SettlementAborted(str(e), state=SettlementState.ADVANCED) from e

        if not same_address(plan.borrowed_token, asset):
            raise SettlementAborted(
                f"Plan borrows {plan.borrowed_token} but the loan is in {asset}",
                state=SettlementState.ADVANCED,
            )

        leg1_out = self._swap_leg(
            plan, 1, plan.borrowed_token, plan.intermediate_token, loan.principal
        )
        self._enter(SettlementState.LEG1_SWAPPED)

        leg2_out = self._swap_leg(
            plan, 2, plan.intermediate_token, plan.borrowed_token, leg1_out
        )
        self._enter(SettlementState.LEG2_SWAPPED)

        balance = self.ledger.balance_of(asset, self.address)
        if balance < loan.repayment:
            raise InsufficientFundsError(
                f"Balance {balance} cannot repay {loan.repayment} "
                f"(principal {loan.principal} + premium {loan.premium})",
                state=SettlementState.REPAYMENT_VERIFIED,
                required=loan.repayment,
                available=balance,
            )
        self._enter(SettlementState.REPAYMENT_VERIFIED)

        profit = balance - loan.repayment
        if profit:
            self.ledger.transfer(asset, self.address, self.operator, profit)
        self.ledger.emit(
            ArbExecuted(borrowed_asset=asset, principal=loan.principal, profit=profit)
        )
        self._enter(SettlementState.SETTLED)

        logger.info(
            f"Settled {loan.principal} {short_addr(asset)}: "
            f"legs {leg1_out} -> {leg2_out}, profit {profit}"
        )
        return SettlementResult(
            state=SettlementState.SETTLED,
            loan=loan,
            profit=profit,
            leg1_out=leg1_out,
            leg2_out=leg2_out,
        )

    def _swap_leg(
        self, plan: SettlementPlan, leg: int, token_in: str, token_out: str, amount_in: int
    ) -> int:
        route = plan.route(leg)
        failing = (
            SettlementState.LEG1_SWAPPED if leg == 1 else SettlementState.LEG2_SWAPPED
        )
        venue = self._venues[route.kind]

        try:
            amount_out = venue.swap(
                self.ledger, self.address, route, token_in, token_out, amount_in
            )
        except (AuthorizationError, SettlementAborted):
            raise
        except Exception as e:
            raise SettlementAborted(
                f"Leg {leg} ({route.kind.name}) reverted: {e}", state=failing, leg=leg
            ) from e

        minimum = plan.min_out(leg)
        if amount_out < minimum:
            raise SlippageError(
                f"Leg {leg} ({route.kind.name}) returned {amount_out}, "
                f"below minimum {minimum}",
                state=failing,
                leg=leg,
                expected=minimum,
                actual=amount_out,
            )
        return amount_out
