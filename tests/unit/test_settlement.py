"""
Unit tests for flash_arb/settlement.py

The engine runs against an in-process ledger, so every guarantee of the
settlement contract (authorization, single flight, slippage bounds,
repayment and full rollback) is checked on real balances.
"""

import unittest

from eth_abi import encode
from hypothesis import given, settings
from hypothesis import strategies as st

from flash_arb.codec import ARB_PARAMS_TYPE, encode_plan, plan_to_tuple
from flash_arb.exceptions import (
    AuthorizationError,
    InsufficientFundsError,
    ReentrancyError,
    SettlementAborted,
    SlippageError,
    UnsupportedVenueError,
)
from flash_arb.opportunity_math import SCALE
from flash_arb.settlement import (
    ConstantProductVenue,
    Ledger,
    LedgerTransferError,
    LoanFacility,
    QuotedPriceVenue,
    SettlementEngine,
)
from flash_arb.types import (
    ArbExecuted,
    ConcentratedRoute,
    ConstantProductRoute,
    FlashLoanInitiated,
    SettlementPlan,
    SettlementState,
    VenueKind,
)

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"

OPERATOR = "operator"
ENGINE = "engine"
POOL = "aave-pool"
ROUTER = "router"

AMOUNT = 1_000_000
INVENTORY = 10**30


def make_plan(min_out_leg1=0, min_out_leg2=0, borrowed=USDC):
    intermediate = WETH if borrowed == USDC else USDC
    return SettlementPlan(
        leg1=ConstantProductRoute(),
        leg2=ConcentratedRoute(fee_tier=500),
        borrowed_token=borrowed,
        intermediate_token=intermediate,
        borrow_amount=AMOUNT,
        min_out_leg1=min_out_leg1,
        min_out_leg2=min_out_leg2,
    )


class SettlementWorld:
    """Ledger, router, loan pool and engine wired together."""

    def __init__(self, leg1_price=SCALE, leg2_price=101 * SCALE // 100, router=None):
        self.ledger = Ledger()
        self.router = router or QuotedPriceVenue(ROUTER)
        self.router.set_price(ConstantProductRoute(), USDC, WETH, leg1_price)
        self.router.set_price(ConcentratedRoute(fee_tier=500), WETH, USDC, leg2_price)
        self.facility = LoanFacility(self.ledger, POOL)
        self.engine = SettlementEngine(
            self.ledger,
            ENGINE,
            OPERATOR,
            self.facility,
            {kind: self.router for kind in VenueKind},
        )
        self.ledger.mint(USDC, POOL, AMOUNT * 10)
        self.ledger.mint(USDC, ROUTER, INVENTORY)
        self.ledger.mint(WETH, ROUTER, INVENTORY)

    def run(self, plan, caller=OPERATOR, amount=AMOUNT):
        return self.engine.execute_arbitrage(caller, USDC, amount, encode_plan(plan))


class TestSettlementSuccess(unittest.TestCase):
    """Test a profitable borrow -> swap -> swap -> repay."""

    def setUp(self):
        self.world = SettlementWorld()

    def test_settles_and_pays_profit(self):
        result = self.world.run(make_plan())

        self.assertEqual(result.state, SettlementState.SETTLED)
        self.assertEqual(result.loan.premium, 500)
        self.assertEqual(result.leg1_out, 1_000_000)
        self.assertEqual(result.leg2_out, 1_010_000)
        self.assertEqual(result.profit, 9_500)

        ledger = self.world.ledger
        self.assertEqual(ledger.balance_of(USDC, OPERATOR), 9_500)
        self.assertEqual(ledger.balance_of(USDC, POOL), AMOUNT * 10 + 500)
        self.assertEqual(ledger.balance_of(USDC, ENGINE), 0)
        self.assertEqual(ledger.balance_of(WETH, ENGINE), 0)

    def test_events_emitted_in_order(self):
        result = self.world.run(make_plan())

        self.assertEqual(
            result.events,
            [
                FlashLoanInitiated(asset=USDC, amount=AMOUNT),
                ArbExecuted(borrowed_asset=USDC, principal=AMOUNT, profit=9_500),
            ],
        )
        self.assertEqual(self.world.ledger.events, result.events)

    def test_state_history(self):
        self.world.run(make_plan())

        self.assertEqual(
            self.world.engine.history,
            [
                SettlementState.ADVANCED,
                SettlementState.LEG1_SWAPPED,
                SettlementState.LEG2_SWAPPED,
                SettlementState.REPAYMENT_VERIFIED,
                SettlementState.SETTLED,
            ],
        )

    def test_minimums_met_exactly(self):
        result = self.world.run(make_plan(min_out_leg1=1_000_000, min_out_leg2=1_010_000))
        self.assertEqual(result.state, SettlementState.SETTLED)

    def test_repayment_exactly_covered(self):
        world = SettlementWorld(leg2_price=(AMOUNT + 500) * SCALE // AMOUNT)

        result = world.run(make_plan())

        self.assertEqual(result.state, SettlementState.SETTLED)
        self.assertEqual(result.leg2_out, 1_000_500)
        self.assertEqual(result.profit, 0)
        self.assertEqual(
            result.events[-1], ArbExecuted(borrowed_asset=USDC, principal=AMOUNT, profit=0)
        )
        self.assertEqual(world.ledger.balance_of(USDC, OPERATOR), 0)
        self.assertEqual(world.ledger.balance_of(USDC, POOL), AMOUNT * 10 + 500)

    def test_address_case_ignored(self):
        result = self.world.engine.execute_arbitrage(
            OPERATOR.upper(), USDC.lower(), AMOUNT, encode_plan(make_plan())
        )
        self.assertEqual(result.profit, 9_500)


class TestSettlementAborts(unittest.TestCase):
    """Test that every failure voids the whole settlement."""

    def setUp(self):
        self.world = SettlementWorld()
        self.before = self.world.ledger.snapshot()

    def assertUnchanged(self):
        self.assertEqual(self.world.ledger.snapshot(), self.before)
        self.assertEqual(self.world.ledger.events, [])
        self.assertEqual(self.world.engine.state, SettlementState.ABORTED)

    def test_leg2_slippage(self):
        with self.assertRaises(SlippageError) as ctx:
            self.world.run(make_plan(min_out_leg2=1_010_001))

        error = ctx.exception
        self.assertEqual(error.leg, 2)
        self.assertEqual(error.state, SettlementState.LEG2_SWAPPED)
        self.assertEqual(error.expected, 1_010_001)
        self.assertEqual(error.actual, 1_010_000)
        self.assertUnchanged()

    def test_leg1_slippage(self):
        with self.assertRaises(SlippageError) as ctx:
            self.world.run(make_plan(min_out_leg1=1_000_001))
        self.assertEqual(ctx.exception.leg, 1)
        self.assertEqual(ctx.exception.state, SettlementState.LEG1_SWAPPED)
        self.assertUnchanged()

    def test_insufficient_repayment(self):
        world = SettlementWorld(leg2_price=SCALE)
        before = world.ledger.snapshot()

        with self.assertRaises(InsufficientFundsError) as ctx:
            world.run(make_plan())

        self.assertEqual(ctx.exception.required, 1_000_500)
        self.assertEqual(ctx.exception.available, 1_000_000)
        self.assertEqual(ctx.exception.state, SettlementState.REPAYMENT_VERIFIED)
        self.assertEqual(world.ledger.snapshot(), before)
        self.assertEqual(world.engine.history[-1], SettlementState.ABORTED)

    def test_leg_revert_wrapped(self):
        world = SettlementWorld()
        world.router = QuotedPriceVenue(ROUTER)
        world.engine._venues = {kind: world.router for kind in VenueKind}

        with self.assertRaises(SettlementAborted) as ctx:
            world.run(make_plan())

        self.assertEqual(ctx.exception.leg, 1)
        self.assertEqual(ctx.exception.state, SettlementState.LEG1_SWAPPED)
        self.assertIsInstance(ctx.exception.__cause__, LedgerTransferError)

    def test_unknown_venue_byte(self):
        fields = list(plan_to_tuple(make_plan()))
        fields[1] = 9
        params = encode([ARB_PARAMS_TYPE], [tuple(fields)])

        with self.assertRaises(SettlementAborted) as ctx:
            self.world.engine.execute_arbitrage(OPERATOR, USDC, AMOUNT, params)

        self.assertEqual(ctx.exception.state, SettlementState.ADVANCED)
        self.assertIsInstance(ctx.exception.__cause__, UnsupportedVenueError)
        self.assertUnchanged()

    def test_plan_for_another_asset(self):
        with self.assertRaises(SettlementAborted) as ctx:
            self.world.run(make_plan(borrowed=WETH))
        self.assertEqual(ctx.exception.state, SettlementState.ADVANCED)
        self.assertUnchanged()

    def test_loan_larger_than_pool(self):
        with self.assertRaises(SettlementAborted) as ctx:
            self.world.run(make_plan(), amount=AMOUNT * 100)

        self.assertIsNone(ctx.exception.state)
        self.assertIsInstance(ctx.exception.__cause__, LedgerTransferError)
        self.assertUnchanged()

    def test_one_unit_short_of_repayment(self):
        world = SettlementWorld(leg2_price=(AMOUNT + 499) * SCALE // AMOUNT)
        before = world.ledger.snapshot()

        with self.assertRaises(InsufficientFundsError) as ctx:
            world.run(make_plan())

        self.assertEqual(ctx.exception.required, 1_000_500)
        self.assertEqual(ctx.exception.available, 1_000_499)
        self.assertEqual(world.ledger.snapshot(), before)
        self.assertEqual(world.ledger.events, [])


class TestSettlementAuthorization(unittest.TestCase):
    """Test caller checks and single-flight locking."""

    def setUp(self):
        self.world = SettlementWorld()

    def test_only_operator_starts(self):
        with self.assertRaises(AuthorizationError) as ctx:
            self.world.run(make_plan(), caller="mallory")
        self.assertEqual(ctx.exception.caller, "mallory")
        self.assertEqual(self.world.engine.history, [])

    def test_callback_requires_facility(self):
        with self.assertRaises(AuthorizationError):
            self.world.engine.execute_operation(
                OPERATOR, USDC, AMOUNT, 500, ENGINE, encode_plan(make_plan())
            )

    def test_callback_requires_own_initiator(self):
        with self.assertRaises(AuthorizationError):
            self.world.engine.execute_operation(
                POOL, USDC, AMOUNT, 500, "someone-else", encode_plan(make_plan())
            )

    def test_direct_facility_call_rejected(self):
        ledger = self.world.ledger
        before = ledger.snapshot()
        params = encode_plan(make_plan())

        for caller in ("mallory", OPERATOR, ENGINE):
            with self.subTest(caller=caller):
                with self.assertRaises(AuthorizationError):
                    self.world.facility.flash_loan(
                        caller, self.world.engine, USDC, AMOUNT, params
                    )
                self.assertEqual(ledger.snapshot(), before)

        self.assertEqual(ledger.events, [])
        self.assertEqual(self.world.engine.history, [])

    def test_reentrant_call_rejected(self):
        class ReenteringVenue(QuotedPriceVenue):
            engine = None

            def swap(self, ledger, holder, route, token_in, token_out, amount_in):
                self.engine.execute_arbitrage(
                    OPERATOR, USDC, AMOUNT, encode_plan(make_plan())
                )

        venue = ReenteringVenue(ROUTER)
        world = SettlementWorld(router=venue)
        venue.engine = world.engine
        before = world.ledger.snapshot()

        with self.assertRaises(ReentrancyError):
            world.run(make_plan())
        self.assertEqual(world.ledger.snapshot(), before)
        self.assertFalse(world.engine._locked)

    def test_lock_released_after_abort(self):
        with self.assertRaises(SlippageError):
            self.world.run(make_plan(min_out_leg2=AMOUNT * 2))

        result = self.world.run(make_plan())
        self.assertEqual(result.state, SettlementState.SETTLED)

    def test_every_kind_needs_a_venue(self):
        ledger = Ledger()
        facility = LoanFacility(ledger, POOL)
        with self.assertRaises(ValueError):
            SettlementEngine(
                ledger,
                ENGINE,
                OPERATOR,
                facility,
                {VenueKind.CONSTANT_PRODUCT: QuotedPriceVenue(ROUTER)},
            )


class TestSettlementInvariant(unittest.TestCase):
    """Either the loan is repaid in full or nothing moves."""

    @settings(max_examples=50, deadline=None)
    @given(
        st.integers(min_value=1, max_value=AMOUNT * 10),
        st.integers(min_value=SCALE * 98 // 100, max_value=SCALE * 102 // 100),
    )
    def test_repaid_or_unchanged(self, amount, leg2_price):
        world = SettlementWorld(leg2_price=leg2_price)
        before = world.ledger.snapshot()
        premium = world.facility.premium_for(amount)

        try:
            result = world.run(make_plan(), amount=amount)
        except InsufficientFundsError:
            self.assertEqual(world.ledger.snapshot(), before)
            return

        self.assertEqual(
            world.ledger.balance_of(USDC, POOL), AMOUNT * 10 + premium
        )
        self.assertEqual(result.profit, result.leg2_out - amount - premium)
        self.assertGreaterEqual(result.profit, 0)
        self.assertEqual(world.ledger.balance_of(USDC, OPERATOR), result.profit)

    @settings(max_examples=50, deadline=None)
    @given(
        st.integers(min_value=1_000, max_value=AMOUNT * 10),
        st.integers(min_value=-2, max_value=2),
    )
    def test_around_repayment_threshold(self, amount, offset):
        premium = amount * 5 // 10_000
        target = amount + premium + offset
        # Smallest price whose leg 2 output is exactly target
        world = SettlementWorld(leg2_price=-(-target * SCALE // amount))
        before = world.ledger.snapshot()

        if offset < 0:
            with self.assertRaises(InsufficientFundsError):
                world.run(make_plan(), amount=amount)
            self.assertEqual(world.ledger.snapshot(), before)
            return

        result = world.run(make_plan(), amount=amount)
        self.assertEqual(result.leg2_out, target)
        self.assertEqual(result.profit, offset)
        self.assertEqual(result.events[-1].profit, offset)


class TestLedgerAndVenues(unittest.TestCase):
    """Test the ledger and venue building blocks."""

    def test_transaction_rolls_back(self):
        ledger = Ledger()
        ledger.mint(USDC, "alice", 100)

        with self.assertRaises(RuntimeError):
            with ledger.transaction():
                ledger.transfer(USDC, "alice", "bob", 60)
                ledger.emit(FlashLoanInitiated(asset=USDC, amount=60))
                raise RuntimeError("boom")

        self.assertEqual(ledger.balance_of(USDC, "alice"), 100)
        self.assertEqual(ledger.balance_of(USDC, "bob"), 0)
        self.assertEqual(ledger.events, [])

    def test_overdraft_rejected(self):
        ledger = Ledger()
        ledger.mint(USDC, "alice", 10)
        with self.assertRaises(LedgerTransferError):
            ledger.transfer(USDC, "alice", "bob", 11)

    def test_constant_product_venue(self):
        ledger = Ledger()
        venue = ConstantProductVenue("pair")
        ledger.mint(USDC, "pair", 10**6)
        ledger.mint(WETH, "pair", 10**6)
        ledger.mint(USDC, "trader", 1000)

        out = venue.swap(ledger, "trader", ConstantProductRoute(), USDC, WETH, 1000)

        self.assertEqual(out, 996)
        self.assertEqual(ledger.balance_of(WETH, "trader"), 996)
        self.assertEqual(ledger.balance_of(USDC, "pair"), 10**6 + 1000)

    def test_quoted_price_fee(self):
        ledger = Ledger()
        venue = QuotedPriceVenue(ROUTER)
        venue.set_price(ConstantProductRoute(), USDC, WETH, 2 * SCALE, fee_bps=30)
        self.assertEqual(
            venue.quote_out(ledger, ConstantProductRoute(), USDC, WETH, 10_000), 19_940
        )

    def test_premium(self):
        facility = LoanFacility(Ledger(), POOL)
        self.assertEqual(facility.premium_for(10_000 * 10**6), 5 * 10**6)
        with self.assertRaises(ValueError):
            LoanFacility(Ledger(), POOL, premium_bps=10_000)
