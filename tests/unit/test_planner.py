"""
Unit tests for flash_arb/planner.py

Covers loan sizing, leg routing, dry runs through the settlement model and
transaction submission against a mocked web3.
"""

import threading
import unittest
from fractions import Fraction
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3 import Web3

from flash_arb.exceptions import (
    PlanningError,
    RelayError,
    SettlementAborted,
    SubmissionError,
    UnsupportedVenueError,
)
from flash_arb.opportunity_math import SCALE
from flash_arb.planner import ExecutionPlanner, route_fee_bps
from flash_arb.types import (
    ConcentratedRoute,
    ConstantProductRoute,
    Opportunity,
    SettlementState,
    StableswapCoords,
    StableswapRoute,
    VenueKind,
    VenueQuote,
)

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
DAI = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
CURVE_3POOL = "0xbEbc44782C7dB0a1A60Cb6fe97d0b483032FF1C7"
CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

DECIMALS = {USDC: 6, WETH: 18, DAI: 18}


def make_quote(venue_id, kind, price, fee_tier=None, stableswap=None):
    return VenueQuote(
        venue_id=venue_id,
        kind=kind,
        pool_address=f"pool:{venue_id}",
        price=price,
        liquidity=10**24,
        fee_tier=fee_tier,
        stableswap=stableswap,
    )


def make_opportunity(buy=None, sell=None, pair_id=(WETH, USDC)):
    buy = buy or make_quote("sushiswap", VenueKind.CONSTANT_PRODUCT, 2 * SCALE)
    sell = sell or make_quote(
        "uniswap_v3", VenueKind.CONCENTRATED, 202 * SCALE // 100, fee_tier=500
    )
    return Opportunity(
        buy=buy,
        sell=sell,
        spread_ratio=Fraction(sell.price - buy.price, buy.price),
        profit_bps=100,
        pair_id=pair_id,
    )


class TestLoanSizing(unittest.TestCase):
    """Test decimals lookup and loan amounts."""

    def setUp(self):
        self.planner = ExecutionPlanner(None, DECIMALS)

    def test_decimals_lookup_ignores_case(self):
        self.assertEqual(self.planner.token_decimals(USDC.lower()), 6)
        self.assertEqual(self.planner.token_decimals(WETH.upper().replace("0X", "0x")), 18)

    def test_unknown_token_defaults_to_18(self):
        with self.assertLogs("flash_arb.planner", level="WARNING") as logs:
            decimals = self.planner.token_decimals("0x0000000000000000000000000000000000000001")
        self.assertEqual(decimals, 18)
        self.assertIn("assuming 18", logs.output[0])

    def test_loan_amount_eighteen_decimals(self):
        self.assertEqual(self.planner.loan_amount(DAI, 10000), 10000 * 10**18)

    def test_loan_amount_six_decimals(self):
        self.assertEqual(self.planner.loan_amount(USDC, 10000), 10000 * 10**6)


class TestBuildPlan(unittest.TestCase):
    """Test plan construction from opportunities."""

    def setUp(self):
        self.planner = ExecutionPlanner(None, DECIMALS)

    def test_borrows_token_b(self):
        plan = self.planner.build_plan(make_opportunity(), 1)

        self.assertEqual(plan.borrowed_token, USDC)
        self.assertEqual(plan.intermediate_token, WETH)
        self.assertEqual(plan.borrow_amount, 10**6)
        self.assertEqual(plan.leg1, ConstantProductRoute())
        self.assertEqual(plan.leg2, ConcentratedRoute(fee_tier=500))
        self.assertEqual((plan.min_out_leg1, plan.min_out_leg2), (0, 0))

    def test_concentrated_without_fee_tier(self):
        opp = make_opportunity(
            sell=make_quote("uniswap_v3", VenueKind.CONCENTRATED, 202 * SCALE // 100)
        )
        plan = self.planner.build_plan(opp, 1)
        self.assertEqual(plan.leg2, ConcentratedRoute(fee_tier=3000))

    def test_stableswap_coordinates_follow_direction(self):
        coords = StableswapCoords(pool=CURVE_3POOL, i=0, j=1)
        opp = make_opportunity(
            buy=make_quote("curve_3pool", VenueKind.STABLESWAP, 999_800, stableswap=coords),
            sell=make_quote("sushiswap", VenueKind.CONSTANT_PRODUCT, 1_001_000),
            pair_id=(DAI, USDC),
        )

        plan = self.planner.build_plan(opp, 1)

        # Leg 1 swaps USDC (j) back into DAI (i)
        self.assertEqual(plan.leg1, StableswapRoute(pool=CURVE_3POOL, i=1, j=0))

        flipped = make_opportunity(
            buy=make_quote("sushiswap", VenueKind.CONSTANT_PRODUCT, 999_000),
            sell=make_quote("curve_3pool", VenueKind.STABLESWAP, 999_800, stableswap=coords),
            pair_id=(DAI, USDC),
        )
        self.assertEqual(
            self.planner.build_plan(flipped, 1).leg2,
            StableswapRoute(pool=CURVE_3POOL, i=0, j=1),
        )

    def test_stableswap_without_coordinates(self):
        opp = make_opportunity(
            buy=make_quote("curve_3pool", VenueKind.STABLESWAP, SCALE),
            sell=make_quote("sushiswap", VenueKind.CONSTANT_PRODUCT, 2 * SCALE),
        )
        with self.assertRaises(PlanningError):
            self.planner.build_plan(opp, 1)

    def test_unknown_venue_kind(self):
        opp = make_opportunity(buy=make_quote("balancer", 9, SCALE))
        with self.assertRaises(UnsupportedVenueError):
            self.planner.build_plan(opp, 1)

    def test_slippage_bounds(self):
        plan = self.planner.build_plan(make_opportunity(), 1, slippage_bps=50)

        self.assertEqual(plan.min_out_leg1, 497_500)
        self.assertEqual(plan.min_out_leg2, 1_004_950)

    def test_zero_notional_rejected(self):
        with self.assertRaises(PlanningError):
            self.planner.build_plan(make_opportunity(), "0.0000001")

    def test_route_fee_bps(self):
        self.assertEqual(route_fee_bps(ConstantProductRoute()), 30)
        self.assertEqual(route_fee_bps(ConcentratedRoute(fee_tier=500)), 5)
        self.assertEqual(route_fee_bps(StableswapRoute(pool=CURVE_3POOL, i=0, j=1)), 4)


class TestDryRun(unittest.TestCase):
    """Test dry runs through the local settlement model."""

    def setUp(self):
        self.planner = ExecutionPlanner(None, DECIMALS)

    def test_profitable_plan_settles(self):
        opp = make_opportunity()
        plan = self.planner.build_plan(opp, 1)

        result = self.planner.dry_run(plan, opp)

        # 1 USDC -> 0.4985 WETH (30 bps) -> 1.006466 USDC (5 bps), less 500 premium
        self.assertEqual(result.state, SettlementState.SETTLED)
        self.assertEqual(result.leg1_out, 498_500)
        self.assertEqual(result.leg2_out, 1_006_466)
        self.assertEqual(result.profit, 5_966)

    def test_thin_spread_aborts(self):
        opp = make_opportunity(
            sell=make_quote(
                "uniswap_v3", VenueKind.CONCENTRATED, 2_001 * SCALE // 1000, fee_tier=3000
            )
        )
        plan = self.planner.build_plan(opp, 1)

        with self.assertRaises(SettlementAborted):
            self.planner.dry_run(plan, opp)

    def test_slippage_checked_in_dry_run(self):
        opp = make_opportunity()
        plan = self.planner.build_plan(opp, 1, slippage_bps=10)

        # The 30 bps leg 1 fee is more than the 10 bps allowance
        with self.assertRaises(SettlementAborted) as ctx:
            self.planner.dry_run(plan, opp)
        self.assertEqual(ctx.exception.leg, 1)


def make_web3():
    web3 = MagicMock()
    web3.to_hex = Web3.to_hex
    web3.eth.get_block.return_value = {"baseFeePerGas": 10**9}
    web3.eth.max_priority_fee = 10**9
    web3.eth.get_transaction_count.return_value = 7
    web3.eth.chain_id = 1
    web3.eth.block_number = 100
    web3.eth.send_raw_transaction.return_value = b"\x12" * 32
    web3.eth.wait_for_transaction_receipt.return_value = {
        "status": 1,
        "gasUsed": 250_000,
        "blockNumber": 19_000_000,
    }

    fn = web3.eth.contract.return_value.functions.executeArbitrage.return_value
    fn.estimate_gas.return_value = 200_000
    fn.build_transaction.side_effect = lambda params: {
        "to": CONTRACT,
        "data": "0x",
        "value": 0,
        "gas": params["gas"],
        "maxFeePerGas": params["maxFeePerGas"],
        "maxPriorityFeePerGas": params["maxPriorityFeePerGas"],
        "nonce": params["nonce"],
        "chainId": params["chainId"],
    }
    return web3, fn


class TestSubmit(unittest.TestCase):
    """Test public mempool submission."""

    def setUp(self):
        self.web3, self.fn = make_web3()
        self.planner = ExecutionPlanner(
            self.web3, DECIMALS, contract_address=CONTRACT, private_key=TEST_KEY
        )
        self.plan = self.planner.build_plan(make_opportunity(), 1)

    def test_gas_buffer(self):
        self.assertEqual(self.planner.estimate_gas(USDC, 10**6, b""), 260_000)

    def test_successful_submission(self):
        result = self.planner.submit(self.plan)

        self.assertTrue(result.success)
        self.assertEqual(result.tx_hash, "0x" + "12" * 32)
        self.assertEqual(result.gas_used, 250_000)
        self.assertEqual(result.block_number, 19_000_000)

        params = self.fn.build_transaction.call_args[0][0]
        self.assertEqual(params["gas"], 260_000)
        self.assertEqual(params["maxFeePerGas"], 3 * 10**9)
        self.assertEqual(params["nonce"], 7)
        self.assertEqual(params["from"], self.planner.account.address)
        self.web3.eth.send_raw_transaction.assert_called_once()
        self.assertEqual(self.planner.get_stats()["submissions_successful"], 1)

    def test_reverted_transaction(self):
        self.web3.eth.wait_for_transaction_receipt.return_value = {
            "status": 0,
            "gasUsed": 90_000,
            "blockNumber": 19_000_000,
        }

        with self.assertRaises(SubmissionError) as ctx:
            self.planner.submit(self.plan, venues=("sushiswap", "uniswap_v3:500"))

        error = ctx.exception
        self.assertEqual(error.tx_hash, "0x" + "12" * 32)
        self.assertEqual(error.asset, USDC)
        self.assertEqual(error.amount, 10**6)
        self.assertEqual(error.legs["venues"], ["sushiswap", "uniswap_v3:500"])
        self.assertEqual(self.planner.get_stats()["submissions_successful"], 0)

    def test_estimate_failure_not_sent(self):
        self.fn.estimate_gas.side_effect = Exception("execution reverted")

        with self.assertRaises(SubmissionError) as ctx:
            self.planner.submit(self.plan)

        self.assertIsNone(ctx.exception.tx_hash)
        self.assertEqual(ctx.exception.legs["leg1"], "CONSTANT_PRODUCT")
        self.web3.eth.send_raw_transaction.assert_not_called()

    def test_requires_account(self):
        planner = ExecutionPlanner(self.web3, DECIMALS, contract_address=CONTRACT)
        with self.assertRaises(SubmissionError):
            planner.submit(self.plan)

    def test_requires_contract(self):
        planner = ExecutionPlanner(self.web3, DECIMALS, private_key=TEST_KEY)
        with self.assertRaises(SubmissionError):
            planner.submit(self.plan)


@pytest.mark.asyncio
async def test_submit_private_targets_next_block():
    web3, _ = make_web3()
    planner = ExecutionPlanner(web3, DECIMALS, contract_address=CONTRACT, private_key=TEST_KEY)
    relay = AsyncMock()
    relay.send_bundle.return_value = {"result": {"bundleHash": "0xbundle"}}

    result = await planner.submit_private(planner.build_plan(make_opportunity(), 1), relay)

    assert result.success
    assert result.tx_hash == "0xbundle"
    signed_txs, target = relay.simulate.await_args[0]
    assert target == 101
    assert signed_txs[0].startswith("0x")
    relay.send_bundle.assert_awaited_once_with(signed_txs, 101)
    web3.eth.send_raw_transaction.assert_not_called()


@pytest.mark.asyncio
async def test_failed_simulation_not_sent():
    web3, _ = make_web3()
    planner = ExecutionPlanner(web3, DECIMALS, contract_address=CONTRACT, private_key=TEST_KEY)
    relay = AsyncMock()
    relay.simulate.side_effect = RelayError("eth_callBundle rejected", status_code=200)

    with pytest.raises(RelayError):
        await planner.submit_private(planner.build_plan(make_opportunity(), 1), relay)

    relay.send_bundle.assert_not_awaited()


@pytest.mark.asyncio
async def test_private_bundle_built_off_the_event_loop():
    web3, _ = make_web3()
    planner = ExecutionPlanner(web3, DECIMALS, contract_address=CONTRACT, private_key=TEST_KEY)
    relay = AsyncMock()
    relay.send_bundle.return_value = {"result": {"bundleHash": "0xbundle"}}
    build_threads = []
    build_transaction = planner.build_transaction

    def recording_build(plan):
        build_threads.append(threading.get_ident())
        return build_transaction(plan)

    planner.build_transaction = recording_build
    await planner.submit_private(planner.build_plan(make_opportunity(), 1), relay)

    assert len(build_threads) == 1
    assert build_threads[0] != threading.get_ident()
