"""
Execution planner: turns a ranked Opportunity into a settlement call.

Sizes the loan, picks the leg routes, encodes the plan and submits the
executeArbitrage transaction (public mempool or private relay). A plan can
also be dry-run through the local settlement model first.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .abi import FLASH_ARB_CONTRACT_ABI
from .codec import encode_plan
from .exceptions import PlanningError, SubmissionError, UnsupportedVenueError
from .opportunity_math import (
    apply_bps_haircut,
    convert_at_price,
    invert_price,
    to_base_units,
)
from .settlement import (
    Ledger,
    LoanFacility,
    QuotedPriceVenue,
    SettlementEngine,
)
from .types import (
    ConcentratedRoute,
    ConstantProductRoute,
    LegRoute,
    Opportunity,
    SettlementPlan,
    SettlementResult,
    StableswapRoute,
    VenueKind,
    VenueQuote,
)
from .utils import get_logger, short_addr

logger = get_logger(__name__)

DEFAULT_DECIMALS = 18
DEFAULT_FEE_TIER = 3000
DEFAULT_GAS_BUFFER_PCT = 30

# Fee a leg pays when dry-running, by venue kind
CONSTANT_PRODUCT_FEE_BPS = 30
STABLESWAP_FEE_BPS = 4

# Inventory each simulated venue holds of every token
DRY_RUN_INVENTORY = 2**128


@dataclass
class ExecutionResult:
    """Result of submitting a settlement transaction."""

    success: bool
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    block_number: Optional[int] = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0


def route_fee_bps(route: LegRoute) -> int:
    """Swap fee of a leg route in basis points."""
    if isinstance(route, ConcentratedRoute):
        # Fee tiers are hundredths of a basis point
        return route.fee_tier // 100
    if isinstance(route, StableswapRoute):
        return STABLESWAP_FEE_BPS
    return CONSTANT_PRODUCT_FEE_BPS


class ExecutionPlanner:
    """
    Builds settlement plans and submits them to the settlement contract.

    Args:
        web3: Web3 instance connected to the chain
        token_decimals: Address -> decimals lookup (case-insensitive)
        contract_address: Deployed settlement contract, required to submit
        private_key: Operator key, required to submit
        gas_buffer_pct: Headroom added to the gas estimate
    """

    def __init__(
        self,
        web3: Optional[Web3],
        token_decimals: Mapping[str, int],
        contract_address: Optional[str] = None,
        private_key: Optional[str] = None,
        gas_buffer_pct: int = DEFAULT_GAS_BUFFER_PCT,
    ):
        self.web3 = web3
        self._decimals: Dict[str, int] = {
            addr.lower(): int(dec) for addr, dec in token_decimals.items()
        }
        self.contract_address = contract_address
        self.gas_buffer_pct = gas_buffer_pct

        self.account: Optional[LocalAccount] = None
        if private_key:
            self.account = Account.from_key(private_key)
            logger.info(f"Loaded operator account: {self.account.address}")

        self.submissions_attempted = 0
        self.submissions_successful = 0

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def venue_kind_for(self, quote: VenueQuote) -> VenueKind:
        """
        Map a quote to the settlement contract's venue type.

        Raises:
            UnsupportedVenueError: If the venue has no settlement route
        """
        try:
            return VenueKind(quote.kind)
        except ValueError:
            raise UnsupportedVenueError(
                f"Venue {quote.venue_id} has no settlement route (kind={quote.kind!r})",
                venue_kind=quote.kind,
            ) from None

    def token_decimals(self, token: str) -> int:
        """Decimals for a token, or 18 when the token is not in the lookup."""
        decimals = self._decimals.get(token.lower())
        if decimals is None:
            logger.warning(
                f"No decimals configured for {token}, assuming {DEFAULT_DECIMALS}"
            )
            return DEFAULT_DECIMALS
        return decimals

    def loan_amount(self, asset: str, notional) -> int:
        """Notional in whole tokens -> borrow amount in base units."""
        return to_base_units(notional, self.token_decimals(asset))

    def route_for(self, quote: VenueQuote, selling_token_a: bool) -> LegRoute:
        """
        Leg route through the quote's venue.

        Args:
            selling_token_a: True when the leg swaps tokenA -> tokenB
        """
        kind = self.venue_kind_for(quote)
        if kind is VenueKind.CONSTANT_PRODUCT:
            return ConstantProductRoute()
        if kind is VenueKind.CONCENTRATED:
            return ConcentratedRoute(fee_tier=quote.fee_tier or DEFAULT_FEE_TIER)

        coords = quote.stableswap
        if coords is None:
            raise PlanningError(
                f"Stableswap quote from {quote.venue_id} carries no pool coordinates"
            )
        if selling_token_a:
            return StableswapRoute(pool=coords.pool, i=coords.i, j=coords.j)
        return StableswapRoute(pool=coords.pool, i=coords.j, j=coords.i)

    def build_plan(
        self,
        opportunity: Opportunity,
        notional,
        slippage_bps: Optional[int] = None,
    ) -> SettlementPlan:
        """
        Build the settlement plan for an opportunity.

        The loan is taken in tokenB, the token prices are quoted in. Leg 1
        buys tokenA on the cheap venue, leg 2 sells it back on the dear one.

        Args:
            notional: Loan size in whole units of tokenB
            slippage_bps: When set, each leg's minimum output is its quoted
                output less this many basis points. When None both minimums
                are zero and the repayment check is the only guard.

        Raises:
            UnsupportedVenueError: If either venue cannot be routed
            PlanningError: If the plan cannot be built
        """
        borrowed = opportunity.token_b
        intermediate = opportunity.token_a
        amount = self.loan_amount(borrowed, notional)
        if amount <= 0:
            raise PlanningError(f"Loan notional {notional} sizes to zero base units")

        leg1 = self.route_for(opportunity.buy, selling_token_a=False)
        leg2 = self.route_for(opportunity.sell, selling_token_a=True)

        min_out_1 = min_out_2 = 0
        if slippage_bps is not None:
            expected_1 = convert_at_price(amount, invert_price(opportunity.buy.price))
            expected_2 = convert_at_price(expected_1, opportunity.sell.price)
            min_out_1 = apply_bps_haircut(expected_1, slippage_bps)
            min_out_2 = apply_bps_haircut(expected_2, slippage_bps)

        plan = SettlementPlan(
            leg1=leg1,
            leg2=leg2,
            borrowed_token=Web3.to_checksum_address(borrowed),
            intermediate_token=Web3.to_checksum_address(intermediate),
            borrow_amount=amount,
            min_out_leg1=min_out_1,
            min_out_leg2=min_out_2,
        )
        logger.debug(f"Built plan {plan.leg_summary()} for {opportunity.describe()}")
        return plan

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    def dry_run(
        self, plan: SettlementPlan, opportunity: Opportunity, premium_bps: int = 5
    ) -> SettlementResult:
        """
        Run a plan through the local settlement model at the quoted prices.

        Each leg fills at its venue's quote less the venue's fee.

        Raises:
            SettlementAborted: If the plan would not settle
        """
        ledger = Ledger()
        operator = self.account.address if self.account else "dry-run:operator"
        router = QuotedPriceVenue("dry-run:router")
        facility = LoanFacility(ledger, "dry-run:pool", premium_bps=premium_bps)
        engine = SettlementEngine(
            ledger,
            "dry-run:engine",
            operator,
            facility,
            {kind: router for kind in VenueKind},
        )

        router.set_price(
            plan.leg1,
            plan.borrowed_token,
            plan.intermediate_token,
            invert_price(opportunity.buy.price),
            route_fee_bps(plan.leg1),
        )
        router.set_price(
            plan.leg2,
            plan.intermediate_token,
            plan.borrowed_token,
            opportunity.sell.price,
            route_fee_bps(plan.leg2),
        )
        ledger.mint(plan.borrowed_token, facility.address, plan.borrow_amount)
        for token in (plan.borrowed_token, plan.intermediate_token):
            ledger.mint(token, router.address, DRY_RUN_INVENTORY)

        return engine.execute_arbitrage(
            operator, plan.borrowed_token, plan.borrow_amount, encode_plan(plan)
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _contract(self):
        if self.web3 is None or not self.contract_address:
            raise SubmissionError("No settlement contract configured")
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.contract_address),
            abi=FLASH_ARB_CONTRACT_ABI,
        )

    def _require_account(self) -> LocalAccount:
        if self.account is None:
            raise SubmissionError("No operator account loaded (missing private key)")
        return self.account

    def estimate_gas(self, asset: str, amount: int, encoded: bytes) -> int:
        """Gas estimate for executeArbitrage plus the configured buffer."""
        account = self._require_account()
        estimate = (
            self._contract()
            .functions.executeArbitrage(asset, amount, encoded)
            .estimate_gas({"from": account.address})
        )
        return estimate * (100 + self.gas_buffer_pct) // 100

    def build_transaction(self, plan: SettlementPlan) -> dict:
        """Signed-ready executeArbitrage transaction with EIP-1559 fees."""
        account = self._require_account()
        encoded = encode_plan(plan)
        gas = self.estimate_gas(plan.borrowed_token, plan.borrow_amount, encoded)

        base_fee = self.web3.eth.get_block("latest")["baseFeePerGas"]
        priority_fee = self.web3.eth.max_priority_fee

        return (
            self._contract()
            .functions.executeArbitrage(plan.borrowed_token, plan.borrow_amount, encoded)
            .build_transaction(
                {
                    "from": account.address,
                    "nonce": self.web3.eth.get_transaction_count(account.address),
                    "gas": gas,
                    "maxFeePerGas": 2 * base_fee + priority_fee,
                    "maxPriorityFeePerGas": priority_fee,
                    "chainId": self.web3.eth.chain_id,
                }
            )
        )

    def sign(self, tx: dict) -> bytes:
        signed = self._require_account().sign_transaction(tx)
        return bytes(signed.raw_transaction)

    def _submission_error(
        self,
        message: str,
        plan: SettlementPlan,
        venues: Optional[Tuple[str, str]],
        tx_hash: Optional[str] = None,
    ) -> SubmissionError:
        legs = plan.leg_summary()
        if venues:
            legs["venues"] = list(venues)
        return SubmissionError(
            message,
            asset=plan.borrowed_token,
            amount=plan.borrow_amount,
            legs=legs,
            tx_hash=tx_hash,
        )

    def submit(
        self,
        plan: SettlementPlan,
        venues: Optional[Tuple[str, str]] = None,
        timeout: int = 120,
    ) -> ExecutionResult:
        """
        Send executeArbitrage to the public mempool and wait for the receipt.

        Never retried: a failed settlement is reported, not resent at
        stale prices.

        Args:
            venues: (buy venue, sell venue) labels for error context

        Raises:
            SubmissionError: If estimation, sending or the transaction fails
        """
        start_time = time.time()
        self.submissions_attempted += 1
        logger.info(
            f"Submitting settlement: {plan.borrow_amount} {short_addr(plan.borrowed_token)} "
            f"via {plan.leg1.kind.name} -> {plan.leg2.kind.name}"
        )

        try:
            raw = self.sign(self.build_transaction(plan))
            tx_hash = self.web3.to_hex(self.web3.eth.send_raw_transaction(raw))
        except SubmissionError:
            raise
        except Exception as e:
            raise self._submission_error(
                f"Settlement submission failed: {e}", plan, venues
            ) from e

        logger.info(f"Waiting for tx {tx_hash}...")
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except Exception as e:
            raise self._submission_error(
                f"No receipt for {tx_hash}: {e}", plan, venues, tx_hash
            ) from e

        if receipt["status"] == 0:
            raise self._submission_error(
                f"Settlement transaction {tx_hash} reverted", plan, venues, tx_hash
            )

        self.submissions_successful += 1
        execution_time_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Settlement confirmed in block {receipt['blockNumber']} "
            f"(gas {receipt['gasUsed']}, {execution_time_ms:.0f}ms)"
        )
        return ExecutionResult(
            success=True,
            tx_hash=tx_hash,
            gas_used=receipt["gasUsed"],
            block_number=receipt["blockNumber"],
            execution_time_ms=execution_time_ms,
        )

    async def submit_private(
        self,
        plan: SettlementPlan,
        relay,
        venues: Optional[Tuple[str, str]] = None,
        blocks_ahead: int = 1,
    ) -> ExecutionResult:
        """
        Send the settlement as a single-transaction bundle via a private relay.

        The bundle is simulated first; a failed simulation is not sent.

        Raises:
            SubmissionError: If building or signing fails
            RelayError: If the relay rejects the simulation or the bundle
        """
        start_time = time.time()
        self.submissions_attempted += 1

        loop = asyncio.get_event_loop()
        try:
            raw, block = await loop.run_in_executor(None, self._signed_bundle_tx, plan)
        except SubmissionError:
            raise
        except Exception as e:
            raise self._submission_error(
                f"Settlement bundle could not be built: {e}", plan, venues
            ) from e

        signed_txs = [Web3.to_hex(raw)]
        await relay.simulate(signed_txs, block + blocks_ahead)
        response = await relay.send_bundle(signed_txs, block + blocks_ahead)

        self.submissions_successful += 1
        bundle_hash = (response.get("result") or {}).get("bundleHash")
        logger.info(f"Bundle {bundle_hash} sent for block {block + blocks_ahead}")
        return ExecutionResult(
            success=True,
            tx_hash=bundle_hash,
            execution_time_ms=(time.time() - start_time) * 1000,
        )

    def _signed_bundle_tx(self, plan: SettlementPlan) -> Tuple[bytes, int]:
        return self.sign(self.build_transaction(plan)), self.web3.eth.block_number

    def get_stats(self) -> Dict:
        return {
            "submissions_attempted": self.submissions_attempted,
            "submissions_successful": self.submissions_successful,
        }
