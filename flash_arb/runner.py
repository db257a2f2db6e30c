"""
Scan loop: one cycle scans every configured pair, logs the best
opportunity of each and hands it to the planner.

At most one cycle is in flight. Ticks fire on a fixed interval; a tick that
arrives while the previous cycle is still running is skipped, not queued.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

from web3 import Web3

from .config import ConfigError, FlashArbConfig
from .exceptions import (
    PlanningError,
    RelayError,
    SettlementAborted,
    SubmissionError,
)
from .metrics import ScanMetrics
from .planner import ExecutionPlanner
from .relay import FlashbotsRelay
from .scanner import PoolScanner
from .types import Opportunity, VenueQuote
from .utils import get_logger, short_addr

logger = get_logger(__name__)

SCAN_LOG_EVERY = 100


def connect(config: FlashArbConfig) -> Web3:
    """
    Connect to the chain's RPC and check it serves the configured chain.

    Raises:
        ConfigError: If the RPC URL is missing or points at another chain
    """
    rpc_url = config.rpc_url
    if not rpc_url:
        raise ConfigError(f"Missing env var: {config.chain.rpc_env}")

    if rpc_url.startswith("ws"):
        web3 = Web3(Web3.LegacyWebSocketProvider(rpc_url))
    else:
        web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 10}))

    chain_id = web3.eth.chain_id
    if chain_id != config.chain.chain_id:
        raise ConfigError(
            f"RPC serves chain {chain_id}, config expects {config.chain.chain_id} "
            f"({config.chain.name})"
        )
    logger.info(f"Connected to {config.chain.name} (block #{web3.eth.block_number:,})")
    return web3


class ArbRunner:
    """
    Drives scan cycles and submissions.

    Owns the only shared state of the process: scan counters and the latest
    quote set per pair.
    """

    def __init__(
        self,
        config: FlashArbConfig,
        scanner: PoolScanner,
        planner: ExecutionPlanner,
        relay: Optional[FlashbotsRelay] = None,
        metrics: Optional[ScanMetrics] = None,
    ):
        self.config = config
        self.scanner = scanner
        self.planner = planner
        self.relay = relay
        self.metrics = metrics

        self.busy = False
        self.scan_count = 0
        self.skipped_ticks = 0
        self.latest_quotes: Dict[Tuple[str, str], List[VenueQuote]] = {}

    @classmethod
    def from_config(
        cls, config: FlashArbConfig, metrics: Optional[ScanMetrics] = None
    ) -> "ArbRunner":
        web3 = connect(config)
        scanner = PoolScanner(web3, config.chain, config.fee_tiers)
        planner = ExecutionPlanner(
            web3,
            config.chain.token_decimals(),
            contract_address=config.contract_address,
            private_key=config.private_key,
            gas_buffer_pct=config.gas_buffer_pct,
        )
        relay = None
        if config.use_private_relay and planner.account is not None:
            relay = FlashbotsRelay(relay_url=config.relay_url)
            logger.info("Private relay enabled")
        return cls(config, scanner, planner, relay, metrics)

    async def tick(self) -> bool:
        """Run one cycle unless one is already running. Returns True if it ran."""
        if self.busy:
            self.skipped_ticks += 1
            logger.debug("Previous scan still running, tick skipped")
            return False

        self.busy = True
        try:
            await self.run_cycle()
        except Exception as e:
            logger.error(f"Scan {self.scan_count} failed: {e}", exc_info=True)
            if self.config.once:
                raise
        finally:
            self.busy = False
        return True

    async def run_cycle(self) -> None:
        self.scan_count += 1
        cycle_quotes: List[VenueQuote] = []
        cycle_best: List[Opportunity] = []

        for symbol_a, symbol_b in self.config.pairs:
            try:
                quotes, opportunities = await self.scanner.scan_pair(
                    symbol_a, symbol_b, self.config.min_profit_bps
                )
            except Exception as e:
                logger.error(f"Error scanning {symbol_a}/{symbol_b}: {e}")
                continue

            self.latest_quotes[(symbol_a, symbol_b)] = quotes
            cycle_quotes.extend(quotes)
            if not opportunities:
                continue

            best = opportunities[0]
            cycle_best.append(best)
            logger.info(f"Arb found: {symbol_a}/{symbol_b} {best.describe()}")
            await self.handle_opportunity(best)

        if self.metrics:
            cycle_best.sort(key=lambda o: o.profit_bps, reverse=True)
            self.metrics.record_scan(cycle_quotes, cycle_best)

        if self.scan_count % SCAN_LOG_EVERY == 0:
            logger.info(f"Scans completed: {self.scan_count} | {self.stats()}")

    def stats(self) -> Dict:
        stats = {"skipped_ticks": self.skipped_ticks, **self.planner.get_stats()}
        if self.metrics:
            stats.update(self.metrics.summary())
        return stats

    async def handle_opportunity(self, opportunity: Opportunity) -> Optional[str]:
        """
        Plan and settle (or dry-run) one opportunity.

        Failures are logged with venue and leg detail and never propagate
        into the scan loop.

        Returns:
            Outcome label: settled, dry_run, aborted or failed
        """
        venues = (opportunity.buy.label, opportunity.sell.label)
        outcome = "failed"
        try:
            plan = self.planner.build_plan(
                opportunity, self.config.loan_notional, self.config.slippage_bps
            )

            if not self.config.trade_live:
                result = self.planner.dry_run(plan, opportunity)
                logger.info(
                    f"[DRY RUN] {venues[0]} -> {venues[1]}: borrow {plan.borrow_amount} "
                    f"{short_addr(plan.borrowed_token)}, expected profit {result.profit}"
                )
                outcome = "dry_run"
            elif self.relay is not None:
                result = await self.planner.submit_private(plan, self.relay, venues)
                logger.info(f"Bundle submitted: {result.tx_hash}")
                outcome = "settled"
            else:
                loop = asyncio.get_event_loop()
                result = await loop.run_in_executor(
                    None, self.planner.submit, plan, venues
                )
                logger.info(f"Settlement confirmed: {result.tx_hash}")
                outcome = "settled"

        except SettlementAborted as e:
            state = e.state.name if e.state is not None else "?"
            leg = f" leg {e.leg}" if e.leg else ""
            logger.error(f"Settlement aborted at {state}{leg} ({venues[0]} -> {venues[1]}): {e}")
            outcome = "aborted"
        except SubmissionError as e:
            logger.error(
                f"Submission failed ({venues[0]} -> {venues[1]}, legs {e.legs}, "
                f"amount {e.amount}): {e}"
            )
        except (PlanningError, RelayError) as e:
            logger.error(f"Cannot execute {venues[0]} -> {venues[1]}: {e}")
        except Exception as e:
            logger.error(
                f"Unexpected error executing {venues[0]} -> {venues[1]}: {e}",
                exc_info=True,
            )

        if self.metrics:
            self.metrics.record_submission(outcome)
        return outcome

    async def run(self) -> None:
        """
        Scan immediately, then on every interval until cancelled.

        Runs a single cycle when config.once is set.
        """
        if self.config.once:
            await self.tick()
            return

        pending = set()
        try:
            while True:
                task = asyncio.ensure_future(self.tick())
                pending.add(task)
                task.add_done_callback(pending.discard)
                await asyncio.sleep(self.config.scan_interval_sec)
        finally:
            for task in pending:
                task.cancel()
