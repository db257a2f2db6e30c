"""
Flash-loan arbitrage scanner CLI.

Scans the configured pairs across venues, logs the best opportunity per pair
and either dry-runs it locally or submits it to the settlement contract.

Usage:
    python3 run_flash_arb.py
    python3 run_flash_arb.py --config configs/flash_arb.yaml --once
    python3 run_flash_arb.py --network polygon --debug
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from dotenv import load_dotenv

from . import logging_config
from .config import ConfigError, load_config
from .metrics import ScanMetrics
from .runner import ArbRunner
from .utils import get_logger

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Flash-loan cross-venue arbitrage scanner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Scan with the default config (dry run unless trade_live is set)
  python3 run_flash_arb.py

  # Single scan (for testing/CI)
  python3 run_flash_arb.py --config configs/flash_arb.yaml --once
        """,
    )
    parser.add_argument(
        "--config",
        default="configs/flash_arb.yaml",
        help="Path to config YAML file (default: configs/flash_arb.yaml)",
    )
    parser.add_argument(
        "--network",
        help="Chain to scan (overrides the config's network)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scan and exit (overrides config setting)",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Load environment variables from this file instead of ./.env",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose logging, including skipped venues",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only log warnings and errors",
    )
    return parser.parse_args(argv)


async def _run(runner: ArbRunner, metrics: ScanMetrics, metrics_port: Optional[int]) -> None:
    if metrics_port is not None:
        await metrics.start_server(port=metrics_port)
    try:
        await runner.run()
    finally:
        if metrics_port is not None:
            await metrics.stop_server()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)
    load_dotenv(args.env_file)

    if args.debug:
        logging_config.setup_debug()
    elif args.quiet:
        logging_config.setup_minimal()
    else:
        logging_config.setup()

    try:
        config = load_config(args.config, network=args.network)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    if args.once:
        config.once = True

    logger.info(
        f"Flash arb on {config.chain.name} | trade live: {config.trade_live} | "
        f"loan: {config.loan_notional} | min profit: {config.min_profit_bps} bps"
    )

    metrics = ScanMetrics()
    try:
        runner = ArbRunner.from_config(config, metrics)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Initialization failed: {e}", file=sys.stderr)
        return 1

    try:
        asyncio.run(_run(runner, metrics, config.metrics_port))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return 0
    except Exception as e:
        print(f"Runner failed: {e}", file=sys.stderr)
        return 1

    return 0
