"""
Logging configuration for the scan loop.

Usage:
    from flash_arb import logging_config
    logging_config.setup()
"""

import logging
import sys


def setup(level=logging.INFO):
    """
    Route all output through one root handler with a short format.

    - HH:MM:SS timestamps instead of full datetimes
    - RPC and HTTP client chatter quieted
    - Handlers that get_logger() attached to flash_arb loggers removed, so
      lines are not printed twice
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S"
        )
    )
    root.addHandler(console)

    for name in list(logging.root.manager.loggerDict):
        if name == "flash_arb" or name.startswith("flash_arb."):
            app_logger = logging.getLogger(name)
            app_logger.handlers.clear()
            app_logger.setLevel(logging.NOTSET)
            app_logger.propagate = True

    for noisy in ("web3", "urllib3", "aiohttp.access", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def setup_minimal():
    """Only warnings and errors."""
    setup(level=logging.WARNING)


def setup_debug():
    """Everything, including skipped venues and skipped ticks."""
    setup(level=logging.DEBUG)
