"""
Common helpers shared across the flash-loan arbitrage engine.

Logging setup, address normalisation and small formatting helpers.
"""

import logging
from typing import Optional, Union

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def get_logger(name: str, level: Union[str, int] = logging.INFO) -> logging.Logger:
    """
    Get a logger with the structured format.

    Args:
        name: Logger name (typically __name__)
        level: Logging level

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    if logger.level == logging.NOTSET:
        logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        logger.addHandler(handler)

    return logger


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive address comparison (checksum casing is cosmetic)."""
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


def is_zero_address(addr: Optional[str]) -> bool:
    """True for None, empty or the all-zero address."""
    return not addr or int(addr, 16) == 0


def short_addr(addr: str) -> str:
    """Shorten an address for log lines: 0xA0b8…eB48."""
    if len(addr) <= 12:
        return addr
    return f"{addr[:6]}…{addr[-4:]}"
