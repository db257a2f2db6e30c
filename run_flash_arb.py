#!/usr/bin/env python3
"""
Flash-loan arbitrage scanner.

Usage:
    python3 run_flash_arb.py
    python3 run_flash_arb.py --config configs/flash_arb.yaml --once
"""

import sys

from flash_arb.cli import main

if __name__ == "__main__":
    sys.exit(main())
