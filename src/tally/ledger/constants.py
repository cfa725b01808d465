# src/tally/ledger/constants.py
from __future__ import annotations

"""Ledger monetary constants.

- Fixed supply, set once at deployment, never increased afterwards
- 18 fractional decimal digits, stored as integers
- Basis-point splits for the one-time seeding mint
"""

# Monetary precision (1 token = 1e18 units)
TOKEN_DECIMALS: int = 18
UNIT: int = 10**TOKEN_DECIMALS

# Nominal supply: 5,000,000,000 tokens
DEFAULT_SUPPLY_TOKENS: int = 5_000_000_000
DEFAULT_TOTAL_SUPPLY: int = DEFAULT_SUPPLY_TOKENS * UNIT

# 10,000 bps == 100%
BPS_DENOMINATOR: int = 10_000

# Day buckets for reward rate limits
SECONDS_PER_DAY: int = 86_400

# The void / null identifier. Never a real account.
NULL_ACCOUNT: str = ""

# Default account ids
LEDGER_ACCOUNT_ID: str = "LEDGER"
REWARD_ENGINE_ACCOUNT_ID: str = "REWARD_ENGINE"

# Default seeding split (v1): 25/30/15/10/10/5/5
DEFAULT_SEED_SPLIT = (
    ("treasury", 2_500),
    ("play_to_earn", 3_000),
    ("liquidity", 1_500),
    ("team", 1_000),
    ("marketing", 1_000),
    ("advisors", 500),
    ("reserve", 500),
)

# Steady-state caps applied right after seeding unless configured otherwise
DEFAULT_MAX_TX_BPS: int = 100  # 1% of supply
DEFAULT_MAX_WALLET_BPS: int = 200  # 2% of supply
