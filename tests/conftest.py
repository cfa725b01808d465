from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "tally" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from tally.ledger.constants import UNIT  # noqa: E402
from tally.ledger.policy import PolicyConfig  # noqa: E402
from tally.ledger.state import Ledger  # noqa: E402
from tally.rewards.engine import RewardEngine  # noqa: E402
from tally.runtime.clock import ManualClock  # noqa: E402

ADMIN = "admin"
SIGNER = "game-server"
ENGINE = "REWARD_ENGINE"

# 2023-11-14T22:13:20Z, mid-day so +/- a few hours stays in the same bucket
T0 = 1_700_000_000


def mk_ledger(
    *,
    supply_tokens: int = 1_000_000,
    seed: list | None = None,
    policy: PolicyConfig | None = None,
) -> Ledger:
    """Small ledger: admin holds everything unless a seed split is given."""
    return Ledger.deploy(
        administrator=ADMIN,
        destinations=seed if seed is not None else [(ADMIN, 10_000)],
        total_supply=supply_tokens * UNIT,
        policy=policy
        if policy is not None
        else PolicyConfig.steady_state(
            max_tx_amount=1_000 * UNIT,
            max_wallet_amount=2_000 * UNIT,
            trading_enabled=True,
            limits_in_effect=True,
            exempt=[ADMIN],
        ),
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def ledger() -> Ledger:
    return mk_ledger()


@pytest.fixture
def engine(ledger: Ledger, clock: ManualClock) -> RewardEngine:
    eng = RewardEngine(
        ledger,
        administrator=ADMIN,
        account=ENGINE,
        clock=clock,
        max_reward_per_call=5 * UNIT,
        max_daily_per_account=12 * UNIT,
        signers=[SIGNER],
    )
    ledger.set_limit_exempt(ADMIN, ENGINE, True)
    return eng


@pytest.fixture
def funded_engine(engine: RewardEngine) -> RewardEngine:
    engine.ledger.approve(ADMIN, ENGINE, 100 * UNIT)
    engine.top_up(ADMIN, 100 * UNIT)
    return engine
