# src/tally/rewards/tiers.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from tally.ledger.constants import UNIT
from tally.runtime.errors import ErrorKind, RewardError

Json = Dict[str, Any]


@dataclass(frozen=True, slots=True)
class RewardTier:
    """Metrics up to and including `max_metric` earn `reward` units."""

    max_metric: int
    reward: int


# Lower metric is better (e.g. a finishing rank); anything above the last bound earns nothing.
DEFAULT_TIERS = (
    RewardTier(max_metric=10, reward=5 * UNIT),
    RewardTier(max_metric=50, reward=3 * UNIT),
    RewardTier(max_metric=100, reward=1 * UNIT),
)


def validate_tiers(tiers: Sequence[RewardTier]) -> None:
    """Bounds must strictly increase and rewards must not increase (step function is non-increasing)."""
    prev_bound: Optional[int] = None
    prev_reward: Optional[int] = None
    for t in tiers:
        if t.max_metric < 0 or t.reward < 0:
            raise ValueError(f"tier values must be non-negative: {t}")
        if prev_bound is not None and t.max_metric <= prev_bound:
            raise ValueError(f"tier bounds must strictly increase: {t.max_metric} <= {prev_bound}")
        if prev_reward is not None and t.reward > prev_reward:
            raise ValueError(f"tier rewards must not increase: {t.reward} > {prev_reward}")
        prev_bound, prev_reward = t.max_metric, t.reward


def require_metric(metric: Any) -> int:
    if isinstance(metric, bool) or not isinstance(metric, int) or metric < 0:
        raise RewardError(ErrorKind.INVALID_METRIC, "metric_must_be_non_negative_int", {"metric": repr(metric)})
    return metric


def reward_for(metric: int, tiers: Sequence[RewardTier] = DEFAULT_TIERS) -> int:
    m = require_metric(metric)
    for t in tiers:
        if m <= t.max_metric:
            return int(t.reward)
    return 0


def tier_table(tiers: Sequence[RewardTier] = DEFAULT_TIERS) -> List[Json]:
    out: List[Json] = []
    lo = 0
    for t in tiers:
        out.append({"min_metric": lo, "max_metric": t.max_metric, "reward": t.reward, "reward_tokens": t.reward / UNIT})
        lo = t.max_metric + 1
    out.append({"min_metric": lo, "max_metric": None, "reward": 0, "reward_tokens": 0.0})
    return out
