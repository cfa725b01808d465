# src/tally/ledger/seeding.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from tally.ledger.constants import BPS_DENOMINATOR, NULL_ACCOUNT
from tally.runtime.errors import ErrorKind, LedgerError


@dataclass(frozen=True, slots=True)
class SeedDestination:
    account: str
    bps: int


@dataclass(frozen=True, slots=True)
class SeedPlan:
    allocations: List[Tuple[str, int]]
    nominal_supply: int
    allocated: int
    remainder: int


def normalize_destinations(raw: Iterable[Any]) -> List[SeedDestination]:
    """Accept SeedDestination, (account, bps) pairs or {"account", "bps"} dicts, preserving order."""
    out: List[SeedDestination] = []
    for rec in raw:
        if isinstance(rec, SeedDestination):
            out.append(rec)
        elif isinstance(rec, dict):
            out.append(SeedDestination(account=str(rec.get("account") or "").strip(), bps=rec.get("bps")))  # type: ignore[arg-type]
        elif isinstance(rec, (tuple, list)) and len(rec) == 2:
            out.append(SeedDestination(account=str(rec[0] or "").strip(), bps=rec[1]))
        else:
            raise LedgerError(ErrorKind.INVALID_SPLIT, "malformed_destination", {"entry": repr(rec)})
    return out


def plan_seed(
    total_supply: int,
    destinations: Sequence[SeedDestination],
    *,
    remainder_account: Optional[str] = None,
) -> SeedPlan:
    """Compute the one-time seeding split.

    Each share is floor(total_supply * bps / 10_000). Whatever is left over
    (integer division dust plus unassigned basis points) is not allocated,
    unless a remainder_account is given, which then receives it.
    """
    supply = int(total_supply)
    if supply < 0:
        raise LedgerError(ErrorKind.INVALID_AMOUNT, "negative_supply", {"total_supply": supply})

    cumulative = 0
    merged: Dict[str, int] = {}
    order: List[str] = []
    for i, d in enumerate(destinations):
        if not isinstance(d.bps, int) or isinstance(d.bps, bool) or d.bps < 0:
            raise LedgerError(ErrorKind.INVALID_SPLIT, "invalid_bps", {"index": i, "bps": repr(d.bps)})
        if d.account == NULL_ACCOUNT:
            raise LedgerError(ErrorKind.INVALID_ACCOUNT, "null_seed_destination", {"index": i})
        cumulative += d.bps
        if cumulative > BPS_DENOMINATOR:
            raise LedgerError(
                ErrorKind.INVALID_SPLIT,
                "bps_sum_exceeds_denominator",
                {"index": i, "cumulative": cumulative, "max": BPS_DENOMINATOR},
            )
        share = supply * d.bps // BPS_DENOMINATOR
        if d.account not in merged:
            merged[d.account] = 0
            order.append(d.account)
        merged[d.account] += share

    allocated = sum(merged.values())
    remainder = supply - allocated

    if remainder_account is not None and remainder > 0:
        ra = str(remainder_account).strip()
        if not ra:
            raise LedgerError(ErrorKind.INVALID_ACCOUNT, "null_remainder_account")
        if ra not in merged:
            merged[ra] = 0
            order.append(ra)
        merged[ra] += remainder
        allocated += remainder
        remainder = 0

    return SeedPlan(
        allocations=[(a, merged[a]) for a in order],
        nominal_supply=supply,
        allocated=allocated,
        remainder=remainder,
    )
