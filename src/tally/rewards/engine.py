# src/tally/rewards/engine.py
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from tally.ledger.access import AccessControl
from tally.ledger.constants import NULL_ACCOUNT, REWARD_ENGINE_ACCOUNT_ID, UNIT
from tally.ledger.state import Ledger
from tally.rewards.tiers import DEFAULT_TIERS, RewardTier, require_metric, reward_for, validate_tiers
from tally.runtime.clock import Clock, SystemClock, day_index
from tally.runtime.errors import ErrorKind, RewardError, TallyError
from tally.runtime.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("tally.rewards")

STATE_VERSION = 1

DEFAULT_MAX_REWARD_PER_CALL: int = 5 * UNIT
DEFAULT_MAX_DAILY_PER_ACCOUNT: int = 25 * UNIT


def _as_int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_account(v: Any) -> str:
    return v.strip() if isinstance(v, str) else NULL_ACCOUNT


def _require_cap(v: Any, name: str) -> int:
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise RewardError(ErrorKind.INVALID_AMOUNT, f"{name}_must_be_non_negative_int", {name: repr(v)})
    return v


@dataclass(frozen=True, slots=True)
class RewardPaid:
    account: str
    metric: int
    amount: int
    day: int
    ts: int
    signer: str

    def to_json(self) -> Json:
        return {
            "account": self.account,
            "metric": self.metric,
            "amount": self.amount,
            "day": self.day,
            "ts": self.ts,
            "signer": self.signer,
        }


class RewardEngine:
    """Tiered reward payouts drawn from the engine's own ledger balance.

    Payout order:
      signer -> account -> tier amount -> per-call cap -> daily cap -> pool
      -> ledger transfer -> daily bookkeeping -> RewardPaid event

    Checks, transfer and bookkeeping all run in one ledger atomic scope. The
    day bucket is only written after the ledger transfer succeeded, so a failed
    transfer (gate rejection, failing subscriber) never consumes a player's
    daily allowance.
    """

    def __init__(
        self,
        ledger: Ledger,
        *,
        administrator: str,
        account: str = REWARD_ENGINE_ACCOUNT_ID,
        clock: Optional[Clock] = None,
        tiers: Sequence[RewardTier] = DEFAULT_TIERS,
        max_reward_per_call: int = DEFAULT_MAX_REWARD_PER_CALL,
        max_daily_per_account: int = DEFAULT_MAX_DAILY_PER_ACCOUNT,
        signers: Iterable[str] = (),
    ) -> None:
        acct = _as_account(account)
        if not acct:
            raise RewardError(ErrorKind.INVALID_ACCOUNT, "null_engine_account")
        validate_tiers(tiers)

        self.ledger = ledger
        self.account = acct
        self.access = AccessControl(administrator, renounce_allowed=False, scope="rewards")
        self.clock: Clock = clock if clock is not None else SystemClock()
        self.tiers = tuple(tiers)

        self._signers: Set[str] = {s for s in (_as_account(x) for x in signers) if s}
        self._max_reward_per_call = _require_cap(max_reward_per_call, "max_reward_per_call")
        self._max_daily_per_account = _require_cap(max_daily_per_account, "max_daily_per_account")
        # account -> day index -> cumulative amount claimed that day
        self._claimed: Dict[str, Dict[int, int]] = {}

        # guarded by the ledger lock
        self._active_thread: Optional[int] = None

    # ------------------------------------------------------------------
    # Serialization guard
    # ------------------------------------------------------------------

    @contextmanager
    def _non_reentrant(self, op: str) -> Iterator[None]:
        """Run `op` inside one ledger atomic scope; reject a nested call from the same thread.

        The ledger lock is the engine's only lock: engine calls and ledger
        mutations share one lock order, and checks read the state that commits.
        """
        with self.ledger.atomic():
            me = threading.get_ident()
            if self._active_thread == me:
                raise RewardError(ErrorKind.REENTRANT_CALL, "call_in_progress", {"op": op})
            self._active_thread = me
            try:
                yield
            finally:
                self._active_thread = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def administrator(self) -> str:
        return self.access.current_administrator()

    def reward_for(self, metric: int) -> int:
        return reward_for(metric, self.tiers)

    def is_signer(self, account: str) -> bool:
        return _as_account(account) in self._signers

    def signers(self) -> List[str]:
        return sorted(self._signers)

    def caps(self) -> Json:
        return {
            "max_reward_per_call": int(self._max_reward_per_call),
            "max_daily_per_account": int(self._max_daily_per_account),
        }

    def pool_balance(self) -> int:
        return self.ledger.balance_of(self.account)

    def claimed(self, account: str, day: Optional[int] = None) -> int:
        d = day_index(self.clock.now()) if day is None else int(day)
        return int(self._claimed.get(_as_account(account), {}).get(d, 0))

    def remaining_today(self, account: str) -> int:
        return max(0, int(self._max_daily_per_account) - self.claimed(account))

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    def reward_player(self, caller: str, account: str, metric: int) -> RewardPaid:
        with self._non_reentrant("reward_player"):
            try:
                paid = self._reward_player(_as_account(caller), _as_account(account), metric)
            except TallyError as e:
                log_event(
                    log,
                    "reward_rejected",
                    code=e.code,
                    reason=e.reason,
                    signer=_as_account(caller),
                    account=_as_account(account),
                    metric=repr(metric),
                )
                raise
        log_event(log, "reward_paid", **paid.to_json())
        return paid

    def _reward_player(self, signer: str, account: str, metric: Any) -> RewardPaid:
        if signer not in self._signers:
            raise RewardError(ErrorKind.UNAUTHORIZED_CALLER, "signer_required", {"caller": signer})
        if account == NULL_ACCOUNT:
            raise RewardError(ErrorKind.INVALID_ACCOUNT, "null_account")

        m = require_metric(metric)
        amount = reward_for(m, self.tiers)
        if amount == 0:
            raise RewardError(ErrorKind.NO_REWARD, "metric_outside_reward_tiers", {"metric": m})

        if amount > self._max_reward_per_call:
            raise RewardError(
                ErrorKind.EXCEEDS_PER_CALL_CAP,
                "amount_over_per_call_cap",
                {"amount": amount, "max": int(self._max_reward_per_call)},
            )

        now = int(self.clock.now())
        day = day_index(now)
        already = self._claimed.get(account, {}).get(day, 0)
        new_total = already + amount
        if new_total > self._max_daily_per_account:
            raise RewardError(
                ErrorKind.EXCEEDS_DAILY_CAP,
                "daily_total_over_cap",
                {"account": account, "day": day, "claimed": already, "amount": amount, "max": int(self._max_daily_per_account)},
            )

        pool = self.pool_balance()
        if pool < amount:
            raise RewardError(ErrorKind.INSUFFICIENT_POOL, "pool_below_amount", {"pool": pool, "amount": amount})

        paid = RewardPaid(account=account, metric=m, amount=amount, day=day, ts=now, signer=signer)
        with self.ledger.atomic():
            self.ledger.transfer(self.account, account, amount)
            self._commit_claim(account, day, new_total)
            self.ledger.emit("RewardPaid", **paid.to_json())
        return paid

    def _commit_claim(self, account: str, day: int, total: int) -> None:
        per = self._claimed.setdefault(account, {})
        prev = per.get(day)
        per[day] = int(total)

        def _undo() -> None:
            if prev is None:
                per.pop(day, None)
                if not per:
                    self._claimed.pop(account, None)
            else:
                per[day] = prev

        self.ledger.on_rollback(_undo)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_signer(self, caller: str, account: str, allowed: bool) -> None:
        with self._non_reentrant("set_signer"):
            self.access.require_administrator(caller)
            a = _as_account(account)
            if not a:
                raise RewardError(ErrorKind.INVALID_ACCOUNT, "null_signer")
            if allowed:
                self._signers.add(a)
            else:
                self._signers.discard(a)
            log_event(log, "signer_set", account=a, allowed=bool(allowed))

    def set_caps(self, caller: str, max_reward_per_call: int, max_daily_per_account: int) -> None:
        with self._non_reentrant("set_caps"):
            self.access.require_administrator(caller)
            per_call = _require_cap(max_reward_per_call, "max_reward_per_call")
            daily = _require_cap(max_daily_per_account, "max_daily_per_account")
            self._max_reward_per_call = per_call
            self._max_daily_per_account = daily
            log_event(log, "caps_set", max_reward_per_call=per_call, max_daily_per_account=daily)

    def top_up(self, caller: str, amount: int) -> None:
        """Pull `amount` from the administrator's balance using the allowance they granted the engine."""
        with self._non_reentrant("top_up"):
            self.access.require_administrator(caller)
            admin = self.administrator
            self.ledger.transfer_from(self.account, admin, self.account, amount)
            log_event(log, "pool_topped_up", administrator=admin, amount=int(amount), pool=self.pool_balance())

    def rescue(self, caller: str, to: str, amount: int) -> None:
        with self._non_reentrant("rescue"):
            self.access.require_administrator(caller)
            self.ledger.transfer(self.account, to, amount)
            log_event(log, "pool_rescued", to=_as_account(to), amount=int(amount), pool=self.pool_balance())

    def transfer_administrator(self, caller: str, new_administrator: str) -> str:
        with self._non_reentrant("transfer_administrator"):
            return self.access.transfer_administrator(caller, new_administrator)

    def renounce_administrator(self, caller: str) -> None:
        with self._non_reentrant("renounce_administrator"):
            self.access.renounce_administrator(caller)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def to_state(self) -> Json:
        return {
            "state_version": STATE_VERSION,
            "account": self.account,
            "access": self.access.to_state(),
            "signers": self.signers(),
            "max_reward_per_call": int(self._max_reward_per_call),
            "max_daily_per_account": int(self._max_daily_per_account),
            "claimed": {
                acct: {str(d): int(v) for d, v in sorted(per.items())}
                for acct, per in sorted(self._claimed.items())
            },
        }

    @classmethod
    def from_state(
        cls,
        state: Json,
        *,
        ledger: Ledger,
        clock: Optional[Clock] = None,
        tiers: Sequence[RewardTier] = DEFAULT_TIERS,
    ) -> "RewardEngine":
        if not isinstance(state, dict):
            raise ValueError("reward engine state must be a dict")
        version = _as_int(state.get("state_version"), 0)
        if version != STATE_VERSION:
            raise ValueError(f"unsupported reward engine state_version: {version}")

        access = state.get("access") if isinstance(state.get("access"), dict) else {}
        engine = cls(
            ledger,
            administrator=str(access.get("administrator") or ""),
            account=str(state.get("account") or REWARD_ENGINE_ACCOUNT_ID),
            clock=clock,
            tiers=tiers,
            max_reward_per_call=_as_int(state.get("max_reward_per_call"), DEFAULT_MAX_REWARD_PER_CALL),
            max_daily_per_account=_as_int(state.get("max_daily_per_account"), DEFAULT_MAX_DAILY_PER_ACCOUNT),
            signers=[str(s) for s in state.get("signers") or [] if isinstance(s, str)],
        )
        claimed = state.get("claimed") if isinstance(state.get("claimed"), dict) else {}
        for acct, per in claimed.items():
            if not isinstance(per, dict):
                continue
            clean = {_as_int(d): _as_int(v) for d, v in per.items() if _as_int(v) > 0}
            if clean:
                engine._claimed[str(acct)] = clean
        return engine
