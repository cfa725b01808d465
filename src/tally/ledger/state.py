# src/tally/ledger/state.py
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from tally.ledger.access import AccessControl
from tally.ledger.constants import (
    BPS_DENOMINATOR,
    DEFAULT_MAX_TX_BPS,
    DEFAULT_MAX_WALLET_BPS,
    LEDGER_ACCOUNT_ID,
    NULL_ACCOUNT,
)
from tally.ledger.policy import PolicyConfig, deny_if_rejected, evaluate_burn, evaluate_transfer
from tally.ledger.seeding import SeedDestination, normalize_destinations, plan_seed
from tally.runtime.errors import AccessError, ErrorKind, LedgerError
from tally.runtime.events import Event, EventBus
from tally.runtime.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("tally.ledger")

STATE_VERSION = 1


def _as_int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _require_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise LedgerError(ErrorKind.INVALID_AMOUNT, "amount_must_be_non_negative_int", {"amount": repr(amount)})
    return amount


def _require_account(account: Any, role: str) -> str:
    a = account.strip() if isinstance(account, str) else NULL_ACCOUNT
    if a == NULL_ACCOUNT:
        raise LedgerError(ErrorKind.INVALID_ACCOUNT, f"null_{role}")
    return a


def default_policy(*, total_supply: int, administrator: str, ledger_account: str) -> PolicyConfig:
    """Steady-state policy used when a deployment does not supply one."""
    return PolicyConfig.steady_state(
        max_tx_amount=int(total_supply) * DEFAULT_MAX_TX_BPS // BPS_DENOMINATOR,
        max_wallet_amount=int(total_supply) * DEFAULT_MAX_WALLET_BPS // BPS_DENOMINATOR,
        trading_enabled=False,
        limits_in_effect=True,
        exempt=[administrator, ledger_account],
    )


class Ledger:
    """Fixed-supply ledger.

    Every balance change runs through the transfer-policy gate and happens
    inside a journaled atomic scope: on any exception (gate rejection, balance
    check, failing event subscriber) the scope is unwound and no partial effect
    remains.

    Use Ledger.deploy() to create a seeded ledger. The constructor alone builds
    an empty, unseeded ledger (used by from_state()).
    """

    def __init__(
        self,
        *,
        administrator: str,
        account: str = LEDGER_ACCOUNT_ID,
        bus: Optional[EventBus] = None,
        policy: Optional[PolicyConfig] = None,
    ) -> None:
        self._init_empty(
            account=account,
            access=AccessControl(administrator, renounce_allowed=True, scope="ledger"),
            bus=bus,
            policy=policy,
        )

    def _init_empty(
        self,
        *,
        account: str,
        access: AccessControl,
        bus: Optional[EventBus],
        policy: Optional[PolicyConfig],
    ) -> None:
        self.account = _require_account(account, "ledger_account")
        self.access = access
        self.bus = bus if bus is not None else EventBus()
        self.policy = policy if policy is not None else PolicyConfig(limits_in_effect=False)

        self._balances: Dict[str, int] = {}
        self._allowances: Dict[str, Dict[str, int]] = {}
        self._total_supply = 0
        self._seeded = False

        self._journal: Optional[List[Callable[[], None]]] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    @classmethod
    def deploy(
        cls,
        *,
        administrator: str,
        destinations: Iterable[Any],
        total_supply: int,
        policy: Optional[PolicyConfig] = None,
        account: str = LEDGER_ACCOUNT_ID,
        remainder_account: Optional[str] = None,
        bus: Optional[EventBus] = None,
    ) -> "Ledger":
        """Build a ledger, run the one-time seeding mint, then switch to the steady-state policy."""
        ledger = cls(administrator=administrator, account=account, bus=bus, policy=PolicyConfig(limits_in_effect=False))
        ledger._mint_once(total_supply, normalize_destinations(destinations), remainder_account=remainder_account)
        ledger.policy = (
            policy
            if policy is not None
            else default_policy(
                total_supply=ledger.total_supply(),
                administrator=ledger.administrator,
                ledger_account=ledger.account,
            )
        )
        log_event(
            log,
            "ledger_deployed",
            account=ledger.account,
            administrator=ledger.administrator,
            total_supply=ledger.total_supply(),
            holders=len(ledger._balances),
        )
        return ledger

    def _mint_once(
        self,
        total_supply: int,
        destinations: List[SeedDestination],
        *,
        remainder_account: Optional[str] = None,
    ) -> None:
        if self._seeded:
            raise RuntimeError("ledger already seeded")

        plan = plan_seed(total_supply, destinations, remainder_account=remainder_account)

        with self.atomic():
            deny_if_rejected(evaluate_burn(self.policy))  # only the pause check applies to mint
            for acct, amount in plan.allocations:
                if acct == self.account:
                    raise LedgerError(ErrorKind.SELF_TRANSFER_FORBIDDEN, "seed_to_ledger_account", {"to": acct})
                self._set_balance(acct, self.balance_of(acct) + amount)
                self._emit("Transfer", **{"from": NULL_ACCOUNT, "to": acct, "amount": amount})
            self._set_total_supply(plan.allocated)
            self._seeded = True

        if plan.remainder:
            log_event(log, "seed_remainder_unallocated", remainder=plan.remainder, nominal=plan.nominal_supply)

    # ------------------------------------------------------------------
    # Atomic scope / journal
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator["Ledger"]:
        """Serialize and journal a group of mutations; unwind all of them on any exception."""
        with self._lock:
            outer = self._journal is None
            if outer:
                self._journal = []
            journal = self._journal
            assert journal is not None
            mark = len(journal)
            try:
                yield self
            except BaseException as e:
                undo = journal[mark:]
                del journal[mark:]
                for fn in reversed(undo):
                    fn()
                if outer and isinstance(e, (LedgerError, AccessError)):
                    log_event(log, "ledger_rejected", code=e.code, reason=e.reason, details=e.details or {})
                raise
            finally:
                if outer:
                    self._journal = None

    def on_rollback(self, fn: Callable[[], None]) -> None:
        """Register an undo step in the current atomic scope (collaborators keep their own state consistent)."""
        if self._journal is None:
            raise RuntimeError("on_rollback() requires an active atomic() scope")
        self._journal.append(fn)

    def _record(self, fn: Callable[[], None]) -> None:
        if self._journal is not None:
            self._journal.append(fn)

    def _set_balance(self, account: str, value: int) -> None:
        prev = self._balances.get(account)

        def _undo() -> None:
            if prev is None:
                self._balances.pop(account, None)
            else:
                self._balances[account] = prev

        self._record(_undo)
        if value:
            self._balances[account] = int(value)
        else:
            self._balances.pop(account, None)

    def _set_total_supply(self, value: int) -> None:
        prev = self._total_supply

        def _undo() -> None:
            self._total_supply = prev

        self._record(_undo)
        self._total_supply = int(value)

    def _set_allowance(self, owner: str, spender: str, value: int) -> None:
        prev = self._allowances.get(owner, {}).get(spender)

        def _undo() -> None:
            if prev is None:
                per = self._allowances.get(owner, {})
                per.pop(spender, None)
                if not per:
                    self._allowances.pop(owner, None)
            else:
                self._allowances.setdefault(owner, {})[spender] = prev

        self._record(_undo)
        if value:
            self._allowances.setdefault(owner, {})[spender] = int(value)
        else:
            per = self._allowances.get(owner, {})
            per.pop(spender, None)
            if not per:
                self._allowances.pop(owner, None)

    def _set_policy_attr(self, name: str, value: Any) -> None:
        prev = getattr(self.policy, name)
        if isinstance(prev, set):
            prev = set(prev)
        policy = self.policy

        def _undo() -> None:
            setattr(policy, name, prev)

        self._record(_undo)
        setattr(self.policy, name, value)

    def _emit(self, name: str, **fields: Any) -> Event:
        ev = self.bus.emit(name, **fields)
        self._record(lambda: self.bus.discard(ev))
        return ev

    def emit(self, name: str, **fields: Any) -> Event:
        """Emit an event that is discarded again if the enclosing atomic scope unwinds."""
        with self.atomic():
            return self._emit(name, **fields)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def administrator(self) -> str:
        return self.access.current_administrator()

    @property
    def seeded(self) -> bool:
        return self._seeded

    def balance_of(self, account: str) -> int:
        return int(self._balances.get(account, 0))

    def total_supply(self) -> int:
        return int(self._total_supply)

    def allowance(self, owner: str, spender: str) -> int:
        return int(self._allowances.get(owner, {}).get(spender, 0))

    def balances(self) -> Dict[str, int]:
        return dict(self._balances)

    def check_supply_invariant(self) -> bool:
        return sum(self._balances.values()) == self._total_supply

    # ------------------------------------------------------------------
    # Value movement
    # ------------------------------------------------------------------

    def transfer(self, sender: str, to: str, amount: int) -> None:
        with self.atomic():
            self._transfer(sender, to, amount)

    def _transfer(self, sender: str, to: str, amount: int) -> None:
        amt = _require_amount(amount)
        src = _require_account(sender, "sender")
        dst = _require_account(to, "recipient")

        deny_if_rejected(
            evaluate_transfer(
                self.policy,
                ledger_account=self.account,
                sender=src,
                recipient=dst,
                amount=amt,
                balance_of=self.balance_of,
            )
        )

        bal = self.balance_of(src)
        if amt > bal:
            raise LedgerError(ErrorKind.INSUFFICIENT_BALANCE, "amount_exceeds_balance", {"from": src, "balance": bal, "amount": amt})

        self._set_balance(src, bal - amt)
        self._set_balance(dst, self.balance_of(dst) + amt)
        self._emit("Transfer", **{"from": src, "to": dst, "amount": amt})

    def burn(self, holder: str, amount: int) -> None:
        with self.atomic():
            amt = _require_amount(amount)
            src = _require_account(holder, "holder")
            deny_if_rejected(evaluate_burn(self.policy))

            bal = self.balance_of(src)
            if amt > bal:
                raise LedgerError(ErrorKind.INSUFFICIENT_BALANCE, "amount_exceeds_balance", {"from": src, "balance": bal, "amount": amt})

            self._set_balance(src, bal - amt)
            self._set_total_supply(self._total_supply - amt)
            self._emit("Burn", **{"from": src, "amount": amt})

    def approve(self, owner: str, spender: str, amount: int) -> None:
        with self.atomic():
            amt = _require_amount(amount)
            o = _require_account(owner, "owner")
            s = _require_account(spender, "spender")
            self._set_allowance(o, s, amt)
            self._emit("Approval", owner=o, spender=s, amount=amt)

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> None:
        with self.atomic():
            amt = _require_amount(amount)
            s = _require_account(spender, "spender")
            o = _require_account(owner, "owner")

            allowed = self.allowance(o, s)
            if amt > allowed:
                raise LedgerError(
                    ErrorKind.INSUFFICIENT_ALLOWANCE,
                    "amount_exceeds_allowance",
                    {"owner": o, "spender": s, "allowance": allowed, "amount": amt},
                )
            self._set_allowance(o, s, allowed - amt)
            self._transfer(o, to, amt)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def _policy_changed(self, setting: str, **fields: Any) -> None:
        self._emit("PolicyChanged", setting=setting, **fields)
        log_event(log, "policy_changed", setting=setting, **fields)

    def set_paused(self, caller: str, paused: bool) -> None:
        with self.atomic():
            self.access.require_administrator(caller)
            self._set_policy_attr("paused", bool(paused))
            self._policy_changed("paused", value=bool(paused))

    def set_trading_enabled(self, caller: str, enabled: bool) -> None:
        with self.atomic():
            self.access.require_administrator(caller)
            self._set_policy_attr("trading_enabled", bool(enabled))
            self._policy_changed("trading_enabled", value=bool(enabled))

    def set_limits(self, caller: str, max_tx_amount: int, max_wallet_amount: int) -> None:
        with self.atomic():
            self.access.require_administrator(caller)
            max_tx = _require_amount(max_tx_amount)
            max_wallet = _require_amount(max_wallet_amount)
            self._set_policy_attr("max_tx_amount", max_tx)
            self._set_policy_attr("max_wallet_amount", max_wallet)
            self._policy_changed("limits", max_tx_amount=max_tx, max_wallet_amount=max_wallet)

    def set_limits_in_effect(self, caller: str, in_effect: bool) -> None:
        with self.atomic():
            self.access.require_administrator(caller)
            self._set_policy_attr("limits_in_effect", bool(in_effect))
            self._policy_changed("limits_in_effect", value=bool(in_effect))

    def set_limit_exempt(self, caller: str, account: str, exempt: bool) -> None:
        with self.atomic():
            self.access.require_administrator(caller)
            a = _require_account(account, "account")
            members = set(self.policy.exempt_accounts)
            if exempt:
                members.add(a)
            else:
                members.discard(a)
            self._set_policy_attr("exempt_accounts", members)
            self._policy_changed("exempt_accounts", account=a, value=bool(exempt))

    def set_pool_account(self, caller: str, account: str, is_pool: bool) -> None:
        with self.atomic():
            self.access.require_administrator(caller)
            a = _require_account(account, "account")
            members = set(self.policy.pool_accounts)
            if is_pool:
                members.add(a)
            else:
                members.discard(a)
            self._set_policy_attr("pool_accounts", members)
            self._policy_changed("pool_accounts", account=a, value=bool(is_pool))

    def transfer_administrator(self, caller: str, new_administrator: str) -> str:
        with self._lock:
            return self.access.transfer_administrator(caller, new_administrator)

    def renounce_administrator(self, caller: str) -> None:
        with self._lock:
            self.access.renounce_administrator(caller)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def to_state(self) -> Json:
        with self._lock:
            return {
                "state_version": STATE_VERSION,
                "account": self.account,
                "access": self.access.to_state(),
                "total_supply": int(self._total_supply),
                "seeded": bool(self._seeded),
                "balances": {k: int(v) for k, v in sorted(self._balances.items())},
                "allowances": {o: {s: int(v) for s, v in sorted(per.items())} for o, per in sorted(self._allowances.items())},
                "policy": self.policy.to_state(),
            }

    @classmethod
    def from_state(cls, state: Json, *, bus: Optional[EventBus] = None) -> "Ledger":
        if not isinstance(state, dict):
            raise ValueError("ledger state must be a dict")
        version = _as_int(state.get("state_version"), 0)
        if version != STATE_VERSION:
            raise ValueError(f"unsupported ledger state_version: {version}")

        access = state.get("access") if isinstance(state.get("access"), dict) else {}
        ledger = cls.__new__(cls)
        ledger._init_empty(
            account=str(state.get("account") or LEDGER_ACCOUNT_ID),
            access=AccessControl.from_state(access, scope="ledger"),
            bus=bus,
            policy=PolicyConfig.from_state(state.get("policy") or {}),
        )

        balances = state.get("balances") if isinstance(state.get("balances"), dict) else {}
        ledger._balances = {str(k): _as_int(v) for k, v in balances.items() if _as_int(v) > 0}

        allowances = state.get("allowances") if isinstance(state.get("allowances"), dict) else {}
        for owner, per in allowances.items():
            if not isinstance(per, dict):
                continue
            clean = {str(s): _as_int(v) for s, v in per.items() if _as_int(v) > 0}
            if clean:
                ledger._allowances[str(owner)] = clean

        ledger._total_supply = _as_int(state.get("total_supply"), 0)
        ledger._seeded = bool(state.get("seeded", True))

        if not ledger.check_supply_invariant():
            raise ValueError("ledger state violates supply invariant: sum(balances) != total_supply")
        return ledger
