# src/tally/ledger/policy.py
from __future__ import annotations

"""Transfer-policy gate.

The gate is a pure decision over (PolicyConfig, sender, recipient, amount).
The ledger consults it before committing any balance change.

Decision order (first failing check wins):
  1. paused                                    -> Paused
  2. recipient is the ledger's own account     -> SelfTransferForbidden
  3. trading disabled and neither side exempt  -> TradingDisabled
  4. limits in effect and neither side exempt:
       a. amount > max_tx_amount               -> ExceedsMaxTx
       b. recipient not a pool account and
          balance[recipient] + amount > max_wallet_amount
                                               -> ExceedsMaxWallet
  5. accept

Burns only consult step 1.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Set

from tally.runtime.errors import ErrorKind, LedgerError

Json = Dict[str, Any]

BalanceOf = Callable[[str], int]


def _as_int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _str_set(xs: Any) -> Set[str]:
    if not isinstance(xs, (list, tuple, set, frozenset)):
        return set()
    return {str(x).strip() for x in xs if isinstance(x, str) and str(x).strip()}


@dataclass(slots=True)
class PolicyConfig:
    """Administrator-owned transfer configuration."""

    paused: bool = False
    trading_enabled: bool = False
    limits_in_effect: bool = True
    max_tx_amount: int = 0
    max_wallet_amount: int = 0
    exempt_accounts: Set[str] = field(default_factory=set)
    pool_accounts: Set[str] = field(default_factory=set)

    def is_exempt(self, account: str) -> bool:
        return account in self.exempt_accounts

    def is_pool(self, account: str) -> bool:
        return account in self.pool_accounts

    def to_state(self) -> Json:
        return {
            "paused": bool(self.paused),
            "trading_enabled": bool(self.trading_enabled),
            "limits_in_effect": bool(self.limits_in_effect),
            "max_tx_amount": int(self.max_tx_amount),
            "max_wallet_amount": int(self.max_wallet_amount),
            "exempt_accounts": sorted(self.exempt_accounts),
            "pool_accounts": sorted(self.pool_accounts),
        }

    @classmethod
    def from_state(cls, state: Json) -> "PolicyConfig":
        st = state if isinstance(state, dict) else {}
        return cls(
            paused=bool(st.get("paused", False)),
            trading_enabled=bool(st.get("trading_enabled", False)),
            limits_in_effect=bool(st.get("limits_in_effect", True)),
            max_tx_amount=_as_int(st.get("max_tx_amount"), 0),
            max_wallet_amount=_as_int(st.get("max_wallet_amount"), 0),
            exempt_accounts=_str_set(st.get("exempt_accounts")),
            pool_accounts=_str_set(st.get("pool_accounts")),
        )

    @classmethod
    def steady_state(
        cls,
        *,
        max_tx_amount: int,
        max_wallet_amount: int,
        trading_enabled: bool = False,
        limits_in_effect: bool = True,
        exempt: Iterable[str] = (),
        pools: Iterable[str] = (),
    ) -> "PolicyConfig":
        return cls(
            paused=False,
            trading_enabled=bool(trading_enabled),
            limits_in_effect=bool(limits_in_effect),
            max_tx_amount=int(max_tx_amount),
            max_wallet_amount=int(max_wallet_amount),
            exempt_accounts=_str_set(list(exempt)),
            pool_accounts=_str_set(list(pools)),
        )


@dataclass(frozen=True, slots=True)
class GateVerdict:
    ok: bool
    code: str = ""
    reason: str = ""
    details: Optional[Json] = None


_ACCEPT = GateVerdict(ok=True)


def _deny(kind: ErrorKind, reason: str, details: Optional[Json] = None) -> GateVerdict:
    return GateVerdict(ok=False, code=kind.value, reason=reason, details=details)


def evaluate_transfer(
    cfg: PolicyConfig,
    *,
    ledger_account: str,
    sender: str,
    recipient: str,
    amount: int,
    balance_of: BalanceOf,
) -> GateVerdict:
    if cfg.paused:
        return _deny(ErrorKind.PAUSED, "ledger_paused")

    if recipient == ledger_account:
        return _deny(ErrorKind.SELF_TRANSFER_FORBIDDEN, "recipient_is_ledger", {"to": recipient})

    either_exempt = cfg.is_exempt(sender) or cfg.is_exempt(recipient)

    if not cfg.trading_enabled and not either_exempt:
        return _deny(ErrorKind.TRADING_DISABLED, "trading_not_enabled", {"from": sender, "to": recipient})

    if cfg.limits_in_effect and not either_exempt:
        amt = int(amount)
        if amt > int(cfg.max_tx_amount):
            return _deny(ErrorKind.EXCEEDS_MAX_TX, "amount_over_max_tx", {"amount": amt, "max": int(cfg.max_tx_amount)})

        if not cfg.is_pool(recipient):
            # Resulting balance, not the transfer amount: repeated small transfers cannot bypass the cap.
            resulting = int(balance_of(recipient)) + amt
            if resulting > int(cfg.max_wallet_amount):
                return _deny(
                    ErrorKind.EXCEEDS_MAX_WALLET,
                    "resulting_balance_over_max_wallet",
                    {"to": recipient, "resulting": resulting, "max": int(cfg.max_wallet_amount)},
                )

    return _ACCEPT


def evaluate_burn(cfg: PolicyConfig) -> GateVerdict:
    if cfg.paused:
        return _deny(ErrorKind.PAUSED, "ledger_paused")
    return _ACCEPT


def deny_if_rejected(verdict: GateVerdict) -> None:
    """Raise LedgerError for a rejecting verdict; no-op on accept."""
    if verdict.ok:
        return
    raise LedgerError(verdict.code, verdict.reason, verdict.details)
