# src/tally/ledger/access.py
from __future__ import annotations

import logging

from tally.ledger.constants import NULL_ACCOUNT
from tally.runtime.errors import AccessError, ErrorKind
from tally.runtime.structured_logging import log_event

log = logging.getLogger("tally.access")


def _as_account(v: object) -> str:
    return str(v).strip() if isinstance(v, str) else NULL_ACCOUNT


class AccessControl:
    """Single-administrator access control.

    `renounce_allowed=False` makes the role permanently recoverable: handing it
    to the null account fails with OwnershipRenounceDisabled.
    """

    def __init__(self, administrator: str, *, renounce_allowed: bool = True, scope: str = "") -> None:
        admin = _as_account(administrator)
        if not admin:
            raise AccessError(ErrorKind.INVALID_ACCOUNT, "administrator_required", {"scope": scope})
        self._administrator = admin
        self.renounce_allowed = bool(renounce_allowed)
        self.scope = scope

    def current_administrator(self) -> str:
        return self._administrator

    def is_administrator(self, caller: str) -> bool:
        c = _as_account(caller)
        return bool(c) and c == self._administrator

    def require_administrator(self, caller: str) -> None:
        if not self.is_administrator(caller):
            raise AccessError(
                ErrorKind.NOT_ADMINISTRATOR,
                "administrator_required",
                {"scope": self.scope, "caller": _as_account(caller)},
            )

    def transfer_administrator(self, caller: str, new_administrator: str) -> str:
        self.require_administrator(caller)
        new_admin = _as_account(new_administrator)
        if not new_admin:
            if not self.renounce_allowed:
                raise AccessError(ErrorKind.OWNERSHIP_RENOUNCE_DISABLED, "null_administrator_forbidden", {"scope": self.scope})
            raise AccessError(ErrorKind.INVALID_ACCOUNT, "null_administrator", {"scope": self.scope})
        prev = self._administrator
        self._administrator = new_admin
        log_event(log, "administrator_transferred", scope=self.scope, previous=prev, current=new_admin)
        return new_admin

    def renounce_administrator(self, caller: str) -> None:
        self.require_administrator(caller)
        if not self.renounce_allowed:
            raise AccessError(ErrorKind.OWNERSHIP_RENOUNCE_DISABLED, "renounce_disabled", {"scope": self.scope})
        prev = self._administrator
        self._administrator = NULL_ACCOUNT
        log_event(log, "administrator_renounced", scope=self.scope, previous=prev)

    def to_state(self) -> dict:
        return {"administrator": self._administrator, "renounce_allowed": self.renounce_allowed}

    @classmethod
    def from_state(cls, state: dict, *, scope: str = "") -> "AccessControl":
        ac = cls.__new__(cls)
        ac._administrator = _as_account(state.get("administrator"))
        ac.renounce_allowed = bool(state.get("renounce_allowed", True))
        ac.scope = scope
        return ac
