from __future__ import annotations

import pytest

from tally.ledger.access import AccessControl
from tally.ledger.constants import NULL_ACCOUNT
from tally.runtime.errors import AccessError, ErrorKind


def test_only_administrator_passes() -> None:
    ac = AccessControl("admin", scope="ledger")
    assert ac.is_administrator("admin")
    assert not ac.is_administrator("mallory")
    assert not ac.is_administrator(NULL_ACCOUNT)
    ac.require_administrator("admin")

    with pytest.raises(AccessError) as e:
        ac.require_administrator("mallory")
    assert e.value.code == ErrorKind.NOT_ADMINISTRATOR
    assert e.value.details == {"scope": "ledger", "caller": "mallory"}


def test_null_administrator_rejected_at_construction() -> None:
    with pytest.raises(AccessError) as e:
        AccessControl(NULL_ACCOUNT)
    assert e.value.code == ErrorKind.INVALID_ACCOUNT


def test_transfer_and_renounce_when_allowed() -> None:
    ac = AccessControl("admin")
    assert ac.transfer_administrator("admin", "ops") == "ops"
    with pytest.raises(AccessError):
        ac.transfer_administrator("admin", "x")

    with pytest.raises(AccessError) as e:
        ac.transfer_administrator("ops", NULL_ACCOUNT)
    assert e.value.code == ErrorKind.INVALID_ACCOUNT

    ac.renounce_administrator("ops")
    assert ac.current_administrator() == NULL_ACCOUNT
    # nobody, including the null caller, can act afterwards
    assert not ac.is_administrator(NULL_ACCOUNT)
    with pytest.raises(AccessError):
        ac.require_administrator("ops")


def test_renounce_disabled() -> None:
    ac = AccessControl("admin", renounce_allowed=False)
    for op in (lambda: ac.renounce_administrator("admin"), lambda: ac.transfer_administrator("admin", NULL_ACCOUNT)):
        with pytest.raises(AccessError) as e:
            op()
        assert e.value.code == ErrorKind.OWNERSHIP_RENOUNCE_DISABLED
    assert ac.current_administrator() == "admin"


def test_state_roundtrip() -> None:
    ac = AccessControl("admin", renounce_allowed=False)
    restored = AccessControl.from_state(ac.to_state(), scope="rewards")
    assert restored.to_state() == {"administrator": "admin", "renounce_allowed": False}
    assert restored.scope == "rewards"
