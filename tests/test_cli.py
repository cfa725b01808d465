from __future__ import annotations

import json
from pathlib import Path

import pytest

import tally.cli as tally_cli
import tally.env as tally_env
from conftest import T0
from tally.cli import main
from tally.ledger.constants import UNIT

_CONFIG = """
ledger:
  total_supply_tokens: 1000
  seed:
    - {account: admin, bps: 9000}
    - {account: REWARD_ENGINE, bps: 1000}
  policy:
    trading_enabled: true
rewards:
  signers: [game-server]
"""


@pytest.fixture(autouse=True)
def _quiet_process_setup(monkeypatch: pytest.MonkeyPatch) -> None:
    # keep main() from reading a stray .env or binding a handler to the captured stderr
    monkeypatch.setattr(tally_env, "_LOADED", True)
    monkeypatch.setattr(tally_cli, "configure_structured_logging", lambda: None)


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict]:
    rc = main(list(argv))
    out = capsys.readouterr().out
    return rc, json.loads(out)


@pytest.fixture
def deployed(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> str:
    cfg = tmp_path / "deploy.yaml"
    cfg.write_text(_CONFIG, encoding="utf-8")
    db = str(tmp_path / "tally.db")
    rc, out = _run(capsys, "init", "--config", str(cfg), "--db", db)
    assert rc == 0
    assert out["ok"] is True
    assert out["total_supply"] == 1_000 * UNIT
    assert out["reward_engine"] == "REWARD_ENGINE"
    return db


def test_tiers(capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "tiers")
    assert rc == 0
    assert out["unit"] == UNIT
    assert [row["reward"] for row in out["tiers"]] == [5 * UNIT, 3 * UNIT, UNIT, 0]


def test_init_refuses_to_overwrite(deployed: str, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "init", "--db", deployed)
    assert rc == 2
    assert out["reason"] == "state_exists"

    cfg = tmp_path / "deploy.yaml"
    rc, out = _run(capsys, "init", "--config", str(cfg), "--db", deployed, "--force")
    assert rc == 0


def test_balances(deployed: str, capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "balances", "--db", deployed)
    assert rc == 0
    assert out["balances"] == {"REWARD_ENGINE": 100 * UNIT, "admin": 900 * UNIT}

    rc, out = _run(capsys, "balances", "--db", deployed, "alice")
    assert out["balances"] == {"alice": 0}


def test_reward_is_persisted(deployed: str, capsys: pytest.CaptureFixture[str]) -> None:
    args = ("reward", "--db", deployed, "--signer", "game-server", "--account", "alice", "--now", str(T0))
    rc, out = _run(capsys, *args, "--metric", "7")
    assert rc == 0
    assert out["ok"] is True
    assert out["amount"] == 5 * UNIT
    assert out["ts"] == T0

    _run(capsys, *args, "--metric", "30")
    rc, out = _run(capsys, "balances", "--db", deployed, "alice", "REWARD_ENGINE")
    assert out["balances"] == {"alice": 8 * UNIT, "REWARD_ENGINE": 92 * UNIT}


def test_rejected_reward_exits_nonzero(deployed: str, capsys: pytest.CaptureFixture[str]) -> None:
    base = ("reward", "--db", deployed, "--account", "alice", "--now", str(T0))
    rc, out = _run(capsys, *base, "--signer", "game-server", "--metric", "500")
    assert rc == 2
    assert out["ok"] is False
    assert out["code"] == "NoReward"

    rc, out = _run(capsys, *base, "--signer", "mallory", "--metric", "1")
    assert rc == 2
    assert out["code"] == "UnauthorizedCaller"

    rc, out = _run(capsys, "balances", "--db", deployed, "alice")
    assert out["balances"] == {"alice": 0}


def test_set_signer_grants_and_revokes_payout_rights(deployed: str, capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "set-signer", "--db", deployed, "--caller", "admin", "--account", "oracle")
    assert rc == 0
    assert out["signers"] == ["game-server", "oracle"]

    reward = ("reward", "--db", deployed, "--account", "alice", "--metric", "1", "--now", str(T0))
    rc, out = _run(capsys, *reward, "--signer", "oracle")
    assert rc == 0

    _run(capsys, "set-signer", "--db", deployed, "--caller", "admin", "--account", "oracle", "--revoke")
    rc, out = _run(capsys, *reward, "--signer", "oracle")
    assert rc == 2
    assert out["code"] == "UnauthorizedCaller"

    rc, out = _run(capsys, "set-signer", "--db", deployed, "--caller", "mallory", "--account", "mallory")
    assert rc == 2
    assert out["code"] == "NotAdministrator"


def test_top_up_and_rescue_move_pool_funds(deployed: str, capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "top-up", "--db", deployed, "--caller", "admin", "--tokens", "50")
    assert rc == 0
    assert out["pool"] == 150 * UNIT

    rc, out = _run(capsys, "rescue", "--db", deployed, "--caller", "admin", "--to", "treasury", "--tokens", "30")
    assert rc == 0
    assert out["pool"] == 120 * UNIT

    rc, out = _run(capsys, "balances", "--db", deployed, "admin", "treasury", "REWARD_ENGINE")
    assert out["balances"] == {"admin": 850 * UNIT, "treasury": 30 * UNIT, "REWARD_ENGINE": 120 * UNIT}


def test_rejected_top_up_persists_nothing(deployed: str, capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "top-up", "--db", deployed, "--caller", "admin", "--tokens", "5000")
    assert rc == 2
    assert out["code"] == "InsufficientBalance"

    rc, out = _run(capsys, "top-up", "--db", deployed, "--caller", "mallory", "--tokens", "1")
    assert rc == 2
    assert out["code"] == "NotAdministrator"

    rc, out = _run(capsys, "balances", "--db", deployed)
    assert out["balances"] == {"REWARD_ENGINE": 100 * UNIT, "admin": 900 * UNIT}


def test_pause_blocks_payouts_until_resumed(deployed: str, capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "set-paused", "--db", deployed, "--caller", "admin", "--value", "on")
    assert rc == 0
    assert out["policy"]["paused"] is True

    reward = ("reward", "--db", deployed, "--signer", "game-server", "--account", "alice", "--metric", "1", "--now", str(T0))
    rc, out = _run(capsys, *reward)
    assert rc == 2
    assert out["code"] == "Paused"

    _run(capsys, "set-paused", "--db", deployed, "--caller", "admin", "--value", "off")
    rc, out = _run(capsys, *reward)
    assert rc == 0


def test_set_trading(deployed: str, capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "set-trading", "--db", deployed, "--caller", "admin", "--value", "off")
    assert rc == 0
    assert out["policy"]["trading_enabled"] is False

    rc, out = _run(capsys, "set-trading", "--db", deployed, "--caller", "mallory", "--value", "on")
    assert rc == 2
    assert out["code"] == "NotAdministrator"
