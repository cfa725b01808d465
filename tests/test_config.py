from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from conftest import T0
from tally.ledger.constants import DEFAULT_TOTAL_SUPPLY, LEDGER_ACCOUNT_ID, REWARD_ENGINE_ACCOUNT_ID, UNIT
from tally.runtime.clock import ManualClock
from tally.runtime.config import (
    Deployment,
    DeploymentConfig,
    build_deployment,
    load_deployment_config,
    parse_deployment_config,
    read_deployment_config_file,
)
from tally.runtime.errors import ErrorKind, LedgerError

_YAML = """
ledger:
  administrator: ops
  total_supply_tokens: 10000
  seed:
    - {account: ops, bps: 8000}
    - {account: REWARD_ENGINE, bps: 1000}
    - {account: liquidity, bps: 1000}
  policy:
    trading_enabled: true
    max_tx_tokens: 100
    max_wallet_tokens: 200
    pools: [liquidity]
rewards:
  signers: [game-server]
  max_reward_per_call_tokens: 5
  max_daily_per_account_tokens: 10
"""


def test_defaults_build_the_standard_deployment() -> None:
    dep = build_deployment(DeploymentConfig())
    ledger = dep.ledger

    assert ledger.total_supply() == DEFAULT_TOTAL_SUPPLY
    assert ledger.account == LEDGER_ACCOUNT_ID
    assert ledger.administrator == "admin"
    assert ledger.balance_of("treasury") == DEFAULT_TOTAL_SUPPLY // 4
    assert ledger.policy.trading_enabled is False
    assert ledger.policy.max_tx_amount == DEFAULT_TOTAL_SUPPLY // 100
    assert ledger.policy.max_wallet_amount == DEFAULT_TOTAL_SUPPLY // 50
    assert {"admin", LEDGER_ACCOUNT_ID, REWARD_ENGINE_ACCOUNT_ID} <= ledger.policy.exempt_accounts

    assert dep.engine.administrator == "admin"
    assert dep.engine.signers() == []
    assert dep.engine.caps() == {"max_reward_per_call": 5 * UNIT, "max_daily_per_account": 25 * UNIT}


def test_yaml_file_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "deploy.yaml"
    p.write_text(_YAML, encoding="utf-8")
    monkeypatch.setenv("TALLY_CONFIG_PATH", str(p))

    cfg = load_deployment_config()
    assert cfg.ledger.administrator == "ops"
    assert cfg.rewards.administrator is None

    dep = build_deployment(cfg, clock=ManualClock(T0))
    assert dep.engine.administrator == "ops"
    assert dep.engine.pool_balance() == 1_000 * UNIT
    assert dep.ledger.policy.is_pool("liquidity")

    paid = dep.engine.reward_player("game-server", "alice", 1)
    assert paid.amount == 5 * UNIT
    assert dep.ledger.balance_of("alice") == 5 * UNIT


def test_explicit_path_wins_over_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "deploy.yaml"
    p.write_text(_YAML, encoding="utf-8")
    monkeypatch.setenv("TALLY_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    assert load_deployment_config(config_path=str(p)).ledger.total_supply_tokens == 10_000


def test_no_path_means_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TALLY_CONFIG_PATH", raising=False)
    assert load_deployment_config() == DeploymentConfig()


def test_file_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        read_deployment_config_file(str(tmp_path / "nope.yaml"))

    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_deployment_config_file(str(p))

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert read_deployment_config_file(str(empty)) == DeploymentConfig()


@pytest.mark.parametrize(
    "raw",
    [
        {"ledger": {"unknown": 1}},
        {"rewards": {"signers": ["x"], "extra": True}},
        {"ledger": {"seed": [{"account": "a", "bps": 10_001}]}},
        {"ledger": {"seed": [{"account": "  ", "bps": 1}]}},
        {"ledger": {"total_supply_tokens": -1}},
    ],
)
def test_shape_errors_are_validation_errors(raw: dict) -> None:
    with pytest.raises(ValidationError):
        parse_deployment_config(raw)


def test_split_over_denominator_fails_at_build() -> None:
    cfg = parse_deployment_config({"ledger": {"seed": [{"account": "a", "bps": 6_000}, {"account": "b", "bps": 6_000}]}})
    with pytest.raises(LedgerError) as e:
        build_deployment(cfg)
    assert e.value.code == ErrorKind.INVALID_SPLIT


def test_engine_not_exempt_when_disabled() -> None:
    cfg = parse_deployment_config({"rewards": {"exempt_engine": False}})
    dep = build_deployment(cfg)
    assert REWARD_ENGINE_ACCOUNT_ID not in dep.ledger.policy.exempt_accounts


def test_deployment_state_roundtrip(tmp_path: Path) -> None:
    p = tmp_path / "deploy.yaml"
    p.write_text(_YAML, encoding="utf-8")
    clock = ManualClock(T0)
    dep = build_deployment(read_deployment_config_file(str(p)), clock=clock)
    dep.engine.reward_player("game-server", "alice", 1)

    st = dep.to_state()
    restored = Deployment.from_state(st, clock=clock)
    assert restored.to_state() == st
    assert restored.engine.claimed("alice") == 5 * UNIT
    assert restored.ledger is restored.engine.ledger
    assert restored.ledger.bus is restored.bus
