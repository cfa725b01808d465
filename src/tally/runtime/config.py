# src/tally/runtime/config.py
from __future__ import annotations

"""Deployment configuration.

A deployment file (YAML or JSON; YAML is a superset) looks like:

    ledger:
      account: LEDGER
      administrator: admin
      total_supply_tokens: 5000000000
      seed:
        - {account: treasury, bps: 2500}
        - {account: play_to_earn, bps: 3000}
      remainder_account: null
      policy:
        trading_enabled: false
        limits_in_effect: true
        max_tx_tokens: 50000000
        max_wallet_tokens: 100000000
        exempt: [admin]
        pools: [liquidity]
    rewards:
      account: REWARD_ENGINE
      administrator: admin
      signers: [game-server]
      max_reward_per_call_tokens: 5
      max_daily_per_account_tokens: 25
      exempt_engine: true

Unknown keys are rejected. The path comes from the caller or TALLY_CONFIG_PATH;
without either, defaults are used.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tally.ledger.constants import (
    BPS_DENOMINATOR,
    DEFAULT_MAX_TX_BPS,
    DEFAULT_MAX_WALLET_BPS,
    DEFAULT_SEED_SPLIT,
    DEFAULT_SUPPLY_TOKENS,
    LEDGER_ACCOUNT_ID,
    REWARD_ENGINE_ACCOUNT_ID,
    UNIT,
)
from tally.ledger.policy import PolicyConfig
from tally.ledger.seeding import SeedDestination
from tally.ledger.state import Ledger
from tally.rewards.engine import RewardEngine
from tally.runtime.clock import Clock
from tally.runtime.events import EventBus

Json = Dict[str, Any]

DEFAULT_ADMINISTRATOR = "admin"


class _StrictModel(BaseModel):
    """Strict model: reject unknown keys."""

    model_config = ConfigDict(extra="forbid")


def _non_empty(v: str) -> str:
    s = str(v).strip()
    if not s:
        raise ValueError("account id must be non-empty")
    return s


class SeedEntry(_StrictModel):
    account: str
    bps: int = Field(ge=0, le=BPS_DENOMINATOR)

    @field_validator("account")
    @classmethod
    def _account_non_empty(cls, v: str) -> str:
        return _non_empty(v)


class PolicySection(_StrictModel):
    trading_enabled: bool = False
    limits_in_effect: bool = True
    # None -> derived from supply (1% / 2%)
    max_tx_tokens: Optional[int] = Field(default=None, ge=0)
    max_wallet_tokens: Optional[int] = Field(default=None, ge=0)
    exempt: List[str] = Field(default_factory=list)
    pools: List[str] = Field(default_factory=list)


class LedgerSection(_StrictModel):
    account: str = LEDGER_ACCOUNT_ID
    administrator: str = DEFAULT_ADMINISTRATOR
    total_supply_tokens: int = Field(default=DEFAULT_SUPPLY_TOKENS, ge=0)
    seed: List[SeedEntry] = Field(
        default_factory=lambda: [SeedEntry(account=a, bps=b) for a, b in DEFAULT_SEED_SPLIT]
    )
    remainder_account: Optional[str] = None
    policy: PolicySection = Field(default_factory=PolicySection)

    @field_validator("account", "administrator")
    @classmethod
    def _accounts_non_empty(cls, v: str) -> str:
        return _non_empty(v)


class RewardsSection(_StrictModel):
    account: str = REWARD_ENGINE_ACCOUNT_ID
    administrator: Optional[str] = None  # defaults to the ledger administrator
    signers: List[str] = Field(default_factory=list)
    max_reward_per_call_tokens: int = Field(default=5, ge=0)
    max_daily_per_account_tokens: int = Field(default=25, ge=0)
    exempt_engine: bool = True

    @field_validator("account")
    @classmethod
    def _account_non_empty(cls, v: str) -> str:
        return _non_empty(v)


class DeploymentConfig(_StrictModel):
    ledger: LedgerSection = Field(default_factory=LedgerSection)
    rewards: RewardsSection = Field(default_factory=RewardsSection)


def read_deployment_config_file(path: str) -> DeploymentConfig:
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(str(p))
    raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("deployment config must be a mapping")
    return parse_deployment_config(raw)


def parse_deployment_config(raw: Json) -> DeploymentConfig:
    """Shape validation only; split sums are checked when the ledger is seeded (InvalidSplit)."""
    return DeploymentConfig.model_validate(raw)


def load_deployment_config(*, config_path: Optional[str] = None) -> DeploymentConfig:
    p = config_path or os.environ.get("TALLY_CONFIG_PATH")
    if p:
        return read_deployment_config_file(p)
    return DeploymentConfig()


@dataclass
class Deployment:
    ledger: Ledger
    engine: RewardEngine
    bus: EventBus

    def to_state(self) -> Json:
        return {"ledger": self.ledger.to_state(), "rewards": self.engine.to_state()}

    @classmethod
    def from_state(cls, state: Json, *, clock: Optional[Clock] = None) -> "Deployment":
        if not isinstance(state, dict):
            raise ValueError("deployment state must be a dict")
        bus = EventBus()
        ledger = Ledger.from_state(state.get("ledger") or {}, bus=bus)
        engine = RewardEngine.from_state(state.get("rewards") or {}, ledger=ledger, clock=clock)
        return cls(ledger=ledger, engine=engine, bus=bus)


def build_deployment(cfg: DeploymentConfig, *, clock: Optional[Clock] = None) -> Deployment:
    """Seed the ledger, create the reward engine and register it as limit-exempt."""
    lc = cfg.ledger
    rc = cfg.rewards
    bus = EventBus()

    supply = int(lc.total_supply_tokens) * UNIT
    pc = lc.policy
    max_tx = pc.max_tx_tokens * UNIT if pc.max_tx_tokens is not None else supply * DEFAULT_MAX_TX_BPS // BPS_DENOMINATOR
    max_wallet = (
        pc.max_wallet_tokens * UNIT if pc.max_wallet_tokens is not None else supply * DEFAULT_MAX_WALLET_BPS // BPS_DENOMINATOR
    )
    policy = PolicyConfig.steady_state(
        max_tx_amount=max_tx,
        max_wallet_amount=max_wallet,
        trading_enabled=pc.trading_enabled,
        limits_in_effect=pc.limits_in_effect,
        exempt=[lc.administrator, lc.account, *pc.exempt],
        pools=pc.pools,
    )

    ledger = Ledger.deploy(
        administrator=lc.administrator,
        destinations=[SeedDestination(account=e.account, bps=e.bps) for e in lc.seed],
        total_supply=supply,
        policy=policy,
        account=lc.account,
        remainder_account=lc.remainder_account,
        bus=bus,
    )

    engine = RewardEngine(
        ledger,
        administrator=rc.administrator or lc.administrator,
        account=rc.account,
        clock=clock,
        max_reward_per_call=int(rc.max_reward_per_call_tokens) * UNIT,
        max_daily_per_account=int(rc.max_daily_per_account_tokens) * UNIT,
        signers=rc.signers,
    )
    if rc.exempt_engine:
        ledger.set_limit_exempt(ledger.administrator, engine.account, True)

    return Deployment(ledger=ledger, engine=engine, bus=bus)
