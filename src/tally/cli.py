# src/tally/cli.py
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Callable, Dict, List, Optional

from tally.env import load_dotenv_if_present
from tally.ledger.constants import UNIT
from tally.rewards.tiers import tier_table
from tally.runtime.clock import Clock, ManualClock, SystemClock
from tally.runtime.config import Deployment, build_deployment, load_deployment_config
from tally.runtime.errors import TallyError
from tally.runtime.sqlite_db import SqliteDB, SqliteStateStore
from tally.runtime.structured_logging import configure_structured_logging, log_event

Json = Dict[str, Any]

log = logging.getLogger("tally.cli")

EXIT_OK = 0
EXIT_REJECTED = 2


def _print(obj: Any) -> None:
    sys.stdout.write(json.dumps(obj, sort_keys=True, indent=2) + "\n")


def _store(db_path: Optional[str]) -> SqliteStateStore:
    path = db_path or os.environ.get("TALLY_DB_PATH") or "./data/tally.db"
    return SqliteStateStore(db=SqliteDB(path=path))


def _cmd_init(args: argparse.Namespace) -> int:
    store = _store(args.db)
    if store.exists() and not args.force:
        _print({"ok": False, "reason": "state_exists", "hint": "pass --force to overwrite"})
        return EXIT_REJECTED

    cfg = load_deployment_config(config_path=args.config)
    dep = build_deployment(cfg)
    store.write(dep.to_state())
    log_event(log, "deployment_initialized", total_supply=dep.ledger.total_supply())
    _print(
        {
            "ok": True,
            "total_supply": dep.ledger.total_supply(),
            "balances": dep.ledger.balances(),
            "reward_engine": dep.engine.account,
        }
    )
    return EXIT_OK


def _cmd_balances(args: argparse.Namespace) -> int:
    dep = Deployment.from_state(_store(args.db).read())
    balances = dep.ledger.balances()
    accounts: List[str] = list(args.accounts) if args.accounts else sorted(balances)
    _print(
        {
            "ok": True,
            "total_supply": dep.ledger.total_supply(),
            "balances": {a: dep.ledger.balance_of(a) for a in accounts},
        }
    )
    return EXIT_OK


def _apply(args: argparse.Namespace, op: Callable[[Deployment], Json], *, clock: Optional[Clock] = None) -> int:
    """Run `op` against the persisted deployment; persist only if it succeeds."""

    def _mut(st: Json) -> Json:
        dep = Deployment.from_state(st, clock=clock)
        out = op(dep)
        st.clear()
        st.update(dep.to_state())
        return out

    try:
        out = _store(args.db).update(_mut)
    except TallyError as e:
        log_event(log, "command_rejected", command=args.command, code=e.code, reason=e.reason)
        _print(e.to_json())
        return EXIT_REJECTED

    _print({"ok": True, **out})
    return EXIT_OK


def _cmd_reward(args: argparse.Namespace) -> int:
    clock: Clock = ManualClock(args.now) if args.now is not None else SystemClock()
    return _apply(
        args,
        lambda dep: dep.engine.reward_player(args.signer, args.account, args.metric).to_json(),
        clock=clock,
    )


def _cmd_set_signer(args: argparse.Namespace) -> int:
    def _op(dep: Deployment) -> Json:
        dep.engine.set_signer(args.caller, args.account, not args.revoke)
        return {"signers": dep.engine.signers()}

    return _apply(args, _op)


def _cmd_top_up(args: argparse.Namespace) -> int:
    amount = int(args.tokens) * UNIT

    def _op(dep: Deployment) -> Json:
        # the administrator authorises exactly this pull, then the engine takes it
        dep.ledger.approve(args.caller, dep.engine.account, amount)
        dep.engine.top_up(args.caller, amount)
        return {"amount": amount, "pool": dep.engine.pool_balance()}

    return _apply(args, _op)


def _cmd_rescue(args: argparse.Namespace) -> int:
    amount = int(args.tokens) * UNIT

    def _op(dep: Deployment) -> Json:
        dep.engine.rescue(args.caller, args.to, amount)
        return {"to": args.to, "amount": amount, "pool": dep.engine.pool_balance()}

    return _apply(args, _op)


def _cmd_set_paused(args: argparse.Namespace) -> int:
    def _op(dep: Deployment) -> Json:
        dep.ledger.set_paused(args.caller, args.value == "on")
        return {"policy": dep.ledger.policy.to_state()}

    return _apply(args, _op)


def _cmd_set_trading(args: argparse.Namespace) -> int:
    def _op(dep: Deployment) -> Json:
        dep.ledger.set_trading_enabled(args.caller, args.value == "on")
        return {"policy": dep.ledger.policy.to_state()}

    return _apply(args, _op)


def _cmd_tiers(args: argparse.Namespace) -> int:
    _print({"ok": True, "unit": UNIT, "tiers": tier_table()})
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="tally", description="Fixed-supply ledger and reward engine")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="seed a new deployment and persist it")
    p.add_argument("--config", default=None, help="YAML/JSON deployment file (default: TALLY_CONFIG_PATH or built-in)")
    p.add_argument("--db", default=None, help="SQLite path (default: TALLY_DB_PATH or ./data/tally.db)")
    p.add_argument("--force", action="store_true", help="overwrite an existing snapshot")
    p.set_defaults(fn=_cmd_init)

    p = sub.add_parser("balances", help="print balances from a persisted deployment")
    p.add_argument("--db", default=None)
    p.add_argument("accounts", nargs="*")
    p.set_defaults(fn=_cmd_balances)

    p = sub.add_parser("reward", help="run one reward payout")
    p.add_argument("--db", default=None)
    p.add_argument("--signer", required=True)
    p.add_argument("--account", required=True)
    p.add_argument("--metric", required=True, type=int)
    p.add_argument("--now", default=None, type=int, help="unix seconds (default: system clock)")
    p.set_defaults(fn=_cmd_reward)

    p = sub.add_parser("set-signer", help="grant or revoke payout rights (engine administrator)")
    p.add_argument("--db", default=None)
    p.add_argument("--caller", required=True)
    p.add_argument("--account", required=True)
    p.add_argument("--revoke", action="store_true", help="remove instead of add")
    p.set_defaults(fn=_cmd_set_signer)

    p = sub.add_parser("top-up", help="move tokens from the administrator into the reward pool")
    p.add_argument("--db", default=None)
    p.add_argument("--caller", required=True)
    p.add_argument("--tokens", required=True, type=int, help="whole tokens")
    p.set_defaults(fn=_cmd_top_up)

    p = sub.add_parser("rescue", help="move tokens out of the reward pool")
    p.add_argument("--db", default=None)
    p.add_argument("--caller", required=True)
    p.add_argument("--to", required=True)
    p.add_argument("--tokens", required=True, type=int, help="whole tokens")
    p.set_defaults(fn=_cmd_rescue)

    for name, fn, what in (
        ("set-paused", _cmd_set_paused, "pause or resume all balance changes"),
        ("set-trading", _cmd_set_trading, "enable or disable trading between non-exempt accounts"),
    ):
        p = sub.add_parser(name, help=f"{what} (ledger administrator)")
        p.add_argument("--db", default=None)
        p.add_argument("--caller", required=True)
        p.add_argument("--value", required=True, choices=["on", "off"])
        p.set_defaults(fn=fn)

    p = sub.add_parser("tiers", help="print the reward tier table")
    p.set_defaults(fn=_cmd_tiers)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv_if_present()
    configure_structured_logging()
    args = build_parser().parse_args(argv)
    return int(args.fn(args))


if __name__ == "__main__":
    raise SystemExit(main())
