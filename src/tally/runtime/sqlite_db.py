# src/tally/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Canonical JSON encoding for persisted snapshots.

    Unknown types are not coerced: a non-JSON value leaking into state must fail loudly.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite manager for persisted ledger/reward snapshots.

    SQLite allows only one writer at a time; BEGIN IMMEDIATE can transiently
    fail with "database is locked" under multi-process use, so write_tx()
    retries with bounded backoff.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    @staticmethod
    def _sqlite_synchronous_pragma() -> str:
        """PRAGMA synchronous value; override with TALLY_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA}."""
        raw = (os.environ.get("TALLY_SQLITE_SYNCHRONOUS") or "FULL").strip().upper()
        if raw not in {"OFF", "NORMAL", "FULL", "EXTRA"}:
            raw = "FULL"
        return raw

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()
        connect_timeout_s = float(_env_int("TALLY_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        mode = str(row[0]).strip().lower() if row is not None else ""
        if mode and mode != "wal":
            con.close()
            raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA foreign_keys=ON;")
        busy_ms = max(0, _env_int("TALLY_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")
        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS tally_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  total_supply TEXT NOT NULL,
                  state_json TEXT NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg)

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Policy:
          - retry BEGIN IMMEDIATE until a deadline
          - exponential backoff with jitter
          - then raise (fail closed)
        """
        deadline_ms = max(250, _env_int("TALLY_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = _now_ms() + deadline_ms
        base_sleep = 0.005
        max_sleep = 0.25

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
                    time.sleep(sleep_s * (0.5 + random.random()))
                    attempt += 1

            try:
                yield con
                con.execute("COMMIT;")
            except BaseException:
                con.execute("ROLLBACK;")
                raise


def _supply_of(st: Json) -> str:
    ledger = st.get("ledger") if isinstance(st.get("ledger"), dict) else {}
    return str(int(ledger.get("total_supply", 0) or 0))


class SqliteStateStore:
    """Deployment snapshot persisted in SQLite.

      - read(): load the latest snapshot
      - write(st): overwrite the snapshot atomically
      - update(mut): read-modify-write inside a single write transaction

    The authoritative snapshot is a single row.
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    def exists(self) -> bool:
        with self._db.connection() as con:
            return con.execute("SELECT 1 FROM tally_state WHERE id=1;").fetchone() is not None

    def read(self) -> Json:
        with self._db.connection() as con:
            row = con.execute("SELECT state_json FROM tally_state WHERE id=1;").fetchone()
        if row is None:
            raise FileNotFoundError("sqlite tally_state is missing")
        st = json.loads(str(row["state_json"]))
        if not isinstance(st, dict):
            raise ValueError("tally_state is not a JSON object")
        return st

    def write(self, st: Json) -> None:
        if not isinstance(st, dict):
            raise ValueError("state write expects dict")
        payload = _canon_json(st)
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO tally_state(id, total_supply, state_json, updated_ts_ms)
                VALUES(1, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  total_supply=excluded.total_supply,
                  state_json=excluded.state_json,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (_supply_of(st), payload, _now_ms()),
            )

    def update(self, mut: Callable[[Json], Any]) -> Any:
        """Apply `mut` to the snapshot and persist the result; if `mut` raises, nothing is written."""
        with self._db.write_tx() as con:
            row = con.execute("SELECT state_json FROM tally_state WHERE id=1;").fetchone()
            if row is None:
                raise FileNotFoundError("sqlite tally_state is missing")
            st = json.loads(str(row["state_json"]))
            if not isinstance(st, dict):
                raise ValueError("tally_state is not a JSON object")

            result = mut(st)

            con.execute(
                "UPDATE tally_state SET total_supply=?, state_json=?, updated_ts_ms=? WHERE id=1;",
                (_supply_of(st), _canon_json(st), _now_ms()),
            )
            return result
