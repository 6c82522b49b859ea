# src/iris/runtime/sqlite_db.py
from __future__ import annotations

"""Ledger state persistence.

The gateway ledger is one JSON snapshot (queues, staging, metadata, registry).
SqliteLedgerStore keeps it in a single row of a WAL-mode SQLite file and runs
every update() inside one BEGIN IMMEDIATE transaction, so concurrent gateways
sharing a file serialize their read-modify-write cycles. MemoryLedgerStore is
the in-process equivalent used by tests and single-process nodes.
"""

import copy
import json
import os
import random
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, TypeVar

Json = Dict[str, Any]
T = TypeVar("T")

_SYNC_MODES = {"OFF", "NORMAL", "FULL", "EXTRA"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def canon_json(obj: Any) -> str:
    """Canonical JSON encoding of ledger state.

    No default= hook: bytes or other non-JSON values leaking into state raise
    TypeError instead of being persisted in some lossy form.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class LedgerStore(Protocol):
    """Serialized state-transition boundary.

    Every mutation of shared queues goes through update(), which must apply the
    mutation all-or-nothing: if `mut` raises, the stored state is unchanged.
    """

    def exists(self) -> bool: ...

    def read(self) -> Json: ...

    def write(self, st: Json) -> None: ...

    def update(self, mut: Callable[[Json], T]) -> T: ...


@dataclass(frozen=True)
class SqliteSettings:
    connect_timeout_s: float
    busy_timeout_ms: int
    synchronous: str
    write_deadline_ms: int
    backoff_base_s: float
    backoff_max_s: float


def sqlite_settings_from_env() -> SqliteSettings:
    connect_timeout_ms = max(0, _env_int("IRIS_SQLITE_CONNECT_TIMEOUT_MS", 30_000))
    sync = (os.environ.get("IRIS_SQLITE_SYNCHRONOUS") or "FULL").strip().upper()
    base_s = max(0.001, _env_int("IRIS_SQLITE_WRITE_BACKOFF_BASE_MS", 5) / 1000.0)
    return SqliteSettings(
        connect_timeout_s=connect_timeout_ms / 1000.0,
        busy_timeout_ms=max(0, _env_int("IRIS_SQLITE_BUSY_TIMEOUT_MS", connect_timeout_ms)),
        synchronous=sync if sync in _SYNC_MODES else "FULL",
        write_deadline_ms=max(250, _env_int("IRIS_SQLITE_WRITE_DEADLINE_MS", 30_000)),
        backoff_base_s=base_s,
        backoff_max_s=max(base_s, _env_int("IRIS_SQLITE_WRITE_BACKOFF_MAX_MS", 250) / 1000.0),
    )


class SqliteDB:
    """Connection factory and write-transaction helper for one SQLite file.

    Connections are never shared between threads: each connection() / write_tx()
    opens its own and closes it on exit. SQLite admits one writer at a time, so
    BEGIN IMMEDIATE and COMMIT are retried with jittered exponential backoff
    while the file is locked, up to settings.write_deadline_ms.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str, settings: Optional[SqliteSettings] = None) -> None:
        self.path = str(path)
        self.settings = settings or sqlite_settings_from_env()

    def _connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        s = self.settings
        con = sqlite3.connect(self.path, timeout=s.connect_timeout_s, isolation_level=None, check_same_thread=False)
        con.row_factory = sqlite3.Row
        try:
            row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
            mode = str(row[0]).lower() if row is not None else ""
            if mode != "wal":
                raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")
            con.execute(f"PRAGMA synchronous={s.synchronous};")
            con.execute(f"PRAGMA busy_timeout={s.busy_timeout_ms};")
        except BaseException:
            con.close()
            raise
        return con

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    def init_schema(self) -> None:
        with self.write_tx() as con:
            con.execute("CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  height INTEGER NOT NULL,
                  state_json TEXT NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )
            row = con.execute("SELECT value FROM meta WHERE key='schema_version';").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            elif str(row["value"]) != str(self.SCHEMA_VERSION):
                raise RuntimeError(f"sqlite schema_version {row['value']} != {self.SCHEMA_VERSION}; refusing to open")

    def _exec_retrying(self, con: sqlite3.Connection, sql: str, deadline_ms: int) -> None:
        attempt = 0
        while True:
            try:
                con.execute(sql)
                return
            except sqlite3.OperationalError as e:
                msg = str(e).lower()
                locked = "database is locked" in msg or "database is busy" in msg
                if not locked or _now_ms() >= deadline_ms:
                    raise
            s = self.settings
            time.sleep(min(s.backoff_max_s, s.backoff_base_s * (2.0 ** min(attempt, 8))) * (0.5 + random.random()))
            attempt += 1

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT; any exception inside the block rolls back."""
        deadline_ms = _now_ms() + self.settings.write_deadline_ms
        with self.connection() as con:
            self._exec_retrying(con, "BEGIN IMMEDIATE;", deadline_ms)
            try:
                yield con
                self._exec_retrying(con, "COMMIT;", deadline_ms)
            except BaseException:
                if con.in_transaction:
                    con.execute("ROLLBACK;")
                raise


class SqliteLedgerStore:
    """Ledger snapshot store persisted in SQLite.

    This provides:
      - read(): load latest ledger snapshot
      - write(st): overwrite the snapshot atomically
      - update(mut): read-modify-write inside a single write transaction

    The authoritative snapshot is a single row.
    """

    def __init__(self, *, db: SqliteDB, genesis: Optional[Json] = None) -> None:
        self._db = db
        self._db.init_schema()
        if genesis is not None and not self.exists():
            self.write(genesis)

    def exists(self) -> bool:
        with self._db.connection() as con:
            return con.execute("SELECT 1 FROM ledger_state WHERE id=1;").fetchone() is not None

    @staticmethod
    def _decode(row: Optional[sqlite3.Row]) -> Json:
        if row is None:
            raise FileNotFoundError("sqlite ledger_state is missing")
        st = json.loads(str(row["state_json"]))
        if not isinstance(st, dict):
            raise ValueError("ledger_state is not a JSON object")
        return st

    def read(self) -> Json:
        with self._db.connection() as con:
            return self._decode(con.execute("SELECT state_json FROM ledger_state WHERE id=1;").fetchone())

    def write(self, st: Json) -> None:
        if not isinstance(st, dict):
            raise ValueError("ledger write expects dict")
        payload = canon_json(st)
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO ledger_state(id, height, state_json, updated_ts_ms)
                VALUES(1, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  height=excluded.height,
                  state_json=excluded.state_json,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (int(st.get("height", 0)), payload, _now_ms()),
            )

    def update(self, mut: Callable[[Json], T]) -> T:
        with self._db.write_tx() as con:
            st = self._decode(con.execute("SELECT state_json FROM ledger_state WHERE id=1;").fetchone())

            out = mut(st)

            con.execute(
                "UPDATE ledger_state SET height=?, state_json=?, updated_ts_ms=? WHERE id=1;",
                (int(st.get("height", 0)), canon_json(st), _now_ms()),
            )
            return out


class MemoryLedgerStore:
    """In-process ledger store with the same all-or-nothing update() contract.

    update() mutates a deep copy and swaps it in only if `mut` returns normally.
    """

    def __init__(self, *, genesis: Optional[Json] = None) -> None:
        self._lock = threading.Lock()
        self._state: Optional[Json] = copy.deepcopy(genesis) if genesis is not None else None

    def exists(self) -> bool:
        with self._lock:
            return self._state is not None

    def read(self) -> Json:
        with self._lock:
            if self._state is None:
                raise FileNotFoundError("memory ledger state is missing")
            return copy.deepcopy(self._state)

    def write(self, st: Json) -> None:
        if not isinstance(st, dict):
            raise ValueError("ledger write expects dict")
        # Round-trip through canonical JSON so both stores reject the same values.
        snapshot = json.loads(canon_json(st))
        with self._lock:
            self._state = snapshot

    def update(self, mut: Callable[[Json], T]) -> T:
        with self._lock:
            if self._state is None:
                raise FileNotFoundError("memory ledger state is missing")
            work = copy.deepcopy(self._state)
            out = mut(work)
            self._state = json.loads(canon_json(work))
            return out
