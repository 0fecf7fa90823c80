"""
Record Store
============

Persistence behind the Registry.

The Registry never talks to a database directly. It reads and writes
JSON-compatible dicts by (kind, key) through a RecordStore, so the backing
technology can be swapped without touching scheduling logic.

Kinds used by the coordinator: "workers", "jobs".

Usage:
  store = SQLiteStore("/var/lib/gridrun/registry.db")
  store.put(JOBS, job.job_id, job.to_dict())
  raw = store.get(JOBS, job_id)

Read-modify-write atomicity is the Registry's (per-record locks); a store
only has to make each single put durable.
"""

from __future__ import annotations
import copy
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

log = logging.getLogger(__name__)

WORKERS = "workers"
JOBS    = "jobs"


# ─── Interface ────────────────────────────────────────────────────────────────

class RecordStore(ABC):
    """Key/value collections of JSON-compatible records."""

    @abstractmethod
    def get(self, kind: str, key: str) -> Optional[dict]:
        """One record, or None."""

    @abstractmethod
    def put(self, kind: str, key: str, record: dict) -> None:
        """Insert or replace one record."""

    @abstractmethod
    def all(self, kind: str) -> list[dict]:
        """All records of a kind, in no particular order."""

    @abstractmethod
    def delete(self, kind: str, key: str) -> bool:
        """Remove a record. True if it existed."""

    def close(self) -> None:
        pass


# ─── In-memory ────────────────────────────────────────────────────────────────

class MemoryStore(RecordStore):
    """Process-local store. Records are deep-copied on the way in and out."""

    def __init__(self):
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, dict]] = {}

    def get(self, kind: str, key: str) -> Optional[dict]:
        with self._lock:
            record = self._data.get(kind, {}).get(key)
            return copy.deepcopy(record) if record is not None else None

    def put(self, kind: str, key: str, record: dict) -> None:
        with self._lock:
            self._data.setdefault(kind, {})[key] = copy.deepcopy(record)

    def all(self, kind: str) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._data.get(kind, {}).values()]

    def delete(self, kind: str, key: str) -> bool:
        with self._lock:
            return self._data.get(kind, {}).pop(key, None) is not None


# ─── SQLite ───────────────────────────────────────────────────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    kind       TEXT NOT NULL,
    key        TEXT NOT NULL,
    body       TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (kind, key)
);
"""


class SQLiteStore(RecordStore):
    """
    One row per record with a JSON body. Every put commits, so the file is
    crash-consistent per record. Each thread gets its own connection; WAL
    lets readers run alongside the writer.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local            = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        conn = self._conn()
        conn.executescript(SCHEMA)
        conn.commit()
        log.info(f"[store] SQLite records at {self.db_path}")

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _transaction(self):
        conn = self._conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def get(self, kind: str, key: str) -> Optional[dict]:
        row = self._conn().execute(
            "SELECT body FROM records WHERE kind = ? AND key = ?", (kind, key)
        ).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, kind: str, key: str, record: dict) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO records (kind, key, body, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(kind, key) DO UPDATE SET
                    body       = excluded.body,
                    updated_at = excluded.updated_at
                """,
                (kind, key, json.dumps(record), datetime.now(timezone.utc).isoformat()),
            )

    def all(self, kind: str) -> list[dict]:
        rows = self._conn().execute("SELECT body FROM records WHERE kind = ?", (kind,)).fetchall()
        return [json.loads(body) for (body,) in rows]

    def delete(self, kind: str, key: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM records WHERE kind = ? AND key = ?", (kind, key))
            return cursor.rowcount > 0

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    log.warning(f"[store] Closing SQLite connection failed: {e}")
            self._connections.clear()
        self._local = threading.local()
