"""Durable log of probe results.

One writable handle owned by the poller (ResultStore) and one read-only handle
shared by every render (ReadStore). Each poll cycle is committed as a single
transaction together with the retention purge.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
from urllib.parse import quote

import structlog

from host_checks.errors import StoreError


logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 1

STATUS_UP = "UP"
STATUS_DOWN = "DOWN"
STATUS_UNKNOWN = "--"


@dataclass(frozen=True)
class ProbeResult:
    subject_key: str
    ts: float
    status: str
    latency_ms: float | None = None


@dataclass(frozen=True)
class WindowStats:
    uptime_pct: float | None = None
    avg_ms: float | None = None
    min_ms: float | None = None
    max_ms: float | None = None


def _connect(path: str, *, wal_mode: bool) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    if wal_mode:
        conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def _connect_read_only(path: str) -> sqlite3.Connection:
    uri = "file:" + quote(str(Path(path).resolve())) + "?mode=ro"
    conn = sqlite3.connect(uri, uri=True, timeout=5, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return
    raise StoreError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS probe_results (
          id INTEGER PRIMARY KEY,
          subject TEXT NOT NULL,
          ts REAL NOT NULL,
          status TEXT NOT NULL, -- UP|DOWN
          latency_ms REAL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_probe_subject_ts ON probe_results(subject, ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_probe_subject_id ON probe_results(subject, id DESC);")


def _uptime(total: int, up_count: int | None) -> float | None:
    if total <= 0 or up_count is None:
        return None
    return float(up_count) * 100.0 / float(total)


class ResultStore:
    """Writable handle. Exclusive to the poller."""

    def __init__(self, db_path: str, *, wal_mode: bool = True) -> None:
        self.db_path = str(db_path)
        try:
            self._conn = _connect(self.db_path, wal_mode=wal_mode)
            _ensure_schema_conn(self._conn)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Failed to open database at {self.db_path}: {exc}") from exc
        self._lock = threading.Lock()

    def commit_cycle(self, rows: Iterable[ProbeResult], retention_cutoff: float) -> int:
        """Insert all rows and purge everything older than the cutoff in one transaction.

        Returns the number of purged rows. Any database failure raises StoreError.
        """
        params = [
            (r.subject_key, float(r.ts), r.status, float(r.latency_ms) if r.latency_ms is not None else None)
            for r in rows
        ]
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE;")
                try:
                    self._conn.executemany(
                        "INSERT INTO probe_results (subject, ts, status, latency_ms) VALUES (?, ?, ?, ?)",
                        params,
                    )
                    res = self._conn.execute("DELETE FROM probe_results WHERE ts < ?", (float(retention_cutoff),))
                    self._conn.execute("COMMIT;")
                except Exception:
                    self._conn.execute("ROLLBACK;")
                    raise
            except sqlite3.Error as exc:
                raise StoreError(f"Cycle commit failed: {exc}") from exc
        return int(res.rowcount or 0)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class ReadStore:
    """Read-only handle used by renders.

    Connections are per thread so concurrent renders never wait on each other.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._conns: list[sqlite3.Connection] = []
        # Open eagerly so a missing or unreadable database fails at startup.
        self._conn()

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        try:
            conn = _connect_read_only(self.db_path)
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to open read-only database at {self.db_path}: {exc}") from exc
        self._local.conn = conn
        with self._lock:
            self._conns.append(conn)
        return conn

    def close(self) -> None:
        with self._lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()

    def window_stats(self, subject: str, minutes: int, *, now_ts: float | None = None) -> WindowStats:
        """Uptime % over the window; latency aggregates consider UP rows only."""
        now = float(now_ts) if now_ts is not None else time.time()
        cutoff = now - float(minutes) * 60.0
        row = self._conn().execute(
            """
            SELECT
              COUNT(*) AS total,
              SUM(CASE WHEN status = 'UP' THEN 1 ELSE 0 END) AS up_count,
              AVG(CASE WHEN status = 'UP' THEN latency_ms END) AS avg_ms,
              MIN(CASE WHEN status = 'UP' THEN latency_ms END) AS min_ms,
              MAX(CASE WHEN status = 'UP' THEN latency_ms END) AS max_ms
            FROM probe_results
            WHERE subject = ? AND ts > ?
            """,
            (subject, cutoff),
        ).fetchone()
        return WindowStats(
            uptime_pct=_uptime(int(row["total"] or 0), row["up_count"]),
            avg_ms=row["avg_ms"],
            min_ms=row["min_ms"],
            max_ms=row["max_ms"],
        )

    def latest_status(self, subject: str) -> tuple[str, float | None]:
        row = self._conn().execute(
            "SELECT status, latency_ms FROM probe_results WHERE subject = ? ORDER BY id DESC LIMIT 1",
            (subject,),
        ).fetchone()
        if row is None:
            return STATUS_UNKNOWN, None
        return str(row["status"]), row["latency_ms"]

    def recent_checks(self, subject: str, limit: int) -> list[ProbeResult]:
        """Newest first."""
        rows = self._conn().execute(
            "SELECT subject, ts, status, latency_ms FROM probe_results WHERE subject = ? ORDER BY id DESC LIMIT ?",
            (subject, max(0, int(limit))),
        ).fetchall()
        return [
            ProbeResult(subject_key=str(r["subject"]), ts=float(r["ts"]), status=str(r["status"]), latency_ms=r["latency_ms"])
            for r in rows
        ]

    def group_uptime(self, subjects: list[str], minutes: int, *, now_ts: float | None = None) -> float | None:
        if not subjects:
            return None
        now = float(now_ts) if now_ts is not None else time.time()
        cutoff = now - float(minutes) * 60.0
        placeholders = ",".join("?" for _ in subjects)
        row = self._conn().execute(
            f"""
            SELECT COUNT(*) AS total, SUM(CASE WHEN status = 'UP' THEN 1 ELSE 0 END) AS up_count
            FROM probe_results
            WHERE subject IN ({placeholders}) AND ts > ?
            """,
            (*subjects, cutoff),
        ).fetchone()
        return _uptime(int(row["total"] or 0), row["up_count"])

    def count_rows(self, subject: str | None = None) -> int:
        if subject is None:
            row = self._conn().execute("SELECT COUNT(*) AS n FROM probe_results").fetchone()
        else:
            row = self._conn().execute("SELECT COUNT(*) AS n FROM probe_results WHERE subject = ?", (subject,)).fetchone()
        return int(row["n"] or 0)
