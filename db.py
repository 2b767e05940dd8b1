import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

from db_pool import SQLiteConnectionPool

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")
MAX_CONNECTIONS = 10
BUSY_TIMEOUT = 5.0

# Created on first use; reset_pool() tears it down (tests, reconfiguration).
_pool: Optional[SQLiteConnectionPool] = None
_pool_lock = threading.Lock()


class TransactionConflictError(RuntimeError):
    """Another writer committed a user's stats between our read and commit."""


def _get_pool() -> SQLiteConnectionPool:
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = SQLiteConnectionPool(
                DB_PATH, max_connections=MAX_CONNECTIONS, busy_timeout=BUSY_TIMEOUT
            )
        return _pool


def reset_pool() -> None:
    """Close all pooled connections; the next call reconnects using ``DB_PATH``."""
    global _pool
    with _pool_lock:
        pool, _pool = _pool, None
    if pool is not None:
        pool.close_all()


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _get_pool().get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _conn() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _conn() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              user_id        TEXT PRIMARY KEY,
              display_name   TEXT,
              role           TEXT,
              xp             INTEGER NOT NULL DEFAULT 0,
              stats_version  INTEGER NOT NULL DEFAULT 0,
              created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS trait_stats (
              user_id       TEXT NOT NULL,
              trait         TEXT NOT NULL,
              score         REAL NOT NULL,
              last_updated  TEXT NOT NULL,
              PRIMARY KEY (user_id, trait),
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS lesson_logs (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id     TEXT NOT NULL,
              lesson_id   TEXT NOT NULL,
              xp_gained   INTEGER NOT NULL DEFAULT 0,
              scores      TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_lesson_logs_user ON lesson_logs(user_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS xapi_statements (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id     TEXT NOT NULL,
              verb        TEXT NOT NULL,
              object_id   TEXT NOT NULL,
              score       REAL,
              success     INTEGER,
              context     TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_xapi_statements_user ON xapi_statements(user_id, created_at DESC);
            """
        )
        con.commit()


# -------------- stats transactions --------------
def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class StatsTransaction:
    """Optimistic read-modify-write over one user's trait stats.

    ``read_user_stats`` records the user's ``stats_version``; ``commit``
    only succeeds if that version is still current, otherwise it raises
    :class:`TransactionConflictError` and nothing is written. A write lock
    that cannot be taken within the busy timeout is reported the same way.
    Staged writes, including an optional lesson log, live in memory until
    ``commit``.
    """

    def __init__(self, con: sqlite3.Connection):
        self._con = con
        self._user_id: Optional[str] = None
        self._version: Optional[int] = None
        self._staged: Optional[Dict[str, Dict[str, Any]]] = None
        self._lesson: Optional[Dict[str, Any]] = None
        self._done = False
        self.lesson_log_id: Optional[int] = None

    def read_user_stats(self, user_id: str) -> Optional[Dict[str, Dict[str, Any]]]:
        """Return stored stats keyed by trait, or ``None`` if the user is unknown."""

        self._ensure_open()
        # fetchall() so no statement keeps a stale WAL snapshot open before commit.
        version_rows = self._con.execute(
            "SELECT stats_version FROM users WHERE user_id = ?", (user_id,)
        ).fetchall()
        self._user_id = user_id
        self._staged = None
        self._lesson = None
        if not version_rows:
            self._version = None
            return None
        row = version_rows[0]
        # Version is read before the rows; a writer landing in between is
        # caught by the version check at commit.
        self._version = int(row["stats_version"])
        rows = self._con.execute(
            "SELECT trait, score, last_updated FROM trait_stats WHERE user_id = ?",
            (user_id,),
        ).fetchall()
        return {
            r["trait"]: {"score": r["score"], "last_updated": r["last_updated"]}
            for r in rows
        }

    def write_user_stats(self, user_id: str, stats: Mapping[str, Mapping[str, Any]]) -> None:
        """Stage ``{trait: {"score": ..., "last_updated": ...}}`` for commit."""

        self._require_known_user(user_id)
        staged: Dict[str, Dict[str, Any]] = {}
        for trait, entry in stats.items():
            last_updated = entry["last_updated"]
            if isinstance(last_updated, datetime):
                last_updated = last_updated.isoformat()
            staged[str(trait)] = {"score": float(entry["score"]), "last_updated": str(last_updated)}
        self._staged = staged

    def log_lesson(
        self,
        user_id: str,
        lesson_id: str,
        xp_gained: int = 0,
        scores: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Stage a lesson log row and its XP credit to commit with the stats."""

        self._require_known_user(user_id)
        self._lesson = {
            "lesson_id": lesson_id,
            "xp_gained": int(xp_gained),
            "scores": json_dumps(dict(scores or {})),
        }

    def commit(self) -> None:
        self._ensure_open()
        if self._user_id is None:
            raise RuntimeError("commit requires a prior read_user_stats")
        if self._version is None:
            raise RuntimeError(f"cannot commit stats for unknown user {self._user_id!r}")

        con = self._con
        try:
            con.execute("BEGIN IMMEDIATE")
            cur = con.execute(
                "UPDATE users SET stats_version = stats_version + 1 WHERE user_id = ? AND stats_version = ?",
                (self._user_id, self._version),
            )
            if cur.rowcount != 1:
                raise TransactionConflictError(
                    f"stats for user {self._user_id!r} changed since version {self._version}"
                )
            if self._staged:
                con.executemany(
                    """
                    INSERT INTO trait_stats(user_id, trait, score, last_updated) VALUES (?,?,?,?)
                    ON CONFLICT(user_id, trait) DO UPDATE SET
                      score=excluded.score,
                      last_updated=excluded.last_updated
                    """,
                    [
                        (self._user_id, trait, entry["score"], entry["last_updated"])
                        for trait, entry in self._staged.items()
                    ],
                )
            lesson_log_id = None
            if self._lesson is not None:
                lesson_log_id = _insert_lesson_log(con, self._user_id, **self._lesson)
            con.commit()
        except sqlite3.OperationalError as exc:
            con.rollback()
            if _is_lock_error(exc):
                raise TransactionConflictError(
                    f"stats store locked while committing user {self._user_id!r}"
                ) from exc
            raise
        except BaseException:
            con.rollback()
            raise
        self._version += 1
        self.lesson_log_id = lesson_log_id
        self._done = True

    def _require_known_user(self, user_id: str) -> None:
        self._ensure_open()
        if user_id != self._user_id:
            raise RuntimeError("staged writes must follow read_user_stats for the same user")
        if self._version is None:
            raise RuntimeError(f"cannot stage writes for unknown user {user_id!r}")

    def _ensure_open(self) -> None:
        if self._done:
            raise RuntimeError("transaction already committed or closed")

    def _close(self) -> None:
        self._staged = None
        self._lesson = None
        self._done = True


@contextmanager
def begin_transaction() -> Iterator[StatsTransaction]:
    """Open a stats transaction on a pooled connection.

    Leaving the block without ``commit()`` discards everything staged.
    """
    with _conn() as con:
        txn = StatsTransaction(con)
        try:
            yield txn
        finally:
            txn._close()


# -------------- users --------------
def create_user(user_id: str, display_name: Optional[str] = None, role: Optional[str] = None):
    _exec(
        "INSERT INTO users(user_id, display_name, role) VALUES (?,?,?)",
        (user_id, display_name, role),
    )

def ensure_user(user_id: str):
    rows = _query("SELECT 1 FROM users WHERE user_id = ?", (user_id,))
    if not rows:
        _exec("INSERT OR IGNORE INTO users(user_id) VALUES (?)", (user_id,))

def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT user_id, display_name, role, xp, stats_version, created_at FROM users WHERE user_id = ?",
        (user_id,),
    )
    return dict(rows[0]) if rows else None

def list_trait_stats(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT user_id, trait, score, last_updated FROM trait_stats WHERE user_id = ? ORDER BY trait",
        (user_id,),
    )
    return [dict(row) for row in rows]


# -------------- lesson logs --------------
def _insert_lesson_log(con: sqlite3.Connection, user_id: str, lesson_id: str, xp_gained: int, scores: str) -> int:
    cur = con.execute(
        "INSERT INTO lesson_logs(user_id, lesson_id, xp_gained, scores) VALUES (?,?,?,?)",
        (user_id, lesson_id, xp_gained, scores),
    )
    con.execute("UPDATE users SET xp = xp + ? WHERE user_id = ?", (xp_gained, user_id))
    return int(cur.lastrowid)

def log_lesson_completion(
    user_id: str,
    lesson_id: str,
    xp_gained: int = 0,
    scores: Optional[Mapping[str, Any]] = None,
) -> int:
    """Record a completed lesson and credit its XP in one transaction."""

    with _conn() as con:
        log_id = _insert_lesson_log(
            con, user_id, lesson_id, int(xp_gained), json_dumps(dict(scores or {}))
        )
        con.commit()
    return log_id

def list_lesson_logs(user_id: str, limit: int = 50) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, user_id, lesson_id, xp_gained, scores, created_at
        FROM lesson_logs WHERE user_id = ? ORDER BY id DESC LIMIT ?
        """,
        (user_id, int(limit)),
    )
    entries = []
    for row in rows:
        entry = dict(row)
        entry["scores"] = _decode_json_field(entry.get("scores"))
        entries.append(entry)
    return entries


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def delete_user_data(user_id: str) -> Dict[str, int]:
    user_tables = [
        "trait_stats",
        "lesson_logs",
        "xapi_statements",
    ]
    counts: Dict[str, int] = {}
    with _conn() as con:
        for table in user_tables:
            cur = con.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
            counts[table] = cur.rowcount if cur is not None else 0
        cur = con.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
        counts["users"] = cur.rowcount if cur is not None else 0
        con.commit()
    return counts
