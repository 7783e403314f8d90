import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # fixed precision keeps stored timestamps comparable as plain strings
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class Database:
    """Thin handle around one sqlite file.

    Every call opens its own connection so the handle can be shared by
    worker threads. Mutations that must not interleave with another worker
    go through ``transaction()``, which takes the write lock up front.
    """

    def __init__(self, path: str, busy_timeout_sec: float = 30.0) -> None:
        self.path = path
        self.busy_timeout_sec = busy_timeout_sec

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_sec, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def init(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS grant_commands (
                  command_id TEXT PRIMARY KEY,
                  payload TEXT NOT NULL,
                  grant_key TEXT NOT NULL,
                  status TEXT NOT NULL,
                  attempts INTEGER NOT NULL DEFAULT 0,
                  provider_attempts INTEGER NOT NULL DEFAULT 0,
                  submitted_at TEXT NOT NULL,
                  visible_at TEXT NOT NULL,
                  leased_by TEXT,
                  leased_until TEXT,
                  last_error TEXT,
                  acked_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_grant_commands_status
                  ON grant_commands (status, visible_at);

                CREATE TABLE IF NOT EXISTS grant_leases (
                  grant_key TEXT PRIMARY KEY,
                  holder TEXT NOT NULL,
                  expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS screen_time_grants (
                  id TEXT PRIMARY KEY,
                  child_id TEXT NOT NULL,
                  type TEXT NOT NULL,
                  minutes_delta INTEGER NOT NULL,
                  status TEXT NOT NULL,
                  provider_payload TEXT,
                  error_message TEXT,
                  applied_at TEXT,
                  idempotency_key TEXT NOT NULL UNIQUE,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reward_ledger (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  grant_id TEXT NOT NULL UNIQUE,
                  user_id TEXT NOT NULL,
                  source_kind TEXT NOT NULL,
                  source_id TEXT NOT NULL,
                  reward_mode TEXT NOT NULL,
                  screen_minutes INTEGER NOT NULL,
                  awarded_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_reward_ledger_user
                  ON reward_ledger (user_id, id);

                CREATE TABLE IF NOT EXISTS child_allowances (
                  child_id TEXT PRIMARY KEY,
                  minutes INTEGER NOT NULL DEFAULT 0,
                  updated_at TEXT NOT NULL
                );
                """
            )
            if not _has_col(conn, "grant_commands", "provider_attempts"):
                conn.execute("ALTER TABLE grant_commands ADD COLUMN provider_attempts INTEGER NOT NULL DEFAULT 0")


def _has_col(conn: sqlite3.Connection, table: str, col: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == col for r in rows)


def init_db(path: str) -> Database:
    db = Database(path)
    db.init()
    return db
