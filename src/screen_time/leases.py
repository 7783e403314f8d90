from collections.abc import Callable
from datetime import datetime, timedelta

from screen_time.db import Database, to_iso, utcnow


class LeaseStore:
    """Single-flight claims on idempotency keys.

    A lease is a row keyed by the idempotency key. It carries an expiry so
    a worker that dies while holding one cannot block the key forever.
    """

    def __init__(self, db: Database, ttl_sec: float = 30, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.ttl_sec = ttl_sec
        self.clock = clock

    def acquire(self, key: str, holder: str) -> bool:
        now = self.clock()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO grant_leases (grant_key, holder, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(grant_key) DO UPDATE
                SET holder = excluded.holder, expires_at = excluded.expires_at
                WHERE grant_leases.expires_at < ? OR grant_leases.holder = excluded.holder
                """,
                (key, holder, to_iso(now + timedelta(seconds=self.ttl_sec)), to_iso(now)),
            )
            row = conn.execute("SELECT holder FROM grant_leases WHERE grant_key = ?", (key,)).fetchone()
        return row is not None and row["holder"] == holder

    def release(self, key: str, holder: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM grant_leases WHERE grant_key = ? AND holder = ?", (key, holder))

    def holder(self, key: str) -> str | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT holder FROM grant_leases WHERE grant_key = ? AND expires_at >= ?",
                (key, to_iso(self.clock())),
            ).fetchone()
        return row["holder"] if row else None
