import json
import sqlite3
from collections.abc import Callable
from datetime import datetime

from screen_time.db import Database, from_iso, to_iso, utcnow
from screen_time.errors import DuplicateCommand
from screen_time.schemas import GrantRecord, GrantStatus, LedgerEntry


class GrantRecorder:
    """Writes grant outcomes and their ledger entries.

    ``record`` is the only write path. A grant record and its ledger entry
    are inserted in one transaction, so a reader either sees both or
    neither. Records are keyed uniquely by idempotency key; a second write
    for the same key raises ``DuplicateCommand`` and changes nothing.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    def record(self, record: GrantRecord, ledger: LedgerEntry | None = None) -> None:
        applied = record.status == GrantStatus.APPLIED
        if applied and ledger is None:
            raise ValueError("applied grant requires a ledger entry")
        if not applied and ledger is not None:
            raise ValueError(f"ledger entry not allowed for {record.status.value} grant")
        if ledger is not None and ledger.grant_id != record.id:
            raise ValueError("ledger entry does not belong to this grant")

        with self.db.transaction() as conn:
            if not _insert_record(conn, record, to_iso(self.clock())):
                raise DuplicateCommand(record.idempotency_key)
            if ledger is not None:
                _insert_ledger(conn, ledger)

    def get(self, idempotency_key: str) -> GrantRecord | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM screen_time_grants WHERE idempotency_key = ?",
                (idempotency_key,),
            ).fetchone()
        return _row_to_record(row) if row else None

    def get_by_id(self, grant_id: str) -> GrantRecord | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM screen_time_grants WHERE id = ?", (grant_id,)).fetchone()
        return _row_to_record(row) if row else None

    def list_records(self, child_id: str, limit: int = 20) -> list[GrantRecord]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM screen_time_grants WHERE child_id = ? ORDER BY created_at DESC LIMIT ?",
                (child_id, limit),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def list_ledger(self, user_id: str, limit: int = 20) -> list[LedgerEntry]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM reward_ledger WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [
            LedgerEntry(
                grant_id=r["grant_id"],
                user_id=r["user_id"],
                source_kind=r["source_kind"],
                source_id=r["source_id"],
                reward_mode=r["reward_mode"],
                screen_minutes=r["screen_minutes"],
                awarded_at=from_iso(r["awarded_at"]),
            )
            for r in rows
        ]


def _insert_record(conn: sqlite3.Connection, record: GrantRecord, created_at: str) -> bool:
    cur = conn.execute(
        """
        INSERT INTO screen_time_grants (
          id, child_id, type, minutes_delta, status, provider_payload,
          error_message, applied_at, idempotency_key, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT DO NOTHING
        """,
        (
            record.id,
            record.child_id,
            record.type.value,
            record.minutes_delta,
            record.status.value,
            json.dumps(record.provider_payload) if record.provider_payload is not None else None,
            record.error_message,
            to_iso(record.applied_at) if record.applied_at else None,
            record.idempotency_key,
            created_at,
        ),
    )
    return cur.rowcount == 1


def _insert_ledger(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
    conn.execute(
        """
        INSERT INTO reward_ledger (grant_id, user_id, source_kind, source_id, reward_mode, screen_minutes, awarded_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.grant_id,
            entry.user_id,
            entry.source_kind.value,
            entry.source_id,
            entry.reward_mode,
            entry.screen_minutes,
            to_iso(entry.awarded_at),
        ),
    )


def _row_to_record(row: sqlite3.Row) -> GrantRecord:
    payload = row["provider_payload"]
    return GrantRecord(
        id=row["id"],
        child_id=row["child_id"],
        type=row["type"],
        minutes_delta=row["minutes_delta"],
        status=row["status"],
        provider_payload=json.loads(payload) if payload else None,
        error_message=row["error_message"],
        applied_at=from_iso(row["applied_at"]),
        idempotency_key=row["idempotency_key"],
        created_at=from_iso(row["created_at"]),
    )
