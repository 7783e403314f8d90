import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from screen_time.db import Database, from_iso, to_iso, utcnow
from screen_time.errors import GrantValidationError
from screen_time.schemas import Delivery, GrantCommand

log = logging.getLogger("screen_time.queue")


class GrantQueue:
    """Durable at-least-once mailbox backed by the ``grant_commands`` table.

    A delivery stays leased for ``visibility_timeout_sec``. If the worker
    neither acks nor nacks it in that window the command becomes visible
    again and is handed to the next caller of ``dequeue``.
    """

    def __init__(
        self,
        db: Database,
        visibility_timeout_sec: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.visibility_timeout_sec = visibility_timeout_sec
        self.clock = clock

    def enqueue(self, cmd: GrantCommand | Mapping[str, Any]) -> str:
        try:
            if isinstance(cmd, GrantCommand):
                cmd = GrantCommand.model_validate(cmd.model_dump())
            else:
                cmd = GrantCommand.model_validate(dict(cmd))
        except ValidationError as exc:
            raise GrantValidationError(str(exc)) from exc

        now = self.clock()
        cmd = cmd.model_copy(update={"submitted_at": now})
        ts = to_iso(now)
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO grant_commands (command_id, payload, grant_key, status, submitted_at, visible_at)
                VALUES (?, ?, ?, 'queued', ?, ?)
                ON CONFLICT(command_id) DO NOTHING
                """,
                (cmd.id, cmd.model_dump_json(), cmd.effective_key, ts, ts),
            )
            if cur.rowcount == 0:
                log.info("command %s already enqueued", cmd.id)
        return cmd.id

    def dequeue(self, worker_id: str) -> Delivery | None:
        now = self.clock()
        ts = to_iso(now)
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT command_id, payload, attempts, provider_attempts, status FROM grant_commands
                WHERE (status = 'queued' AND visible_at <= ?)
                   OR (status = 'leased' AND leased_until < ?)
                ORDER BY submitted_at, command_id
                LIMIT 1
                """,
                (ts, ts),
            ).fetchone()
            if not row:
                return None

            attempt = int(row["attempts"]) + 1
            conn.execute(
                """
                UPDATE grant_commands
                SET status = 'leased', attempts = ?, leased_by = ?, leased_until = ?
                WHERE command_id = ?
                """,
                (
                    attempt,
                    worker_id,
                    to_iso(now + timedelta(seconds=self.visibility_timeout_sec)),
                    row["command_id"],
                ),
            )

        if row["status"] == "leased":
            log.warning("redelivering %s (attempt %d)", row["command_id"], attempt)
        command = GrantCommand.model_validate_json(row["payload"])
        return Delivery(
            command=command,
            attempt=attempt,
            provider_attempts=int(row["provider_attempts"]),
            worker_id=worker_id,
        )

    def ack(self, command_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE grant_commands
                SET status = 'acked', acked_at = ?, leased_by = NULL, leased_until = NULL
                WHERE command_id = ? AND status != 'acked'
                """,
                (to_iso(self.clock()), command_id),
            )

    def nack(
        self,
        command_id: str,
        delay_sec: float = 0,
        error: str | None = None,
        provider_attempted: bool = False,
    ) -> None:
        """Hand a delivery back for redelivery after ``delay_sec``.

        ``provider_attempted`` marks a delivery that reached the provider and
        failed; only those count against the provider retry budget.
        """
        visible_at = self.clock() + timedelta(seconds=delay_sec)
        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE grant_commands
                SET status = 'queued', visible_at = ?, last_error = ?, leased_by = NULL, leased_until = NULL,
                    provider_attempts = provider_attempts + ?
                WHERE command_id = ? AND status != 'acked'
                """,
                (to_iso(visible_at), error, 1 if provider_attempted else 0, command_id),
            )

    def get(self, command_id: str) -> dict | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM grant_commands WHERE command_id = ?", (command_id,)).fetchone()
        return _row_to_dict(row) if row else None

    def list_outstanding(self, limit: int = 100) -> list[dict]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM grant_commands
                WHERE status != 'acked'
                ORDER BY submitted_at
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [_row_to_dict(r) for r in rows]


def _row_to_dict(row) -> dict:
    data = dict(row)
    data.pop("payload", None)
    data["submitted_at"] = from_iso(data["submitted_at"])
    return data
