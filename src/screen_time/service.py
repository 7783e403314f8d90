from collections.abc import Mapping
from typing import Any

from screen_time.config import Settings
from screen_time.db import Database, init_db
from screen_time.grant_queue import GrantQueue
from screen_time.leases import LeaseStore
from screen_time.providers import build_router
from screen_time.recorder import GrantRecorder
from screen_time.schemas import GrantCommand, GrantResult, LedgerEntry, PendingGrant
from screen_time.worker import Worker


class ScreenTimeService:
    """Entry point for collaborators that award or revoke screen time.

    Task completion, gig completion and admin tooling only ever call
    ``submit`` and ``get_result``; providers and the ledger stay behind the
    queue.
    """

    def __init__(self, queue: GrantQueue, recorder: GrantRecorder) -> None:
        self.queue = queue
        self.recorder = recorder

    @classmethod
    def from_settings(cls, settings: Settings, db: Database | None = None) -> "ScreenTimeService":
        db = db or init_db(settings.database_path)
        return cls(GrantQueue(db, visibility_timeout_sec=settings.visibility_timeout_sec), GrantRecorder(db))

    def submit(self, cmd: GrantCommand | Mapping[str, Any]) -> str:
        return self.queue.enqueue(cmd)

    def get_result(self, command_id: str) -> GrantResult | PendingGrant | None:
        row = self.queue.get(command_id)
        if row is None:
            return None
        record = self.recorder.get(row["grant_key"])
        if record is not None:
            return record.to_result()
        return PendingGrant(
            id=command_id,
            submitted_at=row["submitted_at"],
            attempts=row["attempts"],
            last_error=row["last_error"],
        )

    def ledger(self, child_id: str, limit: int = 20) -> list[LedgerEntry]:
        return self.recorder.list_ledger(child_id, limit=limit)

    def outstanding(self, limit: int = 100) -> list[dict]:
        return self.queue.list_outstanding(limit=limit)


def build_worker(settings: Settings, db: Database | None = None, worker_id: str | None = None) -> Worker:
    db = db or init_db(settings.database_path)
    return Worker(
        GrantQueue(db, visibility_timeout_sec=settings.visibility_timeout_sec),
        GrantRecorder(db),
        LeaseStore(db, ttl_sec=settings.lease_ttl_sec),
        build_router(settings, db),
        worker_id=worker_id,
        provider_timeout_sec=settings.provider_timeout_sec,
        max_attempts=settings.max_attempts,
        retry_backoff_sec=settings.retry_backoff_sec,
        lease_wait_sec=settings.lease_wait_sec,
        poll_interval_sec=settings.poll_interval_sec,
        reward_mode=settings.reward_mode,
    )
