import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from uuid import uuid4

from screen_time.db import utcnow
from screen_time.errors import DuplicateCommand, TimeoutExpired
from screen_time.grant_queue import GrantQueue
from screen_time.leases import LeaseStore
from screen_time.providers import ProviderAdapter, ProviderRouter
from screen_time.recorder import GrantRecorder
from screen_time.schemas import (
    Delivery,
    GrantCommand,
    GrantRecord,
    GrantResult,
    GrantStatus,
    LedgerEntry,
    ProviderOutcome,
)

log = logging.getLogger("screen_time.worker")


def ensure_fresh(cmd: GrantCommand, now: datetime) -> None:
    if cmd.ttl_sec is None or cmd.submitted_at is None:
        return
    elapsed = (now - cmd.submitted_at).total_seconds()
    if elapsed > cmd.ttl_sec:
        raise TimeoutExpired(f"ttl_expired: {elapsed:.3f}s > {cmd.ttl_sec}s")


class Worker:
    def __init__(
        self,
        queue: GrantQueue,
        recorder: GrantRecorder,
        leases: LeaseStore,
        router: ProviderRouter,
        *,
        worker_id: str | None = None,
        provider_timeout_sec: float = 10.0,
        max_attempts: int = 5,
        retry_backoff_sec: float = 5.0,
        lease_wait_sec: float = 20.0,
        poll_interval_sec: float = 0.5,
        reward_mode: str = "screenTime",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queue = queue
        self.recorder = recorder
        self.leases = leases
        self.router = router
        self.worker_id = worker_id or f"worker-{uuid4().hex[:12]}"
        self.provider_timeout_sec = provider_timeout_sec
        self.max_attempts = max_attempts
        self.retry_backoff_sec = retry_backoff_sec
        self.lease_wait_sec = lease_wait_sec
        self.poll_interval_sec = poll_interval_sec
        self.reward_mode = reward_mode
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix=f"{self.worker_id}-provider")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def run_once(self) -> GrantResult | None:
        delivery = self.queue.dequeue(self.worker_id)
        if delivery is None:
            return None
        return self.process(delivery)

    def run_forever(self, stop: threading.Event | None = None) -> None:
        stop = stop or threading.Event()
        log.info("worker %s started, routes=%s", self.worker_id, self.router.describe())
        while not stop.is_set():
            try:
                delivery = self.queue.dequeue(self.worker_id)
            except Exception:
                log.exception("dequeue failed")
                stop.wait(self.poll_interval_sec)
                continue
            if delivery is None:
                stop.wait(self.poll_interval_sec)
                continue
            try:
                self.process(delivery)
            except Exception as exc:
                log.exception("processing %s failed, requeueing", delivery.command.id)
                self._requeue_after_crash(delivery, exc)
        log.info("worker %s stopped", self.worker_id)

    def _requeue_after_crash(self, delivery: Delivery, exc: Exception) -> None:
        delay = self.retry_backoff_sec * delivery.attempt
        try:
            self.queue.nack(delivery.command.id, delay, error=f"worker_error: {exc}")
        except Exception:
            # left leased; visibility timeout redelivers it
            log.exception("could not requeue %s", delivery.command.id)

    def process(self, delivery: Delivery) -> GrantResult | None:
        """Drive one delivery to a terminal result.

        Returns None when the delivery was handed back to the queue, either
        for a retryable provider failure or because another worker held the
        key for longer than ``lease_wait_sec``.
        """
        cmd = delivery.command
        key = cmd.effective_key

        claimed, existing = self._claim(key)
        if not claimed:
            if existing is None:
                log.warning("lease on %s still busy, requeueing %s", key, cmd.id)
                self.queue.nack(cmd.id, self.poll_interval_sec, error="lease_busy")
                return None
            log.info("duplicate %s resolved by winner for key %s", cmd.id, key)
            self.queue.ack(cmd.id)
            return existing.to_result()

        try:
            existing = self.recorder.get(key)
            if existing is not None:
                log.info("duplicate delivery %s short-circuited for key %s", cmd.id, key)
                self.queue.ack(cmd.id)
                return existing.to_result()

            try:
                ensure_fresh(cmd, self.clock())
            except TimeoutExpired as exc:
                record = self._build_record(cmd, GrantStatus.EXPIRED, error=str(exc))
                return self._finish(cmd, record, None)

            adapter = self.router.route(cmd.source.kind)
            outcome = self._call_provider(adapter, cmd)

            if outcome.success:
                record = self._build_record(cmd, GrantStatus.APPLIED, provider_ref=outcome.provider_ref)
                ledger = LedgerEntry(
                    grant_id=record.id,
                    user_id=cmd.child_id,
                    source_kind=cmd.source.kind,
                    source_id=cmd.source.id,
                    reward_mode=self.reward_mode,
                    screen_minutes=cmd.minutes,
                    awarded_at=record.applied_at,
                )
                return self._finish(cmd, record, ledger)

            provider_attempt = delivery.provider_attempts + 1
            if outcome.retryable and provider_attempt < self.max_attempts:
                delay = self.retry_backoff_sec * provider_attempt
                log.warning(
                    "retryable failure for %s via %s (attempt %d/%d): %s",
                    cmd.id,
                    adapter.name,
                    provider_attempt,
                    self.max_attempts,
                    outcome.error,
                )
                self.queue.nack(cmd.id, delay, error=outcome.error, provider_attempted=True)
                return None

            record = self._build_record(cmd, GrantStatus.FAILED, error=outcome.error)
            return self._finish(cmd, record, None)
        finally:
            self.leases.release(key, self.worker_id)

    def _claim(self, key: str) -> tuple[bool, GrantRecord | None]:
        deadline = time.monotonic() + self.lease_wait_sec
        while True:
            if self.leases.acquire(key, self.worker_id):
                return True, None
            record = self.recorder.get(key)
            if record is not None:
                return False, record
            if time.monotonic() >= deadline:
                return False, None
            time.sleep(self.poll_interval_sec)

    def _call_provider(self, adapter: ProviderAdapter, cmd: GrantCommand) -> ProviderOutcome:
        future = self._executor.submit(adapter.apply_allowance_delta, cmd.child_id, cmd.minutes)
        try:
            return future.result(timeout=self.provider_timeout_sec)
        except FutureTimeout:
            future.cancel()
            return ProviderOutcome(
                success=False,
                error=f"provider_timeout_{self.provider_timeout_sec:g}s",
                retryable=True,
            )
        except Exception as exc:
            log.exception("provider %s raised for %s", adapter.name, cmd.id)
            return ProviderOutcome(success=False, error=f"provider_exception: {exc}", retryable=True)

    def _build_record(
        self,
        cmd: GrantCommand,
        status: GrantStatus,
        provider_ref: str | None = None,
        error: str | None = None,
    ) -> GrantRecord:
        return GrantRecord(
            id=cmd.id,
            child_id=cmd.child_id,
            type=cmd.grant_type,
            minutes_delta=cmd.minutes,
            status=status,
            provider_payload={"ref": provider_ref} if provider_ref else None,
            error_message=error,
            applied_at=self.clock() if status == GrantStatus.APPLIED else None,
            idempotency_key=cmd.effective_key,
        )

    def _finish(self, cmd: GrantCommand, record: GrantRecord, ledger: LedgerEntry | None) -> GrantResult:
        try:
            self.recorder.record(record, ledger)
        except DuplicateCommand:
            stored = self.recorder.get(record.idempotency_key)
            if stored is None:
                raise
            log.warning("grant for key %s already recorded, keeping stored outcome", record.idempotency_key)
            record = stored

        self.queue.ack(cmd.id)
        log.info(
            "grant %s for child %s %s (%+d min)",
            record.id,
            record.child_id,
            record.status.value,
            record.minutes_delta,
        )
        return record.to_result()
