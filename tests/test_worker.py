import threading

import pytest

from conftest import FakeAdapter, task_command
from screen_time.providers import ProviderRouter
from screen_time.schemas import GrantStatus, GrantType, ProviderOutcome, SourceKind


def test_end_to_end_task_grant(queue, recorder, make_worker, clock) -> None:
    adapter = FakeAdapter(outcomes=[ProviderOutcome(success=True, provider_ref="ref-1")])
    worker = make_worker(adapter)
    command_id = queue.enqueue(task_command())

    result = worker.run_once()

    assert result.id == command_id
    assert result.status == GrantStatus.APPLIED
    assert result.provider_ref == "ref-1"
    assert result.applied_at == clock.now

    record = recorder.get("k1")
    assert record.child_id == "c1"
    assert record.minutes_delta == 30
    assert record.type == GrantType.GRANT
    assert record.provider_payload == {"ref": "ref-1"}

    [entry] = recorder.list_ledger("c1")
    assert entry.user_id == "c1"
    assert entry.source_id == "t1"
    assert entry.reward_mode == "screenTime"
    assert entry.screen_minutes == 30
    assert entry.grant_id == command_id

    assert adapter.calls == [("c1", 30)]
    assert queue.list_outstanding() == []


def test_provider_denial_records_failure_without_ledger(queue, recorder, make_worker) -> None:
    adapter = FakeAdapter(outcomes=[ProviderOutcome(success=False, error="denied")])
    queue.enqueue(task_command())

    result = make_worker(adapter).run_once()

    assert result.status == GrantStatus.FAILED
    assert result.error == "denied"
    assert recorder.get("k1").error_message == "denied"
    assert recorder.list_ledger("c1") == []
    assert queue.list_outstanding() == []


def test_stale_command_expires_without_provider_call(queue, recorder, make_worker, clock) -> None:
    adapter = FakeAdapter()
    queue.enqueue(task_command(ttl_sec=0))
    clock.advance(0.001)

    result = make_worker(adapter).run_once()

    assert result.status == GrantStatus.EXPIRED
    assert adapter.calls == []
    assert recorder.get("k1").status == GrantStatus.EXPIRED
    assert recorder.list_ledger("c1") == []


def test_command_within_ttl_is_applied(queue, make_worker, clock) -> None:
    queue.enqueue(task_command(ttl_sec=60))
    clock.advance(59)
    assert make_worker(FakeAdapter()).run_once().status == GrantStatus.APPLIED


def test_revoke_is_recorded_with_negative_delta(queue, recorder, make_worker) -> None:
    queue.enqueue(task_command(minutes=-15, source={"kind": "manual", "id": "admin-7"}))
    make_worker(FakeAdapter()).run_once()

    record = recorder.get("k1")
    assert record.type == GrantType.REVOKE
    assert record.minutes_delta == -15
    assert recorder.list_ledger("c1")[0].screen_minutes == -15


def test_same_key_submitted_twice_applies_once(queue, recorder, make_worker) -> None:
    adapter = FakeAdapter()
    worker = make_worker(adapter)

    queue.enqueue(task_command(id="first"))
    first = worker.run_once()
    queue.enqueue(task_command(id="second"))
    second = worker.run_once()

    assert second == first
    assert len(adapter.calls) == 1
    assert len(recorder.list_records("c1")) == 1
    assert len(recorder.list_ledger("c1")) == 1
    assert queue.list_outstanding() == []


def test_two_workers_racing_on_one_key_call_provider_once(queue, recorder, make_worker) -> None:
    adapter = FakeAdapter(delay=0.2)
    w1 = make_worker(adapter, worker_id="w1")
    w2 = make_worker(adapter, worker_id="w2")

    queue.enqueue(task_command(id="a"))
    queue.enqueue(task_command(id="b"))
    d1 = queue.dequeue(w1.worker_id)
    d2 = queue.dequeue(w2.worker_id)

    results = {}
    threads = [
        threading.Thread(target=lambda: results.__setitem__("a", w1.process(d1))),
        threading.Thread(target=lambda: results.__setitem__("b", w2.process(d2))),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(adapter.calls) == 1
    assert results["a"] == results["b"]
    assert results["a"].status == GrantStatus.APPLIED
    assert len(recorder.list_ledger("c1")) == 1
    assert queue.list_outstanding() == []


def test_retryable_failure_is_redelivered_then_applied(queue, make_worker, clock) -> None:
    adapter = FakeAdapter(
        outcomes=[
            ProviderOutcome(success=False, error="transient_http_503", retryable=True),
            ProviderOutcome(success=True, provider_ref="ref-2"),
        ]
    )
    worker = make_worker(adapter)
    command_id = queue.enqueue(task_command())

    assert worker.run_once() is None
    assert queue.get(command_id)["last_error"] == "transient_http_503"
    assert worker.run_once() is None  # still backing off

    clock.advance(1)
    result = worker.run_once()
    assert result.status == GrantStatus.APPLIED
    assert result.provider_ref == "ref-2"
    assert len(adapter.calls) == 2


def test_retryable_failure_gives_up_after_max_attempts(queue, recorder, make_worker, clock) -> None:
    adapter = FakeAdapter(outcomes=[ProviderOutcome(success=False, error="timeout", retryable=True)])
    worker = make_worker(adapter, max_attempts=3)
    queue.enqueue(task_command())

    result = None
    for _ in range(3):
        result = worker.run_once()
        clock.advance(10)

    assert result.status == GrantStatus.FAILED
    assert result.error == "timeout"
    assert len(adapter.calls) == 3
    assert recorder.list_ledger("c1") == []
    assert queue.list_outstanding() == []


def test_slow_provider_is_treated_as_transient(queue, make_worker) -> None:
    adapter = FakeAdapter(delay=0.5)
    worker = make_worker(adapter, provider_timeout_sec=0.05)
    command_id = queue.enqueue(task_command())

    assert worker.run_once() is None
    row = queue.get(command_id)
    assert row["status"] == "queued"
    assert row["last_error"].startswith("provider_timeout")


def test_adapter_exception_is_retryable(queue, make_worker) -> None:
    class Exploding:
        name = "exploding"

        def apply_allowance_delta(self, child_id, minutes):
            raise ConnectionResetError("socket closed")

    command_id = queue.enqueue(task_command())
    assert make_worker(Exploding()).run_once() is None
    assert "socket closed" in queue.get(command_id)["last_error"]


def test_crash_before_ack_does_not_reapply(queue, recorder, make_worker, clock, monkeypatch) -> None:
    adapter = FakeAdapter()
    worker = make_worker(adapter)
    queue.enqueue(task_command())

    original_ack = queue.ack

    def _crash(command_id):
        raise RuntimeError("worker died before ack")

    monkeypatch.setattr(queue, "ack", _crash)
    with pytest.raises(RuntimeError):
        worker.run_once()
    monkeypatch.setattr(queue, "ack", original_ack)

    clock.advance(61)
    result = make_worker(adapter).run_once()

    assert result.status == GrantStatus.APPLIED
    assert len(adapter.calls) == 1
    assert len(recorder.list_ledger("c1")) == 1
    assert queue.list_outstanding() == []


def test_redelivery_while_dead_worker_holds_lease(queue, leases, recorder, make_worker, clock) -> None:
    adapter = FakeAdapter()
    queue.enqueue(task_command(id="a"))
    make_worker(adapter).run_once()

    queue.enqueue(task_command(id="b"))
    assert leases.acquire("k1", "dead-worker")

    result = make_worker(adapter).run_once()
    assert result.id == "a"
    assert len(adapter.calls) == 1


def test_busy_lease_without_result_requeues(queue, leases, make_worker) -> None:
    adapter = FakeAdapter()
    command_id = queue.enqueue(task_command())
    assert leases.acquire("k1", "other-worker")

    assert make_worker(adapter, lease_wait_sec=0.05).run_once() is None
    assert adapter.calls == []
    assert queue.get(command_id)["last_error"] == "lease_busy"


def test_source_kind_selects_adapter(queue, recorder, leases, clock) -> None:
    from screen_time.worker import Worker

    task_adapter = FakeAdapter(name="task-backend")
    manual_adapter = FakeAdapter(name="manual-backend")
    router = ProviderRouter(
        {SourceKind.TASK: task_adapter, SourceKind.GIG: task_adapter, SourceKind.MANUAL: manual_adapter}
    )
    worker = Worker(queue, recorder, leases, router, poll_interval_sec=0.01, clock=clock)
    try:
        queue.enqueue(task_command(idempotency_key="m1", source={"kind": "manual", "id": "admin-1"}))
        result = worker.run_once()
    finally:
        worker.close()

    assert result.provider_ref == "manual-backend-ref-1"
    assert task_adapter.calls == []


def test_run_forever_drains_queue_until_stopped(queue, recorder, make_worker) -> None:
    worker = make_worker(FakeAdapter())
    for i in range(3):
        queue.enqueue(task_command(id=f"cmd-{i}", idempotency_key=f"key-{i}"))

    stop = threading.Event()
    t = threading.Thread(target=worker.run_forever, args=(stop,))
    t.start()
    for _ in range(200):
        if not queue.list_outstanding():
            break
        stop.wait(0.01)
    stop.set()
    t.join(timeout=5)

    assert queue.list_outstanding() == []
    assert len(recorder.list_ledger("c1")) == 3


def test_run_forever_survives_a_failing_delivery(queue, recorder, make_worker, clock, monkeypatch) -> None:
    adapter = FakeAdapter()
    worker = make_worker(adapter)
    queue.enqueue(task_command(id="a", idempotency_key="key-a"))
    queue.enqueue(task_command(id="b", idempotency_key="key-b"))

    real_record = recorder.record
    failures = []

    def _record_once(record, ledger=None):
        if not failures:
            failures.append(record.id)
            raise RuntimeError("database is locked")
        return real_record(record, ledger)

    monkeypatch.setattr(recorder, "record", _record_once)

    stop = threading.Event()
    t = threading.Thread(target=worker.run_forever, args=(stop,))
    t.start()
    try:
        for _ in range(300):
            if recorder.get("key-b") is not None:
                break
            stop.wait(0.01)
        assert t.is_alive()
        assert recorder.get("key-b").status == GrantStatus.APPLIED
        assert "database is locked" in queue.get("a")["last_error"]

        clock.advance(1)
        for _ in range(300):
            if not queue.list_outstanding():
                break
            stop.wait(0.01)
    finally:
        stop.set()
        t.join(timeout=5)

    assert failures == ["a"]
    assert recorder.get("key-a").status == GrantStatus.APPLIED
    assert queue.list_outstanding() == []


def test_lease_busy_redelivery_keeps_provider_retry_budget(queue, leases, make_worker, clock) -> None:
    adapter = FakeAdapter(
        outcomes=[
            ProviderOutcome(success=False, error="transient_http_503", retryable=True),
            ProviderOutcome(success=True, provider_ref="ref-9"),
        ]
    )
    worker = make_worker(adapter, max_attempts=2, lease_wait_sec=0.05)
    command_id = queue.enqueue(task_command())

    assert leases.acquire("k1", "other-worker")
    assert worker.run_once() is None
    assert adapter.calls == []
    leases.release("k1", "other-worker")

    clock.advance(1)
    assert worker.run_once() is None
    row = queue.get(command_id)
    assert row["attempts"] == 2
    assert row["provider_attempts"] == 1

    clock.advance(1)
    result = worker.run_once()
    assert result.status == GrantStatus.APPLIED
    assert result.provider_ref == "ref-9"
    assert len(adapter.calls) == 2


def test_visibility_redelivery_does_not_count_as_provider_attempt(queue, make_worker, clock) -> None:
    adapter = FakeAdapter(outcomes=[ProviderOutcome(success=False, error="timeout", retryable=True)])
    worker = make_worker(adapter, max_attempts=2)
    command_id = queue.enqueue(task_command())

    queue.dequeue("crashed-worker")
    clock.advance(61)

    assert worker.run_once() is None
    assert queue.get(command_id)["status"] == "queued"
    assert queue.get(command_id)["provider_attempts"] == 1
