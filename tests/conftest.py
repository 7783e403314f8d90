import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from screen_time import config
from screen_time.db import init_db
from screen_time.grant_queue import GrantQueue
from screen_time.leases import LeaseStore
from screen_time.providers import ProviderRouter
from screen_time.recorder import GrantRecorder
from screen_time.schemas import ProviderOutcome, SourceKind
from screen_time.worker import Worker


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeAdapter:
    def __init__(self, name="fake", outcomes=None, delay=0.0) -> None:
        self.name = name
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def apply_allowance_delta(self, child_id: str, minutes: int) -> ProviderOutcome:
        with self._lock:
            self.calls.append((child_id, minutes))
            n = len(self.calls)
        if self.delay:
            time.sleep(self.delay)
        if self.outcomes:
            return self.outcomes[min(n, len(self.outcomes)) - 1]
        return ProviderOutcome(success=True, provider_ref=f"{self.name}-ref-{n}")


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    db_path = tmp_path / "screen_time.db"
    monkeypatch.setattr(config.settings, "database_path", str(db_path))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "run_worker_inline", False)
    yield


@pytest.fixture
def db():
    return init_db(config.settings.database_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(db, clock):
    return GrantQueue(db, visibility_timeout_sec=60, clock=clock)


@pytest.fixture
def recorder(db, clock):
    return GrantRecorder(db, clock=clock)


@pytest.fixture
def leases(db, clock):
    return LeaseStore(db, ttl_sec=30, clock=clock)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def make_worker(queue, recorder, leases, clock):
    created = []

    def _make(adapter, worker_id=None, **kwargs):
        router = ProviderRouter({kind: adapter for kind in SourceKind})
        opts = {
            "provider_timeout_sec": 2.0,
            "max_attempts": 3,
            "retry_backoff_sec": 1.0,
            "lease_wait_sec": 5.0,
            "poll_interval_sec": 0.01,
            "clock": clock,
        }
        opts.update(kwargs)
        worker = Worker(queue, recorder, leases, router, worker_id=worker_id, **opts)
        created.append(worker)
        return worker

    yield _make
    for w in created:
        w.close()


def task_command(**overrides) -> dict:
    cmd = {
        "child_id": "c1",
        "minutes": 30,
        "source": {"kind": "task", "id": "t1"},
        "idempotency_key": "k1",
    }
    cmd.update(overrides)
    return cmd
