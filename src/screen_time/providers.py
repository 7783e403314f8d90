import random
import time
from collections.abc import Callable, Mapping
from typing import Protocol

import httpx

from screen_time.config import Settings
from screen_time.db import Database, to_iso, utcnow
from screen_time.errors import ProviderError
from screen_time.schemas import ProviderOutcome, SourceKind

TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


class ProviderAdapter(Protocol):
    name: str

    def apply_allowance_delta(self, child_id: str, minutes: int) -> ProviderOutcome: ...


class LocalAllowanceAdapter:
    """Keeps allowances in the local ``child_allowances`` table."""

    name = "local"

    def __init__(self, db: Database) -> None:
        self.db = db

    def register_child(self, child_id: str, minutes: int = 0) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO child_allowances (child_id, minutes, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(child_id) DO NOTHING
                """,
                (child_id, minutes, to_iso(utcnow())),
            )

    def get_balance(self, child_id: str) -> int | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT minutes FROM child_allowances WHERE child_id = ?", (child_id,)).fetchone()
        return int(row["minutes"]) if row else None

    def apply_allowance_delta(self, child_id: str, minutes: int) -> ProviderOutcome:
        now = utcnow()
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE child_allowances SET minutes = minutes + ?, updated_at = ? WHERE child_id = ?",
                (minutes, to_iso(now), child_id),
            )
            if cur.rowcount == 0:
                return ProviderOutcome(success=False, error=f"unknown child: {child_id}", retryable=False)
        return ProviderOutcome(success=True, provider_ref=f"local:{child_id}:{int(now.timestamp() * 1000)}")


class RemoteAllowanceAdapter:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_sec: float = 10.0,
        name: str = "remote",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_sec = timeout_sec
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderError("REMOTE_ALLOWANCE_API_KEY is not set", retryable=False)
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _post_delta(self, child_id: str, minutes: int) -> dict:
        try:
            with httpx.Client(timeout=self.timeout_sec, transport=self._transport) as client:
                r = client.post(
                    f"{self.base_url}/children/{child_id}/allowance",
                    headers=self._headers(),
                    json={"minutesDelta": minutes},
                )
                r.raise_for_status()
                return r.json()
        except httpx.TimeoutException as exc:
            raise ProviderError(f"timeout: {exc}", retryable=True) from exc
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            if code in TRANSIENT_STATUS:
                raise ProviderError(f"transient_http_{code}", retryable=True) from exc
            raise ProviderError(f"http_{code}: {exc.response.text}", retryable=False) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"transport: {exc}", retryable=True) from exc

    def apply_allowance_delta(self, child_id: str, minutes: int) -> ProviderOutcome:
        try:
            data = self._post_delta(child_id, minutes)
        except ProviderError as exc:
            return ProviderOutcome(success=False, error=str(exc), retryable=exc.retryable)
        ref = data.get("ref") or data.get("id")
        if not ref:
            return ProviderOutcome(success=False, error="provider response missing ref", retryable=False)
        return ProviderOutcome(success=True, provider_ref=f"{self.name}:{ref}")


class MockAllowanceAdapter:
    """Stand-in vendor backend with simulated latency and flakiness."""

    def __init__(
        self,
        name: str,
        latency_ms: int = 400,
        fail_rate: float = 0.1,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self.latency_ms = latency_ms
        self.fail_rate = fail_rate
        self._rng = rng or random.Random()
        self._sleep = sleep

    def apply_allowance_delta(self, child_id: str, minutes: int) -> ProviderOutcome:
        if self.latency_ms > 0:
            self._sleep(self.latency_ms / 1000)
        if self._rng.random() < self.fail_rate:
            return ProviderOutcome(success=False, error=f"Mock {self.name} provider failure", retryable=True)
        return ProviderOutcome(success=True, provider_ref=f"{self.name}:{child_id}:{int(time.time() * 1000)}")


class ProviderRouter:
    """Explicit source kind -> adapter table. Every kind must be routed."""

    def __init__(self, routes: Mapping[SourceKind, ProviderAdapter]) -> None:
        missing = [k.value for k in SourceKind if k not in routes]
        if missing:
            raise ValueError(f"no provider routed for source kinds: {', '.join(missing)}")
        self._routes = dict(routes)

    def route(self, kind: SourceKind) -> ProviderAdapter:
        return self._routes[SourceKind(kind)]

    def describe(self) -> dict[str, str]:
        return {k.value: a.name for k, a in self._routes.items()}


def build_adapter(backend: str, settings: Settings, db: Database) -> ProviderAdapter:
    backend = backend.lower().strip()
    if backend == "local":
        return LocalAllowanceAdapter(db)
    if backend == "remote":
        if settings.remote_http_timeout_sec >= settings.provider_timeout_sec:
            raise ValueError("remote_http_timeout_sec must be below provider_timeout_sec")
        return RemoteAllowanceAdapter(
            settings.remote_allowance_base_url,
            settings.remote_allowance_api_key,
            timeout_sec=settings.remote_http_timeout_sec,
        )
    if backend in {"apple", "google"}:
        return MockAllowanceAdapter(backend, latency_ms=settings.mock_latency_ms, fail_rate=settings.mock_fail_rate)
    raise ValueError(f"Unsupported provider backend: {backend}")


def build_router(settings: Settings, db: Database) -> ProviderRouter:
    backends = {
        SourceKind.TASK: settings.provider_task,
        SourceKind.GIG: settings.provider_gig,
        SourceKind.MANUAL: settings.provider_manual,
    }
    adapters: dict[str, ProviderAdapter] = {}
    routes: dict[SourceKind, ProviderAdapter] = {}
    for kind, backend in backends.items():
        if backend not in adapters:
            adapters[backend] = build_adapter(backend, settings, db)
        routes[kind] = adapters[backend]
    return ProviderRouter(routes)
