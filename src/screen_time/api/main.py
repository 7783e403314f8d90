import logging
from functools import lru_cache
from typing import Annotated, Any
from uuid import uuid4

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Header, HTTPException, Query

from screen_time.config import configure_logging, settings
from screen_time.db import Database, init_db
from screen_time.errors import GrantValidationError
from screen_time.schemas import GrantSource, ManualGrantRequest, SourceKind
from screen_time.service import ScreenTimeService, build_worker

configure_logging()
log = logging.getLogger("screen_time.api")

app = FastAPI(title="Screen Time Grants", version=settings.app_version)


def envelope(data: Any, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"version": settings.app_version},
        "error": error,
    }


@lru_cache(maxsize=8)
def _database(path: str) -> Database:
    return init_db(path)


def get_service() -> ScreenTimeService:
    return ScreenTimeService.from_settings(settings, db=_database(settings.database_path))


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _drain_one() -> None:
    worker = build_worker(settings, db=_database(settings.database_path))
    try:
        worker.run_once()
    finally:
        worker.close()


def _submit(service: ScreenTimeService, payload: dict, background_tasks: BackgroundTasks) -> str:
    try:
        command_id = service.submit(payload)
    except GrantValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log.info("queued grant command %s", command_id)
    if settings.run_worker_inline:
        background_tasks.add_task(_drain_one)
    return command_id


@app.get("/health")
def health() -> dict:
    return envelope({"service": "screen-time-grants"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "screen-time-grants", "version": settings.app_version})


@app.post("/v1/grants")
def submit_grant(
    background_tasks: BackgroundTasks,
    payload: dict = Body(...),
    service: ScreenTimeService = Depends(get_service),
) -> dict:
    command_id = _submit(service, payload, background_tasks)
    return envelope({"command_id": command_id, "status": "QUEUED"})


@app.get("/v1/grants/{command_id}")
def get_grant(command_id: str, service: ScreenTimeService = Depends(get_service)) -> dict:
    result = service.get_result(command_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Grant command not found")
    return envelope(result.model_dump(mode="json"))


@app.post("/v1/screen-time/grants")
def manual_grant(
    payload: ManualGrantRequest,
    background_tasks: BackgroundTasks,
    service: ScreenTimeService = Depends(get_service),
) -> dict:
    command_id = payload.idempotency_key or str(uuid4())
    cmd = {
        "id": command_id,
        "child_id": payload.child_id,
        "minutes": payload.minutes_delta,
        "source": GrantSource(kind=SourceKind.MANUAL, id=command_id).model_dump(),
        "idempotency_key": payload.idempotency_key,
        "ttl_sec": payload.ttl_sec,
    }
    command_id = _submit(service, cmd, background_tasks)
    return envelope({"grant_id": command_id, "status": "QUEUED"})


@app.get("/v1/screen-time/ledger")
def get_ledger(
    child_id: str = Query(...),
    limit: int = Query(20, ge=1, le=200),
    service: ScreenTimeService = Depends(get_service),
) -> dict:
    entries = service.ledger(child_id, limit=limit)
    return envelope([e.model_dump(mode="json") for e in entries])


@app.get("/v1/admin/grants/outstanding")
def outstanding_grants(
    x_admin_token: Annotated[str | None, Header()] = None,
    service: ScreenTimeService = Depends(get_service),
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    rows = service.outstanding()
    for row in rows:
        row["submitted_at"] = row["submitted_at"].isoformat()
    return envelope({"count": len(rows), "commands": rows})
