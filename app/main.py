"""Local command API: thin dispatch over the runtime service."""

from __future__ import annotations

from typing import Any, Literal

from fastapi import FastAPI
from pydantic import BaseModel, Field

from src.savvy_pirate.runtime.service import get_runtime_service

app = FastAPI(title="Savvy Pirate Scheduler")


class ScheduleUpsertRequest(BaseModel):
    id: str | None = None
    source_name: str
    day_of_week: int
    hour: int
    minute: int
    frequency: Literal["weekly", "biweekly"] = "weekly"
    week_pattern: Literal["odd", "even"] | None = None
    enabled: bool = True
    test_enabled: bool = False
    test_search_ref: str | None = None
    test_search_title: str | None = None
    test_max_pages: int | None = None


class ManualRunRequest(BaseModel):
    source_name: str
    units: list[dict[str, Any]] | None = None
    max_pages: int | None = None


class AutoRunRequest(BaseModel):
    sources: list[str] = Field(default_factory=list)
    max_pages: int | None = None


class SourceMappingRequest(BaseModel):
    mapping: dict[str, str] = Field(default_factory=dict)


class WebhookUrlRequest(BaseModel):
    url: str | None = None


class UnitCompleteRequest(BaseModel):
    total_profiles: int = 0


class UnitAbortRequest(BaseModel):
    reason: str = "aborted"


class SessionLostRequest(BaseModel):
    status: Literal["signed_out", "checkpoint"]
    message: str = ""


class ProfileRowsRequest(BaseModel):
    source_name: str
    rows: list[list[Any]] = Field(default_factory=list)


@app.get("/health")
def health() -> dict:
    return get_runtime_service().health()


@app.get("/api/status")
def status() -> dict:
    return get_runtime_service().status()


@app.post("/api/service/start")
def service_start() -> dict:
    return get_runtime_service().start(source="app")


@app.post("/api/service/stop")
def service_stop() -> dict:
    return get_runtime_service().stop(source="app")


@app.get("/api/schedules")
def list_schedules() -> dict:
    return get_runtime_service().list_schedules()


@app.post("/api/schedules")
def upsert_schedule(req: ScheduleUpsertRequest) -> dict:
    return get_runtime_service().upsert_schedule(req.model_dump(exclude_unset=True))


@app.delete("/api/schedules/{schedule_id}")
def delete_schedule(schedule_id: str) -> dict:
    return get_runtime_service().delete_schedule(schedule_id=schedule_id)


@app.post("/api/schedules/{schedule_id}/trigger")
def trigger_schedule(schedule_id: str) -> dict:
    return get_runtime_service().trigger_schedule(schedule_id=schedule_id)


@app.get("/api/schedules/sources")
def scheduled_sources() -> dict:
    return get_runtime_service().scheduled_sources()


@app.post("/api/runs/manual")
def start_manual_run(req: ManualRunRequest) -> dict:
    return get_runtime_service().start_manual_run(source_name=req.source_name, units=req.units, max_pages=req.max_pages)


@app.post("/api/runs/manual/stop")
def stop_manual_run() -> dict:
    return get_runtime_service().stop_manual_run()


@app.post("/api/runs/auto")
def start_auto_run(req: AutoRunRequest) -> dict:
    return get_runtime_service().start_auto_run(sources=req.sources, max_pages=req.max_pages)


@app.post("/api/runs/auto/stop")
def stop_auto_run() -> dict:
    return get_runtime_service().stop_auto_run()


@app.get("/api/history")
def execution_history(limit: int = 50) -> dict:
    return get_runtime_service().execution_history(limit=limit)


@app.get("/api/source-mapping")
def get_source_mapping() -> dict:
    return get_runtime_service().get_source_mapping()


@app.put("/api/source-mapping")
def set_source_mapping(req: SourceMappingRequest) -> dict:
    return get_runtime_service().set_source_mapping(mapping=req.mapping)


@app.put("/api/notifications/webhook")
def set_webhook_url(req: WebhookUrlRequest) -> dict:
    return get_runtime_service().set_webhook_url(url=req.url)


@app.post("/api/notifications/test")
def test_webhook() -> dict:
    return get_runtime_service().test_webhook()


@app.get("/api/scraper/commands")
def scraper_commands() -> dict:
    return get_runtime_service().scraper_commands()


@app.post("/api/scraper/complete")
def scraper_complete(req: UnitCompleteRequest) -> dict:
    return get_runtime_service().report_unit_complete(total_profiles=req.total_profiles)


@app.post("/api/scraper/abort")
def scraper_abort(req: UnitAbortRequest) -> dict:
    return get_runtime_service().report_unit_aborted(reason=req.reason)


@app.post("/api/scraper/session-lost")
def scraper_session_lost(req: SessionLostRequest) -> dict:
    return get_runtime_service().report_session_lost(status=req.status, message=req.message)


@app.post("/api/scraper/profiles")
def scraper_profiles(req: ProfileRowsRequest) -> dict:
    return get_runtime_service().append_profiles(source_name=req.source_name, rows=req.rows)
