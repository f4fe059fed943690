"""Local HTTP surface for the sweep runtime."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from pydantic import BaseModel, Field

from src.subwatch.runtime.service import get_runtime_service

app = FastAPI(title="Subwatch Sweep Monitor")


class SweepStartRequest(BaseModel):
    force: bool = False


class JobCompleteRequest(BaseModel):
    matched: bool = False
    payload: dict[str, Any] | None = None


class CandidatesReplaceRequest(BaseModel):
    entries: list[dict[str, Any]] = Field(default_factory=list)


class SettingsUpdateRequest(BaseModel):
    filter_expression: str | None = None
    include_failing: bool | None = None
    concurrency_limit: int | None = None


@app.on_event("startup")
def _init_runtime_client() -> None:
    # Sweep auto-start belongs to the daemon.
    get_runtime_service().start(start_sweep_if_enabled=False, source="app")


@app.get("/health")
def health() -> dict:
    return get_runtime_service().health()


@app.get("/api/sweep/status")
def sweep_status() -> dict:
    return get_runtime_service().sweep_status()


@app.post("/api/sweep/start")
def sweep_start(req: SweepStartRequest | None = None) -> dict:
    force = req.force if isinstance(req, SweepStartRequest) else False
    return get_runtime_service().sweep_start(force=force, source="api")


@app.post("/api/sweep/stop")
def sweep_stop() -> dict:
    return get_runtime_service().sweep_stop(source="api")


@app.post("/api/sweep/jobs/{handle_id}/complete")
def sweep_job_complete(handle_id: str, req: JobCompleteRequest | None = None) -> dict:
    body = req if isinstance(req, JobCompleteRequest) else JobCompleteRequest()
    return get_runtime_service().complete_job(handle_id=handle_id, matched=body.matched, payload=body.payload)


@app.post("/api/sweep/jobs/{handle_id}/closed")
def sweep_job_closed(handle_id: str) -> dict:
    return get_runtime_service().job_closed(handle_id=handle_id)


@app.get("/api/candidates")
def list_candidates() -> dict:
    return get_runtime_service().list_candidates()


@app.put("/api/candidates")
def replace_candidates(req: CandidatesReplaceRequest) -> dict:
    return get_runtime_service().replace_candidates(entries=req.entries)


@app.get("/api/matches")
def list_matches() -> dict:
    return get_runtime_service().list_matches()


@app.delete("/api/matches")
def clear_matches() -> dict:
    return get_runtime_service().clear_matches()


@app.get("/api/settings")
def get_settings() -> dict:
    return get_runtime_service().get_settings()


@app.put("/api/settings")
def update_settings(req: SettingsUpdateRequest) -> dict:
    return get_runtime_service().update_settings(
        filter_expression=req.filter_expression,
        include_failing=req.include_failing,
        concurrency_limit=req.concurrency_limit,
    )


@app.get("/api/events")
def list_events(limit: int = 50) -> dict:
    safe_limit = max(1, min(500, int(limit)))
    return get_runtime_service().events(limit=safe_limit)
