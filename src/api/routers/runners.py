from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.api.dependencies import get_engine
from src.api.errors import APIError
from src.api.pagination import CursorError, Listing, cursor_key, finish_page
from src.engine.fleet import RunnerEngine
from src.engine.models import ContainerOptions, RunnerStatus
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


class ContainerOptionsInput(BaseModel):
    enable_kvm: bool = Field(default=False)
    enable_docker_socket: bool = Field(default=False)
    privileged: bool = Field(default=False)


class CreateRunnerRequest(BaseModel):
    credential_id: str = Field(min_length=1)
    mode: Literal["process", "container"] = Field(default="process")
    name: str | None = Field(default=None, max_length=64)
    labels: list[str] = Field(default_factory=list)
    ephemeral: bool = Field(default=False)
    version: str | None = Field(default=None, description="Agent version for process runners; defaults to config.")
    options: ContainerOptionsInput = Field(default_factory=ContainerOptionsInput)


class UpdateRunnerRequest(BaseModel):
    name: str | None = Field(default=None, max_length=64)
    labels: list[str] | None = Field(default=None)
    mode: Literal["process", "container"] | None = Field(default=None)


def _cursor(value: str | None, listing: Listing) -> tuple[float, str] | None:
    try:
        return cursor_key(value, listing=listing)
    except CursorError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e


@router.get("/runners")
def list_runners(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    engine: RunnerEngine = Depends(get_engine),
) -> dict[str, Any]:
    valid = {s.value for s in RunnerStatus}
    bad = [s for s in (status or []) if s not in valid]
    if bad:
        raise APIError(
            status_code=400, code="invalid_argument", message="Unknown runner status.", details={"status": bad}
        )
    store = SQLiteStore(engine.db_path)
    try:
        page = store.list_runners_page(
            limit=int(limit), cursor=_cursor(cursor, "runners"), statuses=status or None
        )
        return finish_page(page, listing="runners")
    finally:
        store.close()


@router.post("/runners", status_code=201)
def create_runner(req: CreateRunnerRequest, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    runner = engine.create_and_start_runner(
        credential_id=req.credential_id,
        labels=req.labels,
        mode=req.mode,
        name=req.name,
        ephemeral=req.ephemeral,
        options=ContainerOptions(**req.options.model_dump()),
        version=req.version,
    )
    return {"runner": runner.to_dict()}


@router.get("/runners/{runner_id}")
def get_runner(runner_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"runner": engine.get_runner(runner_id).to_dict()}


@router.patch("/runners/{runner_id}")
def update_runner(
    runner_id: str, req: UpdateRunnerRequest, engine: RunnerEngine = Depends(get_engine)
) -> dict[str, Any]:
    runner = engine.update_runner(runner_id, name=req.name, labels=req.labels, mode=req.mode)
    return {"runner": runner.to_dict()}


@router.delete("/runners/{runner_id}")
def remove_runner(runner_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"runner": engine.remove_runner(runner_id).to_dict()}


@router.post("/runners/{runner_id}/start")
def start_runner(runner_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"runner": engine.start_runner(runner_id).to_dict()}


@router.post("/runners/{runner_id}/stop")
def stop_runner(runner_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"runner": engine.stop_runner(runner_id).to_dict()}


@router.post("/runners/{runner_id}/sync")
def sync_runner(runner_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"runner": engine.sync_runner_status(runner_id).to_dict()}


@router.post("/runners/{runner_id}/cancel")
def cancel_runner_operation(runner_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    engine.get_runner(runner_id)
    return {"runner_id": runner_id, "cancel_requested": engine.cancel_operation(runner_id)}


@router.get("/runners/{runner_id}/process")
def get_runner_process(runner_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    info = engine.get_runner_process(runner_id)
    return {"runner_id": runner_id, "alive": info is not None, "process": info.to_dict() if info else None}


@router.get("/runners/{runner_id}/container")
def get_runner_container(runner_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    return engine.get_container_status(runner_id)


@router.get("/runners/{runner_id}/logs")
def get_runner_logs(
    runner_id: str,
    tail: int = Query(default=100, ge=0, le=5000),
    engine: RunnerEngine = Depends(get_engine),
) -> dict[str, Any]:
    return {"runner_id": runner_id, "tail": int(tail), "logs": engine.get_container_logs(runner_id, tail=tail)}


@router.get("/runners/{runner_id}/events")
def list_runner_events(
    runner_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    event_type: list[str] | None = Query(default=None),
    engine: RunnerEngine = Depends(get_engine),
) -> dict[str, Any]:
    store = SQLiteStore(engine.db_path)
    try:
        store.require_runner(runner_id=runner_id)
        page = store.list_events_page(
            runner_id=runner_id,
            limit=int(limit),
            cursor=_cursor(cursor, "events"),
            event_types=event_type or None,
        )
        return finish_page(page, listing="events")
    finally:
        store.close()
