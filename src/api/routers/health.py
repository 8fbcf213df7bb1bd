from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_engine
from src.api.errors import APIError
from src.engine.fleet import RunnerEngine
from src.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "action-packer",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "docker": _pkg_version("docker"),
            "psutil": _pkg_version("psutil"),
        },
        "ts": time.time(),
    }


@router.get("/system/info")
def system_info(engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"ts": time.time(), **engine.system_info()}


@router.get("/system/reconciler")
def system_reconciler(request: Request) -> dict[str, Any]:
    worker = getattr(request.app.state, "reconcile_worker", None)
    snapshot: dict[str, Any] = {"enabled": worker is not None, "running": False}
    if worker is not None:
        snapshot.update(worker.status_snapshot())
    return {
        "ts": time.time(),
        "reconciler": snapshot,
        "startup": getattr(request.app.state, "startup_stats", None),
    }


@router.post("/system/reconcile")
def system_reconcile(engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    stats = engine.reconcile_once()
    if stats is None:
        raise APIError(status_code=409, code="conflict", message="A reconcile pass is already running.")
    return {"stats": stats}
