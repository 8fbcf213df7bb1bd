from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from src.api.dependencies import get_engine
from src.api.errors import APIError
from src.engine.fleet import RunnerEngine


router = APIRouter()


@router.get("/orphans")
def list_orphans(engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    return {"items": [o.to_dict() for o in engine.orphans.list_orphans()]}


@router.post("/orphans/scan")
def scan_orphans(engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    """Discover orphans without stopping them; the periodic pass reclaims them."""
    engine.ready.require()
    found = engine.orphans.scan()
    return {"found": [o.to_dict() for o in found], "items": [o.to_dict() for o in engine.orphans.list_orphans()]}


@router.post("/orphans/{orphan_id}/stop")
def stop_orphan(orphan_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    engine.ready.require()
    orphan = engine.orphans.get_orphan(orphan_id)
    if orphan is None:
        raise APIError(status_code=404, code="not_found", message="Orphan not found.")
    stopped = engine.orphans.stop_orphaned_runner(orphan)
    return {"orphan_id": orphan_id, "stopped": stopped}
