from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.api.dependencies import get_engine
from src.api.errors import APIError
from src.engine.fleet import RunnerEngine
from src.engine.models import Scope, ScopeType
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


class CreateCredentialRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    kind: Literal["pat", "installation"] = Field(default="pat")
    scope_type: Literal["repo", "org"]
    target: str = Field(min_length=1, description="'owner/repo' for repo scope, the org name for org scope.")
    token: str | None = Field(default=None, description="Personal access token (kind=pat).")
    installation_id: str | None = Field(default=None, description="App installation id (kind=installation).")
    expires_at: float | None = Field(default=None)


@router.post("/credentials", status_code=201)
def create_credential(req: CreateCredentialRequest, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    try:
        scope = Scope(scope_type=ScopeType(req.scope_type), target=req.target, credential_id="-")
    except ValueError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    if req.kind == "pat" and not (req.token or "").strip():
        raise APIError(status_code=400, code="invalid_argument", message="token is required for kind=pat.")
    if req.kind == "installation" and not (req.installation_id or "").strip():
        raise APIError(
            status_code=400, code="invalid_argument", message="installation_id is required for kind=installation."
        )

    store = SQLiteStore(engine.db_path)
    try:
        record = store.create_credential(
            name=req.name.strip(),
            kind=req.kind,
            scope_type=scope.scope_type.value,
            target=scope.target,
            secret=(req.token or "").strip() or None,
            installation_id=(req.installation_id or "").strip() or None,
            expires_at=req.expires_at,
        )
        return {"credential": record.to_dict()}
    finally:
        store.close()


@router.get("/credentials")
def list_credentials(engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    store = SQLiteStore(engine.db_path)
    try:
        return {"items": [c.to_dict() for c in store.list_credentials()]}
    finally:
        store.close()


@router.get("/credentials/{credential_id}")
def get_credential(credential_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    store = SQLiteStore(engine.db_path)
    try:
        record = store.get_credential(credential_id=credential_id)
        if record is None:
            raise APIError(status_code=404, code="not_found", message="Credential not found.")
        return {
            "credential": record.to_dict(),
            "active_runners": store.count_active_runners_for_credential(credential_id=credential_id),
        }
    finally:
        store.close()


@router.delete("/credentials/{credential_id}")
def delete_credential(credential_id: str, engine: RunnerEngine = Depends(get_engine)) -> dict[str, Any]:
    store = SQLiteStore(engine.db_path)
    try:
        if store.get_credential(credential_id=credential_id) is None:
            raise APIError(status_code=404, code="not_found", message="Credential not found.")
        active = store.count_active_runners_for_credential(credential_id=credential_id)
        if active:
            raise APIError(
                status_code=409,
                code="conflict",
                message="Credential is still used by runners; remove them first.",
                details={"active_runners": active},
            )
        store.delete_credential(credential_id=credential_id)
        return {"credential_id": credential_id, "deleted": True}
    finally:
        store.close()
