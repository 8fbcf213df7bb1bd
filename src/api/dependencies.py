from __future__ import annotations

from fastapi import Request

from src.api.errors import APIError
from src.engine.fleet import RunnerEngine


def get_engine(request: Request) -> RunnerEngine:
    """FastAPI dependency: the engine built once by the app lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if not isinstance(engine, RunnerEngine):
        raise APIError(status_code=503, code="unavailable", message="Runner engine is not initialized.")
    return engine
