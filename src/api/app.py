from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.errors import (
    APIError,
    api_error_handler,
    engine_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from src.config.load_config import _env_bool, load_app_config
from src.engine.errors import FleetLeaseHeld, RunnerEngineError
from src.engine.fleet import RunnerEngine
from src.engine.lease import FleetLease
from src.runtime.reconcile_worker import ReconcileWorker

from .routers.credentials import router as credentials_router
from .routers.health import router as health_router
from .routers.orphans import router as orphans_router
from .routers.runners import router as runners_router


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("ACTION_PACKER_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app(engine: RunnerEngine | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        eng = engine or RunnerEngine(load_app_config())
        app.state.engine = eng

        # One process owns the fleet; the CLI forwards to us while we hold it.
        lease = FleetLease(eng.db_path)
        if not lease.acquire():
            raise FleetLeaseHeld(f"fleet lease {lease.path} is held by pid {lease.holder_pid()}")
        app.state.lease = lease
        try:
            eng.probe_capabilities()

            # Bring recorded state in line with reality before accepting lifecycle calls.
            if eng.config.reconcile.on_startup:
                app.state.startup_stats = eng.initialize_runners_on_startup()
            else:
                eng.ready.open()
                app.state.startup_stats = None

            # Single background reconciler per fleet (guarded by the lease).
            if eng.config.reconcile.enabled:
                worker = ReconcileWorker(eng)
                worker.start()
                app.state.reconcile_worker = worker
            yield
        finally:
            worker = getattr(app.state, "reconcile_worker", None)
            if worker is not None:
                worker.stop()
            lease.release()

    app = FastAPI(title="action-packer API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RunnerEngineError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(credentials_router, prefix="/api/v1", tags=["credentials"])
    app.include_router(runners_router, prefix="/api/v1", tags=["runners"])
    app.include_router(orphans_router, prefix="/api/v1", tags=["orphans"])

    if _env_bool("ACTION_PACKER_ENABLE_DEBUG_ENDPOINTS", False):
        @app.get("/api/v1/_debug/config", include_in_schema=False)
        def debug_config() -> dict[str, object]:
            # Paths and timeouts only; secrets never live in config.
            eng: RunnerEngine | None = getattr(app.state, "engine", None)
            if eng is None:
                return {}
            cfg = eng.config
            return {
                "sqlite_path": cfg.storage.sqlite_path,
                "runners_dir": str(cfg.runners.runners_dir),
                "cache_dir": str(cfg.runners.cache_dir),
                "runner_image": cfg.docker.image,
                "github_api_url": cfg.github.api_url,
                "reconcile_interval_s": cfg.reconcile.interval_s,
            }

    return app


app = create_app()
