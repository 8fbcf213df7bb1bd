from __future__ import annotations

import logging
import time
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from src.engine.container_backend import ContainerBackend
from src.engine.errors import ReconciliationIncomplete, RunnerEngineError
from src.engine.locks import RunnerLocks
from src.engine.models import Runner, RunnerMode, RunnerStatus
from src.engine.sync import StatusSynchronizer
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)

# Left untouched by the startup pass.
_SETTLED = frozenset({RunnerStatus.REMOVED, RunnerStatus.ERROR})


class StartupReconciler:
    """Brings every persisted runner to a terminal or confirmed status at boot.

    Runs once, before the engine's readiness gate opens. A runner that cannot
    be resolved is marked `error` (ReconciliationIncomplete); it never blocks
    the rest of the pass.
    """

    def __init__(
        self,
        *,
        db_path: str | Path | None,
        synchronizer: StatusSynchronizer,
        container_backend: ContainerBackend,
        locks: RunnerLocks,
        restart: Callable[[str], Runner] | None = None,
    ) -> None:
        self._db_path = db_path
        self._sync = synchronizer
        self._container = container_backend
        self._locks = locks
        self._restart = restart

    @contextmanager
    def _store(self) -> Iterator[SQLiteStore]:
        store = SQLiteStore(self._db_path)
        try:
            yield store
        finally:
            store.close()

    def _rederive_handle(self, runner: Runner) -> Runner:
        if runner.mode != RunnerMode.CONTAINER or runner.container_id:
            return runner
        container_id = self._container.find_runner_container(runner.runner_id)
        if container_id is None:
            return runner
        logger.info("Re-derived container %s for runner %s", container_id[:12], runner.runner_id)
        with self._store() as store:
            return store.update_runner(runner.runner_id, container_id=container_id)

    def _reconcile_one(self, runner: Runner) -> RunnerStatus:
        recorded = runner.status
        runner = self._rederive_handle(runner)
        outcome = self._sync.sync_runner(runner, allow_pending=False)
        if outcome.deferred:
            cause = outcome.error.cause if outcome.error is not None else "hosting registration state is unknown"
            raise ReconciliationIncomplete(cause, runner_id=runner.runner_id)

        status = outcome.runner.status
        if (
            self._restart is not None
            and recorded == RunnerStatus.RUNNING
            and status == RunnerStatus.STOPPED
            and not runner.ephemeral
        ):
            logger.info("Restarting runner %s that was running before shutdown", runner.runner_id)
            try:
                status = self._restart(runner.runner_id).status
            except RunnerEngineError as e:
                # The start path already recorded `error`.
                logger.warning("Restart of runner %s failed: %s", runner.runner_id, e)
                status = RunnerStatus.ERROR
        return status

    def _mark_incomplete(self, runner_id: str, err: RunnerEngineError, *, tb: str | None = None) -> None:
        if not isinstance(err, ReconciliationIncomplete):
            err = ReconciliationIncomplete(str(err), runner_id=runner_id)
        with self._store() as store:
            store.transition(runner_id, RunnerStatus.ERROR, reason="startup_reconcile_failed", error=str(err))
            if tb:
                store.append_event(runner_id, "step_failed", {"step": err.step, "error": err.cause, "traceback": tb})

    def initialize_runners_on_startup(self) -> dict[str, Any]:
        started = time.monotonic()
        stats: dict[str, Any] = {"checked": 0, "by_status": {}, "incomplete": 0}
        with self._store() as store:
            runners = [r for r in store.list_runners() if r.status not in _SETTLED]

        for runner in runners:
            with self._locks.hold(runner.runner_id):
                try:
                    status = self._reconcile_one(runner)
                except RunnerEngineError as e:
                    logger.warning("Startup reconcile of runner %s incomplete: %s", runner.runner_id, e)
                    self._mark_incomplete(runner.runner_id, e.bind(runner_id=runner.runner_id))
                    status = RunnerStatus.ERROR
                    stats["incomplete"] += 1
                except Exception as e:
                    logger.exception("Startup reconcile of runner %s crashed", runner.runner_id)
                    self._mark_incomplete(
                        runner.runner_id,
                        ReconciliationIncomplete(f"{type(e).__name__}: {e}", runner_id=runner.runner_id),
                        tb=traceback.format_exc(),
                    )
                    status = RunnerStatus.ERROR
                    stats["incomplete"] += 1
            stats["checked"] += 1
            stats["by_status"][status.value] = stats["by_status"].get(status.value, 0) + 1

        stats["duration_s"] = round(time.monotonic() - started, 3)
        logger.info("Startup reconciliation finished: %s", stats)
        return stats
