from __future__ import annotations

import logging
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any

from src.engine.fleet import RunnerEngine


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerConfig:
    interval_s: float = 60.0
    initial_delay_s: float = 10.0


class ReconcileWorker:
    """Single background thread running the periodic reconciliation pass.

    Passes run on a fixed interval measured from the end of the previous
    pass, so a pass never overlaps itself.
    """

    def __init__(self, engine: RunnerEngine, *, config: WorkerConfig | None = None) -> None:
        self._engine = engine
        self._config = config or WorkerConfig(
            interval_s=engine.config.reconcile.interval_s,
            initial_delay_s=engine.config.reconcile.initial_delay_s,
        )
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

        self._lock = threading.Lock()
        self._pass_count = 0
        self._last_stats: dict[str, Any] | None = None
        self._last_error: str | None = None
        self._last_pass_at: float | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "running": self.running,
                "interval_s": float(self._config.interval_s),
                "initial_delay_s": float(self._config.initial_delay_s),
                "pass_count": self._pass_count,
                "last_pass_at": self._last_pass_at,
                "last_stats": self._last_stats,
                "last_error": self._last_error,
            }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="action-packer-reconciler", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)

    def run_once(self) -> dict[str, Any] | None:
        """Run one pass and record its outcome. Never raises."""
        try:
            stats = self._engine.reconcile_once()
        except Exception as e:
            logger.exception("Reconcile pass failed")
            with self._lock:
                self._last_error = f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
                self._last_pass_at = time.time()
            return None
        with self._lock:
            if stats is not None:
                self._pass_count += 1
                self._last_stats = stats
                self._last_error = None
                self._last_pass_at = time.time()
        return stats

    def _run_loop(self) -> None:
        if self._stop.wait(self._config.initial_delay_s):
            return
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self._config.interval_s)
