from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from src.engine.capabilities import EngineCapabilities
from src.engine.container_backend import ContainerBackend, ManagedContainer
from src.engine.errors import RunnerEngineError
from src.engine.locks import RunnerLocks
from src.engine.models import ProcessHandle, Runner, RunnerMode, RunnerStatus, TERMINAL_STATUSES
from src.engine.process_backend import DiscoveredProcess, ProcessBackend
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrphanRecord:
    """A backend resource bearing our naming convention that no live runner owns."""

    orphan_id: str
    kind: str  # process|container
    runner_id: str
    discovered_at: float
    container_id: str | None = None
    process: ProcessHandle | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "orphan_id": self.orphan_id,
            "kind": self.kind,
            "runner_id": self.runner_id,
            "discovered_at": self.discovered_at,
            "container_id": self.container_id,
            "process": (
                {"pid": self.process.pid, "started_at": self.process.started_at} if self.process is not None else None
            ),
        }


def _orphan_id(handle: ManagedContainer | DiscoveredProcess) -> str:
    if isinstance(handle, ManagedContainer):
        return f"container:{handle.container_id}"
    return f"process:{handle.pid}:{int(handle.started_at)}"


def _owns_container(runner: Runner | None, container_id: str) -> bool:
    return (
        runner is not None
        and runner.status not in TERMINAL_STATUSES
        and runner.mode == RunnerMode.CONTAINER
        and runner.container_id == container_id
    )


def _owns_process(runner: Runner | None, handle: ProcessHandle) -> bool:
    if runner is None or runner.status in TERMINAL_STATUSES or runner.process_handle is None:
        return False
    return runner.process_handle.pid == handle.pid and abs(runner.process_handle.started_at - handle.started_at) <= 1.0


class OrphanTracker:
    """Finds and reclaims orphaned processes/containers.

    Orphan records live in memory only. Reclaiming an orphan terminates its
    resource; it never creates or adopts a runner record.
    """

    def __init__(
        self,
        *,
        db_path: str | Path | None,
        process_backend: ProcessBackend,
        container_backend: ContainerBackend,
        capabilities: EngineCapabilities,
        locks: RunnerLocks,
        grace_s: float = 10.0,
    ) -> None:
        self._db_path = db_path
        self._process = process_backend
        self._container = container_backend
        self._capabilities = capabilities
        self._locks = locks
        self._grace_s = grace_s
        self._orphans: dict[str, OrphanRecord] = {}
        self._guard = threading.Lock()

    @contextmanager
    def _store(self) -> Iterator[SQLiteStore]:
        store = SQLiteStore(self._db_path)
        try:
            yield store
        finally:
            store.close()

    def list_orphans(self) -> list[OrphanRecord]:
        with self._guard:
            return sorted(self._orphans.values(), key=lambda o: (o.discovered_at, o.orphan_id))

    def get_orphan(self, orphan_id: str) -> OrphanRecord | None:
        with self._guard:
            return self._orphans.get(orphan_id)

    def track_orphaned_runner(self, handle: ManagedContainer | DiscoveredProcess) -> OrphanRecord:
        orphan_id = _orphan_id(handle)
        with self._guard:
            existing = self._orphans.get(orphan_id)
            if existing is not None:
                return existing
            if isinstance(handle, ManagedContainer):
                record = OrphanRecord(
                    orphan_id=orphan_id,
                    kind="container",
                    runner_id=handle.runner_id,
                    discovered_at=time.time(),
                    container_id=handle.container_id,
                )
            else:
                record = OrphanRecord(
                    orphan_id=orphan_id,
                    kind="process",
                    runner_id=handle.runner_id,
                    discovered_at=time.time(),
                    process=handle.handle,
                )
            self._orphans[orphan_id] = record
        logger.warning("Tracking orphaned %s %s (runner %s)", record.kind, orphan_id, record.runner_id)
        return record

    def _still_orphaned(self, orphan: OrphanRecord) -> bool:
        with self._store() as store:
            runner = store.get_runner(runner_id=orphan.runner_id)
        if orphan.kind == "container":
            return not _owns_container(runner, orphan.container_id or "")
        assert orphan.process is not None
        return not _owns_process(runner, orphan.process)

    def stop_orphaned_runner(self, orphan: OrphanRecord | str) -> bool:
        """Terminate the orphan's resource (graceful, then forced) and forget it.

        Returns False when the record is gone or a runner has since claimed the
        resource; the resource is then left alone.
        """
        record = self.get_orphan(orphan) if isinstance(orphan, str) else orphan
        if record is None:
            return False
        with self._locks.hold(record.runner_id):
            if not self._still_orphaned(record):
                self._discard(record.orphan_id)
                return False
            if record.kind == "container":
                assert record.container_id is not None
                self._container.terminate_container(record.container_id, grace_s=self._grace_s)
            else:
                self._process.stop_runner(record.process, grace_s=self._grace_s)
            with self._store() as store:
                if store.get_runner(runner_id=record.runner_id) is not None:
                    store.append_event(record.runner_id, "orphan_stopped", record.to_dict())
        self._discard(record.orphan_id)
        logger.info("Stopped orphaned %s %s", record.kind, record.orphan_id)
        return True

    def _discard(self, orphan_id: str) -> None:
        with self._guard:
            self._orphans.pop(orphan_id, None)

    def scan(self) -> list[OrphanRecord]:
        """Discover orphans among our containers and runner-directory processes.

        Runners with an operation in flight are skipped; records whose resource
        disappeared are dropped.
        """
        seen: set[str] = set()
        found: list[OrphanRecord] = []

        candidates: list[ManagedContainer | DiscoveredProcess] = []
        if self._capabilities.docker_available:
            try:
                candidates.extend(self._container.list_action_packer_containers())
            except RunnerEngineError as e:
                logger.warning("Container orphan scan skipped: %s", e)
        candidates.extend(self._process.scan_runner_processes())

        for handle in candidates:
            seen.add(_orphan_id(handle))
            with self._locks.try_hold(handle.runner_id) as acquired:
                if not acquired:
                    continue
                with self._store() as store:
                    runner = store.get_runner(runner_id=handle.runner_id)
                owned = (
                    _owns_container(runner, handle.container_id)
                    if isinstance(handle, ManagedContainer)
                    else _owns_process(runner, handle.handle)
                )
            if not owned:
                found.append(self.track_orphaned_runner(handle))

        with self._guard:
            for orphan_id in list(self._orphans):
                if orphan_id not in seen:
                    self._orphans.pop(orphan_id, None)
        return found

    def cleanup_orphaned_directories(self) -> int:
        """Delete runner directories that no live runner record owns."""
        busy_dirs = {p.runner_id for p in self._process.scan_runner_processes()}
        removed = 0
        for directory in self._process.list_runner_dirs():
            runner_id = directory.name
            if runner_id in busy_dirs:
                continue
            with self._locks.try_hold(runner_id) as acquired:
                if not acquired:
                    continue
                with self._store() as store:
                    runner = store.get_runner(runner_id=runner_id)
                if runner is not None and runner.status != RunnerStatus.REMOVED:
                    continue
                try:
                    self._process.delete_directory(directory)
                except RunnerEngineError as e:
                    logger.warning("Could not remove orphaned directory %s: %s", directory, e)
                    continue
                removed += 1
        return removed
