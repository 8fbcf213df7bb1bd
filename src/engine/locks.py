from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from src.engine.errors import EngineNotReady


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class RunnerLocks:
    """Mutex map: at most one lifecycle operation per runner identity.

    Entries are reference counted and dropped when no one holds or waits on
    them, so the map does not grow with the lifetime fleet size.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _acquire_entry(self, runner_id: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(runner_id)
            if entry is None:
                entry = _Entry()
                self._entries[runner_id] = entry
            entry.refs += 1
            return entry

    def _release_entry(self, runner_id: str, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs <= 0:
                self._entries.pop(runner_id, None)

    @contextmanager
    def hold(self, runner_id: str) -> Iterator[None]:
        entry = self._acquire_entry(runner_id)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(runner_id, entry)

    @contextmanager
    def try_hold(self, runner_id: str) -> Iterator[bool]:
        """Non-blocking variant; yields False when another operation is in flight."""
        entry = self._acquire_entry(runner_id)
        acquired = entry.lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                entry.lock.release()
            self._release_entry(runner_id, entry)

    def is_held(self, runner_id: str) -> bool:
        with self._guard:
            entry = self._entries.get(runner_id)
            return entry is not None and entry.lock.locked()


class ReadinessGate:
    """Closed until the startup reconciliation pass has finished."""

    def __init__(self) -> None:
        self._ready = threading.Event()

    @property
    def is_open(self) -> bool:
        return self._ready.is_set()

    def open(self) -> None:
        self._ready.set()

    def wait(self, timeout_s: float | None = None) -> bool:
        return self._ready.wait(timeout=timeout_s)

    def require(self) -> None:
        if not self._ready.is_set():
            raise EngineNotReady("startup reconciliation has not completed")
