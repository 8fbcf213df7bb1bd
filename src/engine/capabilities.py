from __future__ import annotations

import threading
import time
from typing import Any

from src.engine.errors import ContainerRuntimeUnavailable
from src.engine.models import Platform


class EngineCapabilities:
    """Host capabilities, probed at startup and handed to the backends.

    Container mode is gated on `docker_available`; once the runtime is lost
    every container-mode operation fails fast until a later probe sees it
    again. Process mode never consults the container flag.
    """

    def __init__(
        self,
        *,
        platform: Platform | None = None,
        platform_error: str | None = None,
        docker_available: bool = False,
        docker_error: str | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._platform = platform
        self._platform_error = platform_error
        self._docker_available = docker_available
        self._docker_error = docker_error
        self._probed_at = time.time()

    @property
    def platform(self) -> Platform | None:
        return self._platform

    @property
    def docker_available(self) -> bool:
        with self._lock:
            return self._docker_available

    def set_platform(self, platform: Platform | None, *, error: str | None = None) -> None:
        with self._lock:
            self._platform = platform
            self._platform_error = error

    def set_container_runtime(self, available: bool, *, error: str | None = None) -> None:
        with self._lock:
            self._docker_available = bool(available)
            self._docker_error = None if available else (error or "container runtime unavailable")
            self._probed_at = time.time()

    def mark_container_runtime_lost(self, reason: str) -> None:
        self.set_container_runtime(False, error=reason)

    def require_container_runtime(self, *, runner_id: str | None = None, step: str | None = None) -> None:
        with self._lock:
            if self._docker_available:
                return
            reason = self._docker_error or "container runtime unavailable"
        raise ContainerRuntimeUnavailable(reason, runner_id=runner_id, step=step)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "platform": self._platform.as_dict() if self._platform else None,
                "platform_error": self._platform_error,
                "docker_available": self._docker_available,
                "docker_error": self._docker_error,
                "probed_at": self._probed_at,
            }
