from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RunnerMode(str, Enum):
    PROCESS = "process"
    CONTAINER = "container"


class RunnerStatus(str, Enum):
    PENDING = "pending"
    CONFIGURING = "configuring"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REMOVED = "removed"
    ORPHANED = "orphaned"
    ERROR = "error"


# A removed runner keeps its record (ids are never reused) but owns nothing.
TERMINAL_STATUSES = frozenset({RunnerStatus.REMOVED})

# Statuses an operation may pass through but must never leave a runner in.
TRANSITIONAL_STATUSES = frozenset(
    {RunnerStatus.PENDING, RunnerStatus.CONFIGURING, RunnerStatus.STARTING, RunnerStatus.STOPPING}
)

# Statuses the periodic synchronizer re-checks.
SYNCABLE_STATUSES = frozenset(
    {
        RunnerStatus.PENDING,
        RunnerStatus.CONFIGURING,
        RunnerStatus.STARTING,
        RunnerStatus.RUNNING,
        RunnerStatus.STOPPING,
        RunnerStatus.STOPPED,
        RunnerStatus.ORPHANED,
    }
)


class ScopeType(str, Enum):
    REPO = "repo"
    ORG = "org"


class Observed(str, Enum):
    """What a backend reports about a runner's resource."""

    RUNNING = "running"
    STOPPED = "stopped"
    MISSING = "missing"


@dataclass(frozen=True)
class Scope:
    scope_type: ScopeType
    target: str
    credential_id: str

    def __post_init__(self) -> None:
        target = (self.target or "").strip().strip("/")
        if not target:
            raise ValueError("scope target must be non-empty")
        parts = target.split("/")
        if self.scope_type == ScopeType.REPO and (len(parts) != 2 or not all(parts)):
            raise ValueError(f"repository scope must look like 'owner/repo', got {self.target!r}")
        if self.scope_type == ScopeType.ORG and len(parts) != 1:
            raise ValueError(f"organization scope must be a bare org name, got {self.target!r}")
        object.__setattr__(self, "target", target)


@dataclass(frozen=True)
class CredentialRef:
    """Opaque pointer to a stored secret; the engine never mutates it."""

    credential_id: str
    kind: str
    scope_type: ScopeType
    target: str


@dataclass(frozen=True)
class Platform:
    os: str  # linux|osx|win
    arch: str  # x64|arm64|arm

    @property
    def archive_ext(self) -> str:
        return "zip" if self.os == "win" else "tar.gz"

    def as_dict(self) -> dict[str, str]:
        return {"os": self.os, "arch": self.arch}


@dataclass(frozen=True)
class ProcessHandle:
    """A pid plus its creation time, so a recycled pid never matches."""

    pid: int
    started_at: float


@dataclass(frozen=True)
class ContainerOptions:
    enable_kvm: bool = False
    enable_docker_socket: bool = False
    privileged: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "enable_kvm": self.enable_kvm,
            "enable_docker_socket": self.enable_docker_socket,
            "privileged": self.privileged,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "ContainerOptions":
        raw = raw or {}
        return cls(
            enable_kvm=bool(raw.get("enable_kvm", False)),
            enable_docker_socket=bool(raw.get("enable_docker_socket", False)),
            privileged=bool(raw.get("privileged", False)),
        )


@dataclass(frozen=True)
class Runner:
    runner_id: str
    name: str
    mode: RunnerMode
    status: RunnerStatus
    scope: Scope
    labels: tuple[str, ...]
    ephemeral: bool
    created_at: float
    updated_at: float
    options: ContainerOptions = field(default_factory=ContainerOptions)
    runner_dir: str | None = None
    process_handle: ProcessHandle | None = None
    container_id: str | None = None
    github_runner_id: int | None = None
    error: str | None = None
    last_observed_at: float | None = None
    last_heartbeat_at: float | None = None

    @property
    def has_handle(self) -> bool:
        return self.process_handle is not None or self.container_id is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Runner":
        handle = None
        if row["process_id"] is not None:
            handle = ProcessHandle(pid=int(row["process_id"]), started_at=float(row["process_started_at"] or 0.0))
        return cls(
            runner_id=str(row["runner_id"]),
            name=str(row["name"]),
            mode=RunnerMode(row["mode"]),
            status=RunnerStatus(row["status"]),
            scope=Scope(
                scope_type=ScopeType(row["scope_type"]),
                target=str(row["target"]),
                credential_id=str(row["credential_id"]),
            ),
            labels=tuple(json.loads(row["labels_json"] or "[]")),
            ephemeral=bool(row["ephemeral"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
            options=ContainerOptions.from_dict(json.loads(row["options_json"] or "{}")),
            runner_dir=row["runner_dir"],
            process_handle=handle,
            container_id=row["container_id"],
            github_runner_id=int(row["github_runner_id"]) if row["github_runner_id"] is not None else None,
            error=row["error"],
            last_observed_at=float(row["last_observed_at"]) if row["last_observed_at"] is not None else None,
            last_heartbeat_at=float(row["last_heartbeat_at"]) if row["last_heartbeat_at"] is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "runner_id": self.runner_id,
            "name": self.name,
            "mode": self.mode.value,
            "status": self.status.value,
            "scope": {
                "type": self.scope.scope_type.value,
                "target": self.scope.target,
                "credential_id": self.scope.credential_id,
            },
            "labels": list(self.labels),
            "ephemeral": self.ephemeral,
            "options": self.options.as_dict(),
            "runner_dir": self.runner_dir,
            "process": (
                {"pid": self.process_handle.pid, "started_at": self.process_handle.started_at}
                if self.process_handle is not None
                else None
            ),
            "container_id": self.container_id,
            "github_runner_id": self.github_runner_id,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_observed_at": self.last_observed_at,
            "last_heartbeat_at": self.last_heartbeat_at,
        }
