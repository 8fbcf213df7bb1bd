from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from src.config.load_config import DockerConfig
from src.engine.capabilities import EngineCapabilities
from src.engine.errors import (
    ContainerRuntimeUnavailable,
    ImagePullError,
    RemoveError,
    RunnerEngineError,
    StartError,
    StopError,
)
from src.engine.models import ContainerOptions, Observed, Runner, ScopeType
from src.utils.cancel import CancellationToken


logger = logging.getLogger(__name__)

LABEL_MANAGED = "action-packer.managed"
LABEL_RUNNER_ID = "action-packer.runner-id"
LABEL_RUNNER_NAME = "action-packer.runner-name"
CONTAINER_PREFIX = "action-packer-"
DOCKER_SOCKET = "/var/run/docker.sock"
CONTAINER_WORKDIR = "/tmp/runner/work"

_RUNNING_STATES = {"running", "restarting"}
# Agent arch naming -> OCI platform arch.
_OCI_ARCH = {"x64": "amd64", "arm64": "arm64", "arm": "arm"}


def container_name(runner_id: str) -> str:
    return f"{CONTAINER_PREFIX}{runner_id}"


@dataclass(frozen=True)
class ContainerState:
    observed: Observed
    native: str | None = None
    exit_code: int | None = None


@dataclass(frozen=True)
class ManagedContainer:
    container_id: str
    name: str
    runner_id: str
    runner_name: str | None
    native_status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "name": self.name,
            "runner_id": self.runner_id,
            "runner_name": self.runner_name,
            "status": self.native_status,
        }


@dataclass(frozen=True)
class ContainerLaunchConfig:
    """Registration settings injected into the container's environment."""

    registration_url: str
    registration_token: str
    scope_type: ScopeType
    target: str
    labels: tuple[str, ...] = ()
    ephemeral: bool = False
    options: ContainerOptions = field(default_factory=ContainerOptions)


class ContainerBackend:
    """Runs the agent inside a labelled container on the local Docker daemon.

    Every call goes through `_runtime()`, which fails fast when the engine
    capabilities say the runtime is gone and flips that flag when a call
    cannot reach the daemon.
    """

    def __init__(
        self,
        config: DockerConfig,
        capabilities: EngineCapabilities,
        *,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._config = config
        self.capabilities = capabilities
        self._client_factory = client_factory or (lambda: docker.from_env(timeout=int(config.client_timeout_s)))
        self._client: Any = None
        self._client_lock = threading.Lock()

    # --- Connectivity
    def init_docker(self) -> Any:
        with self._client_lock:
            if self._client is not None:
                return self._client
            try:
                self._client = self._client_factory()
            except (DockerException, OSError) as e:
                self.capabilities.mark_container_runtime_lost(f"cannot connect to Docker: {e}")
                return None
            return self._client

    def is_docker_available(self) -> bool:
        client = self.init_docker()
        if client is None:
            return False
        try:
            client.ping()
        except (DockerException, OSError) as e:
            self.capabilities.mark_container_runtime_lost(f"Docker ping failed: {e}")
            return False
        self.capabilities.set_container_runtime(True)
        return True

    def get_docker_info(self) -> dict[str, Any] | None:
        if not self.capabilities.docker_available:
            return None
        client = self.init_docker()
        if client is None:
            return None
        try:
            info = client.info()
        except (DockerException, OSError) as e:
            logger.warning("Docker info failed: %s", e)
            return None
        keys = ("ServerVersion", "OperatingSystem", "Architecture", "NCPU", "MemTotal", "Containers", "ContainersRunning")
        return {k: info.get(k) for k in keys}

    @contextmanager
    def _runtime(
        self,
        *,
        step: str,
        runner_id: str | None = None,
        error_cls: type[RunnerEngineError] = StartError,
    ) -> Iterator[Any]:
        self.capabilities.require_container_runtime(runner_id=runner_id, step=step)
        client = self.init_docker()
        if client is None:
            self.capabilities.require_container_runtime(runner_id=runner_id, step=step)
        try:
            yield client
        except NotFound:
            raise
        except APIError as e:
            raise error_cls(e.explanation or str(e), runner_id=runner_id, step=step) from e
        except (DockerException, OSError) as e:
            self.capabilities.mark_container_runtime_lost(str(e))
            raise ContainerRuntimeUnavailable(str(e), runner_id=runner_id, step=step) from e

    # --- Image
    def pull_runner_image(
        self,
        image: str | None = None,
        *,
        arch: str | None = None,
        cancel: CancellationToken | None = None,
        runner_id: str | None = None,
    ) -> str:
        """Ensure `image` is present locally (for `arch` when given). Idempotent."""
        image = image or self._config.image
        repo, tag = parse_repository_tag(image)
        want_arch = _OCI_ARCH.get(arch or "")
        with self._runtime(step="pull_image", runner_id=runner_id, error_cls=ImagePullError) as client:
            try:
                existing = client.images.get(image)
                if want_arch is None or existing.attrs.get("Architecture") == want_arch:
                    return image
                logger.info("Image %s has arch %s, re-pulling for %s", image, existing.attrs.get("Architecture"), want_arch)
            except ImageNotFound:
                pass

            deadline = time.monotonic() + self._config.pull_timeout_s
            try:
                stream = client.api.pull(
                    repo,
                    tag=tag or "latest",
                    stream=True,
                    decode=True,
                    platform=f"linux/{want_arch}" if want_arch else None,
                )
                for event in stream:
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    if time.monotonic() > deadline:
                        raise ImagePullError(
                            f"pull of {image} exceeded {self._config.pull_timeout_s}s", runner_id=runner_id
                        )
                    if isinstance(event, dict) and event.get("error"):
                        raise ImagePullError(str(event["error"]), runner_id=runner_id)
            except NotFound as e:
                raise ImagePullError(f"image {image} not found: {e.explanation}", runner_id=runner_id) from e
        logger.info("Pulled runner image %s", image)
        return image

    # --- Lifecycle
    def create_docker_runner(self, runner: Runner, image: str, config: ContainerLaunchConfig) -> str:
        """Create (not start) the runner's container and return its id."""
        env = {
            "RUNNER_NAME": runner.name,
            "RUNNER_TOKEN": config.registration_token,
            "RUNNER_WORKDIR": CONTAINER_WORKDIR,
            "DISABLE_AUTO_UPDATE": "true",
            "LABELS": ",".join(config.labels),
            "EPHEMERAL": "true" if config.ephemeral else "false",
        }
        if config.scope_type == ScopeType.ORG:
            env["RUNNER_SCOPE"] = "org"
            env["ORG_NAME"] = config.target
        else:
            env["REPO_URL"] = config.registration_url

        kwargs: dict[str, Any] = {
            "name": container_name(runner.runner_id),
            "environment": env,
            "labels": {
                LABEL_MANAGED: "true",
                LABEL_RUNNER_ID: runner.runner_id,
                LABEL_RUNNER_NAME: runner.name,
            },
            "detach": True,
        }
        if config.ephemeral:
            kwargs["auto_remove"] = True
        else:
            kwargs["restart_policy"] = {"Name": "unless-stopped"}
        if config.options.enable_kvm:
            kwargs["devices"] = ["/dev/kvm:/dev/kvm:rwm"]
        if config.options.enable_docker_socket:
            kwargs["volumes"] = {DOCKER_SOCKET: {"bind": DOCKER_SOCKET, "mode": "rw"}}
        if config.options.privileged:
            kwargs["privileged"] = True

        with self._runtime(step="create_container", runner_id=runner.runner_id) as client:
            self._discard_leftover(client, runner.runner_id)
            container = client.containers.create(image, **kwargs)
        logger.info("Created container %s for runner %s", container.id[:12], runner.runner_id)
        return str(container.id)

    @staticmethod
    def _discard_leftover(client: Any, runner_id: str) -> None:
        # Same name can only come from an earlier attempt for this very runner.
        try:
            leftover = client.containers.get(container_name(runner_id))
        except NotFound:
            return
        if leftover.labels.get(LABEL_RUNNER_ID) == runner_id:
            logger.warning("Removing leftover container %s for runner %s", leftover.id[:12], runner_id)
            leftover.remove(force=True)

    def start_docker_runner(self, container_id: str, *, runner_id: str | None = None) -> None:
        with self._runtime(step="start_container", runner_id=runner_id) as client:
            try:
                container = client.containers.get(container_id)
                container.start()
                container.reload()
            except NotFound as e:
                raise StartError(f"container {container_id[:12]} does not exist", runner_id=runner_id) from e
            if container.status not in _RUNNING_STATES:
                logs = _decode(container.logs(tail=10))
                raise StartError(f"container is {container.status} after start: {logs}", runner_id=runner_id)

    def stop_docker_runner(
        self, container_id: str | None, *, grace_s: float | None = None, runner_id: str | None = None
    ) -> bool:
        """Stop the container (SIGTERM, then SIGKILL after the grace period). Idempotent."""
        if not container_id:
            return False
        grace = self._config.stop_timeout_s if grace_s is None else grace_s
        with self._runtime(step="stop_container", runner_id=runner_id, error_cls=StopError) as client:
            try:
                container = client.containers.get(container_id)
                if container.status not in _RUNNING_STATES | {"paused"}:
                    return False
                container.stop(timeout=int(grace))
            except NotFound:
                return False
        logger.info("Stopped container %s", container_id[:12])
        return True

    def remove_docker_runner(self, container_id: str | None, *, runner_id: str | None = None) -> None:
        if not container_id:
            return
        with self._runtime(step="remove_container", runner_id=runner_id, error_cls=RemoveError) as client:
            try:
                container = client.containers.get(container_id)
                if container.status in _RUNNING_STATES:
                    container.stop(timeout=5)
                container.remove(force=True)
            except NotFound:
                return
        logger.info("Removed container %s", container_id[:12])

    def terminate_container(self, container_id: str, *, grace_s: float | None = None) -> None:
        self.stop_docker_runner(container_id, grace_s=grace_s)
        self.remove_docker_runner(container_id)

    # --- Reads
    def get_container_status(self, container_id: str | None, *, runner_id: str | None = None) -> ContainerState:
        if not container_id:
            return ContainerState(observed=Observed.MISSING)
        with self._runtime(step="container_status", runner_id=runner_id) as client:
            try:
                container = client.containers.get(container_id)
            except NotFound:
                return ContainerState(observed=Observed.MISSING)
            native = str(container.status)
            exit_code = (container.attrs.get("State") or {}).get("ExitCode")
        observed = Observed.RUNNING if native in _RUNNING_STATES else Observed.STOPPED
        return ContainerState(observed=observed, native=native, exit_code=exit_code)

    def get_container_logs(self, container_id: str | None, *, tail: int = 100, runner_id: str | None = None) -> str:
        if not container_id:
            return ""
        with self._runtime(step="container_logs", runner_id=runner_id) as client:
            try:
                container = client.containers.get(container_id)
                return _decode(container.logs(stdout=True, stderr=True, tail=max(0, int(tail)), timestamps=True))
            except NotFound:
                return ""

    def find_runner_container(self, runner_id: str) -> str | None:
        """Re-derive a runner's container id from the naming convention."""
        with self._runtime(step="find_container", runner_id=runner_id) as client:
            try:
                container = client.containers.get(container_name(runner_id))
            except NotFound:
                return None
            if container.labels.get(LABEL_RUNNER_ID) != runner_id:
                return None
            return str(container.id)

    def list_action_packer_containers(self) -> list[ManagedContainer]:
        with self._runtime(step="list_containers") as client:
            containers = client.containers.list(all=True, filters={"label": LABEL_RUNNER_ID})
        out = []
        for c in containers:
            labels = c.labels or {}
            runner_id = labels.get(LABEL_RUNNER_ID)
            if not runner_id:
                continue
            out.append(
                ManagedContainer(
                    container_id=str(c.id),
                    name=str(c.name),
                    runner_id=runner_id,
                    runner_name=labels.get(LABEL_RUNNER_NAME),
                    native_status=str(c.status),
                )
            )
        return out


def _decode(raw: bytes | str) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)
