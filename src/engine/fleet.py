from __future__ import annotations

import logging
import threading
import time
import traceback
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from src.config.load_config import AppConfig
from src.credentials.resolver import CredentialResolver
from src.engine.capabilities import EngineCapabilities
from src.engine.container_backend import ContainerBackend, ContainerLaunchConfig
from src.engine.errors import (
    AlreadyRunning,
    InvalidTransition,
    ModeImmutable,
    RemoveError,
    RunnerEngineError,
    StartError,
    UnsupportedPlatform,
)
from src.engine.locks import ReadinessGate, RunnerLocks
from src.engine.models import (
    ContainerOptions,
    CredentialRef,
    Observed,
    Platform,
    Runner,
    RunnerMode,
    RunnerStatus,
    Scope,
    TERMINAL_STATUSES,
)
from src.engine.orphans import OrphanTracker
from src.engine.process_backend import ProcessBackend, RunnerProcessInfo, detect_platform
from src.engine.startup import StartupReconciler
from src.engine.sync import StatusSynchronizer, runner_status_for_container
from src.hosting.github_client import GitHubClient
from src.storage.sqlite_store import SQLiteStore
from src.utils.cancel import CancellationToken, CancelledError


logger = logging.getLogger(__name__)

# Failures are recorded over any status but a terminal one.
_FAILABLE_STATUSES = tuple(s for s in RunnerStatus if s not in TERMINAL_STATUSES)

# Statuses a caller-driven stop has to act on before the resource is gone.
_LIVE_STATUSES = frozenset(
    {
        RunnerStatus.PENDING,
        RunnerStatus.CONFIGURING,
        RunnerStatus.STARTING,
        RunnerStatus.RUNNING,
        RunnerStatus.STOPPING,
    }
)


def normalize_labels(labels: Iterable[str]) -> list[str]:
    """Strip, drop empties and de-duplicate while keeping order."""
    return list(dict.fromkeys(s.strip() for s in labels if s and s.strip()))


class _Progress:
    __slots__ = ("step",)

    def __init__(self, step: str) -> None:
        self.step = step


class RunnerEngine:
    """Lifecycle and reconciliation engine for the local runner fleet.

    Every caller-driven operation holds the runner's mutex for its whole
    duration and either reaches its declared status or leaves the runner in
    `error` with the failed step recorded. Caller-driven operations are
    refused until `initialize_runners_on_startup()` has opened the
    readiness gate.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        resolver: CredentialResolver | None = None,
        process_backend: ProcessBackend | None = None,
        container_backend: ContainerBackend | None = None,
        capabilities: EngineCapabilities | None = None,
        docker_client_factory: Callable[[], Any] | None = None,
        installation_token_source: Callable[[str], str] | None = None,
    ) -> None:
        self.config = config
        self._db_path = config.storage.sqlite_path
        if container_backend is not None:
            capabilities = container_backend.capabilities
        self.capabilities = capabilities or EngineCapabilities()
        self.locks = RunnerLocks()
        self.ready = ReadinessGate()

        self.resolver = resolver or CredentialResolver(
            db_path=self._db_path,
            github=config.github,
            installation_token_source=installation_token_source,
        )
        self.process = process_backend or ProcessBackend(config.runners)
        self.container = container_backend or ContainerBackend(
            config.docker, self.capabilities, client_factory=docker_client_factory
        )
        self.synchronizer = StatusSynchronizer(
            db_path=self._db_path,
            process_backend=self.process,
            container_backend=self.container,
            resolver=self.resolver,
        )
        self.orphans = OrphanTracker(
            db_path=self._db_path,
            process_backend=self.process,
            container_backend=self.container,
            capabilities=self.capabilities,
            locks=self.locks,
            grace_s=config.runners.stop_grace_period_s,
        )
        self._startup = StartupReconciler(
            db_path=self._db_path,
            synchronizer=self.synchronizer,
            container_backend=self.container,
            locks=self.locks,
            restart=self._start_locked if config.reconcile.restart_on_startup else None,
        )

        self._pass_lock = threading.Lock()
        self._cancels: dict[str, CancellationToken] = {}
        self._cancels_guard = threading.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    @contextmanager
    def _store(self) -> Iterator[SQLiteStore]:
        store = SQLiteStore(self._db_path)
        try:
            yield store
        finally:
            store.close()

    # --- Capabilities / readiness
    def probe_capabilities(self) -> dict[str, Any]:
        try:
            self.capabilities.set_platform(detect_platform())
        except UnsupportedPlatform as e:
            logger.warning("Process mode unavailable: %s", e.cause)
            self.capabilities.set_platform(None, error=e.cause)
        if not self.container.is_docker_available():
            logger.warning("Container mode unavailable: %s", self.capabilities.snapshot()["docker_error"])
        return self.capabilities.snapshot()

    def _require_platform(self, *, runner_id: str | None = None) -> Platform:
        platform = self.capabilities.platform
        if platform is not None:
            return platform
        error = self.capabilities.snapshot()["platform_error"]
        if error:
            raise UnsupportedPlatform(error, runner_id=runner_id)
        platform = detect_platform()
        self.capabilities.set_platform(platform)
        return platform

    def initialize_runners_on_startup(self) -> dict[str, Any]:
        """Run the startup reconciliation pass, then accept caller-driven operations."""
        stats = self._startup.initialize_runners_on_startup()
        self.ready.open()
        return stats

    # --- Failure bookkeeping
    def _fail(self, runner_id: str, err: RunnerEngineError, *, tb: str | None = None) -> RunnerEngineError:
        """Record `err` on the runner (status `error`) and hand it back for raising.

        A runner removed while the failing step ran stays removed.
        """
        err.bind(runner_id=runner_id)
        try:
            with self._store() as store:
                store.transition(
                    runner_id,
                    RunnerStatus.ERROR,
                    reason=f"{err.step}_failed",
                    expected=_FAILABLE_STATUSES,
                    error=str(err),
                )
                payload: dict[str, Any] = {"step": err.step, "error": err.cause}
                if tb:
                    payload["traceback"] = tb
                store.append_event(runner_id, "step_failed", payload)
        except InvalidTransition:
            logger.warning("Runner %s was removed during %s; not recording the failure", runner_id, err.step)
        except RunnerEngineError:
            logger.exception("Could not record failure of runner %s", runner_id)
        logger.warning("%s", err)
        return err

    def _client_for(self, runner: Runner) -> GitHubClient:
        ref = self.resolver.get_ref(runner.scope.credential_id)
        return self.resolver.create_client_from_credential(ref)

    # --- Create
    def create_and_start_runner(
        self,
        *,
        credential_id: str,
        labels: Iterable[str] = (),
        mode: RunnerMode | str = RunnerMode.PROCESS,
        name: str | None = None,
        ephemeral: bool = False,
        options: ContainerOptions | None = None,
        version: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> Runner:
        """Create a runner record and drive it to `running`.

        Process mode: download -> configure -> start. Container mode:
        pull image -> create container -> start. Any failure leaves the
        runner in `error` with its partial artifacts in place; cleaning them
        up is an explicit `remove_runner` call.
        """
        self.ready.require()
        mode = RunnerMode(mode)
        ref = self.resolver.get_ref(credential_id)
        platform: Platform | None = None
        if mode == RunnerMode.CONTAINER:
            self.capabilities.require_container_runtime(step="create")
            platform = self.capabilities.platform
        else:
            platform = self._require_platform()

        runner_id = f"runner_{uuid.uuid4().hex}"
        token = cancel or CancellationToken()
        progress = _Progress("create")
        with self._cancels_guard:
            self._cancels[runner_id] = token
        try:
            with self.locks.hold(runner_id):
                with self._store() as store:
                    runner = store.create_runner(
                        runner_id=runner_id,
                        name=(name or "").strip() or f"action-packer-{runner_id[len('runner_'):][:12]}",
                        mode=mode,
                        scope=Scope(scope_type=ref.scope_type, target=ref.target, credential_id=ref.credential_id),
                        labels=normalize_labels(labels),
                        ephemeral=ephemeral,
                        options=options if mode == RunnerMode.CONTAINER else None,
                    )
                logger.info("Creating %s runner %s (%s) for %s", mode.value, runner_id, runner.name, ref.target)
                try:
                    if mode == RunnerMode.PROCESS:
                        assert platform is not None
                        return self._create_process_runner(runner, ref, platform, version, token, progress)
                    return self._create_container_runner(runner, ref, platform, token, progress)
                except CancelledError as e:
                    raise self._fail(runner_id, StartError("cancelled", step=progress.step)) from e
                except RunnerEngineError as e:
                    raise self._fail(runner_id, e.bind(step=progress.step))
                except Exception as e:
                    raise self._fail(
                        runner_id,
                        StartError(f"{type(e).__name__}: {e}", step=progress.step),
                        tb=traceback.format_exc(),
                    ) from e
        finally:
            with self._cancels_guard:
                self._cancels.pop(runner_id, None)

    def _create_process_runner(
        self,
        runner: Runner,
        ref: CredentialRef,
        platform: Platform,
        version: str | None,
        cancel: CancellationToken,
        progress: _Progress,
    ) -> Runner:
        runner_id = runner.runner_id
        directory = self.process.runner_dir(runner_id)
        with self._store() as store:
            runner = store.transition(
                runner_id,
                RunnerStatus.CONFIGURING,
                reason="create",
                expected=[RunnerStatus.PENDING],
                runner_dir=str(directory),
            )

        progress.step = "authenticate"
        client = self.resolver.create_client_from_credential(ref)

        progress.step = "download"
        version = version or self.config.runners.runner_version
        available = client.get_runner_downloads() if version == "latest" else None
        download = self.process.resolve_download(platform, version, available=available)
        self.process.download_runner(platform, version, runner_dir=directory, download=download, cancel=cancel)
        cancel.raise_if_cancelled()

        progress.step = "registration_token"
        registration = client.create_registration_token()

        progress.step = "configure"
        self.process.configure_runner(runner, registration.token, list(runner.labels), url=client.registration_url())
        cancel.raise_if_cancelled()

        progress.step = "start"
        with self._store() as store:
            runner = store.transition(
                runner_id, RunnerStatus.STARTING, reason="configured", expected=[RunnerStatus.CONFIGURING]
            )
        handle = self.process.start_runner(runner)
        try:
            with self._store() as store:
                runner = store.transition(
                    runner_id,
                    RunnerStatus.RUNNING,
                    reason="healthy",
                    expected=[RunnerStatus.STARTING],
                    process_handle=handle,
                    error=None,
                )
        except RunnerEngineError:
            self.process.stop_runner(handle)
            raise
        logger.info("Runner %s running as pid %d", runner_id, handle.pid)
        return self._backfill_registration(runner, client)

    def _create_container_runner(
        self,
        runner: Runner,
        ref: CredentialRef,
        platform: Platform | None,
        cancel: CancellationToken,
        progress: _Progress,
    ) -> Runner:
        runner_id = runner.runner_id
        progress.step = "authenticate"
        client = self.resolver.create_client_from_credential(ref)
        with self._store() as store:
            runner = store.transition(
                runner_id, RunnerStatus.CONFIGURING, reason="create", expected=[RunnerStatus.PENDING]
            )

        progress.step = "pull_image"
        image = self.container.pull_runner_image(
            arch=platform.arch if platform is not None else None, cancel=cancel, runner_id=runner_id
        )
        cancel.raise_if_cancelled()

        progress.step = "registration_token"
        registration = client.create_registration_token()

        progress.step = "create_container"
        container_id = self.container.create_docker_runner(
            runner,
            image,
            ContainerLaunchConfig(
                registration_url=client.registration_url(),
                registration_token=registration.token,
                scope_type=runner.scope.scope_type,
                target=runner.scope.target,
                labels=runner.labels,
                ephemeral=runner.ephemeral,
                options=runner.options,
            ),
        )
        with self._store() as store:
            store.update_runner(runner_id, container_id=container_id)
            runner = store.transition(
                runner_id, RunnerStatus.STARTING, reason="container_created", expected=[RunnerStatus.CONFIGURING]
            )

        progress.step = "start"
        self.container.start_docker_runner(container_id, runner_id=runner_id)
        with self._store() as store:
            runner = store.transition(
                runner_id, RunnerStatus.RUNNING, reason="container_running", expected=[RunnerStatus.STARTING], error=None
            )
        logger.info("Runner %s running in container %s", runner_id, container_id[:12])
        return self._backfill_registration(runner, client)

    def _backfill_registration(self, runner: Runner, client: GitHubClient) -> Runner:
        # The container agent registers after start; sync fills the id in later.
        try:
            registered = client.find_runner_by_name(runner.name)
        except RunnerEngineError as e:
            logger.info("Registration lookup for runner %s skipped: %s", runner.runner_id, e)
            return runner
        if registered is None:
            return runner
        with self._store() as store:
            return store.update_runner(runner.runner_id, github_runner_id=registered.runner_id)

    # --- Start
    def start_runner(self, runner_id: str) -> Runner:
        self.ready.require()
        with self.locks.hold(runner_id):
            return self._start_locked(runner_id)

    def _resource_alive(self, runner: Runner) -> bool:
        return self.synchronizer.observe(runner) == Observed.RUNNING

    def _start_locked(self, runner_id: str) -> Runner:
        """Start a stopped (or failed) runner; caller holds the runner's lock."""
        with self._store() as store:
            runner = store.require_runner(runner_id=runner_id)
        if runner.status == RunnerStatus.RUNNING:
            raise AlreadyRunning("runner is already running", runner_id=runner_id)
        if runner.status not in {RunnerStatus.STOPPED, RunnerStatus.ERROR}:
            raise InvalidTransition(f"cannot start a runner that is {runner.status.value}", runner_id=runner_id, step="start")
        if runner.mode == RunnerMode.CONTAINER:
            self.capabilities.require_container_runtime(runner_id=runner_id, step="start")
        if runner.status == RunnerStatus.ERROR and self._resource_alive(runner):
            raise AlreadyRunning("runner resource is still live; stop it first", runner_id=runner_id)

        with self._store() as store:
            runner = store.transition(runner_id, RunnerStatus.STARTING, reason="start", expected=[runner.status])
        try:
            if runner.mode == RunnerMode.PROCESS:
                handle = self.process.start_runner(runner)
                with self._store() as store:
                    runner = store.transition(
                        runner_id,
                        RunnerStatus.RUNNING,
                        reason="healthy",
                        expected=[RunnerStatus.STARTING],
                        process_handle=handle,
                        error=None,
                    )
            else:
                if not runner.container_id:
                    raise StartError("runner has no container", runner_id=runner_id)
                self.container.start_docker_runner(runner.container_id, runner_id=runner_id)
                with self._store() as store:
                    runner = store.transition(
                        runner_id,
                        RunnerStatus.RUNNING,
                        reason="container_running",
                        expected=[RunnerStatus.STARTING],
                        error=None,
                    )
        except RunnerEngineError as e:
            raise self._fail(runner_id, e.bind(step="start"))
        logger.info("Started runner %s", runner_id)
        return runner

    # --- Stop
    def stop_runner(self, runner_id: str) -> Runner:
        """Graceful-then-forced stop. Idempotent: a stopped runner is returned as is."""
        self.ready.require()
        with self.locks.hold(runner_id):
            with self._store() as store:
                runner = store.require_runner(runner_id=runner_id)
            if runner.status in {RunnerStatus.STOPPED, RunnerStatus.REMOVED, RunnerStatus.ORPHANED}:
                return runner
            return self._stop_locked(runner)

    def _stop_locked(self, runner: Runner) -> Runner:
        runner_id = runner.runner_id
        if runner.mode == RunnerMode.CONTAINER:
            self.capabilities.require_container_runtime(runner_id=runner_id, step="stop")
        with self._store() as store:
            runner = store.transition(runner_id, RunnerStatus.STOPPING, reason="stop", expected=[runner.status])
        try:
            if runner.mode == RunnerMode.PROCESS:
                forced = self.process.stop_runner(runner.process_handle)
            else:
                forced = self.container.stop_docker_runner(runner.container_id, runner_id=runner_id)
        except RunnerEngineError as e:
            raise self._fail(runner_id, e.bind(step="stop"))
        with self._store() as store:
            runner = store.transition(
                runner_id,
                RunnerStatus.STOPPED,
                reason="stop",
                expected=[RunnerStatus.STOPPING],
                process_handle=None,
                error=None,
            )
            store.append_event(runner_id, "runner_stopped", {"forced": bool(forced)})
        logger.info("Stopped runner %s%s", runner_id, " (forced)" if forced else "")
        return runner

    # --- Remove
    def remove_runner(self, runner_id: str) -> Runner:
        """Stop, delete local artifacts, de-register. A removed runner is returned as is."""
        self.ready.require()
        with self.locks.hold(runner_id):
            with self._store() as store:
                runner = store.require_runner(runner_id=runner_id)
            if runner.status == RunnerStatus.REMOVED:
                return runner
            if runner.mode == RunnerMode.CONTAINER:
                self.capabilities.require_container_runtime(runner_id=runner_id, step="remove")

            if runner.status in _LIVE_STATUSES:
                runner = self._stop_locked(runner)
            elif runner.status == RunnerStatus.ERROR:
                self._kill_leftover(runner)

            progress = _Progress("authenticate")
            unregistered = False
            try:
                client = self._client_for(runner)
                if runner.mode == RunnerMode.PROCESS:
                    remove_token = None
                    directory = Path(runner.runner_dir) if runner.runner_dir else self.process.runner_dir(runner_id)
                    if self.process.is_configured(directory):
                        progress.step = "remove_token"
                        remove_token = client.create_remove_token().token
                    progress.step = "remove"
                    unregistered = self.process.remove_runner(runner, remove_token=remove_token)
                else:
                    progress.step = "remove"
                    self.container.remove_docker_runner(runner.container_id, runner_id=runner_id)
            except RunnerEngineError as e:
                raise self._fail(runner_id, e.bind(step=progress.step))

            if not unregistered:
                try:
                    registered = (
                        client.get_runner(runner.github_runner_id)
                        if runner.github_runner_id is not None
                        else client.find_runner_by_name(runner.name)
                    )
                    if registered is not None:
                        client.delete_runner(registered.runner_id)
                except RunnerEngineError as e:
                    err = RemoveError(e.cause, runner_id=runner_id, step="deregister")
                    with self._store() as store:
                        store.transition(
                            runner_id,
                            RunnerStatus.ERROR,
                            reason="deregister_failed",
                            process_handle=None,
                            container_id=None,
                            error=str(err),
                        )
                        store.append_event(runner_id, "step_failed", {"step": err.step, "error": err.cause})
                    raise err from e

            with self._store() as store:
                runner = store.transition(
                    runner_id,
                    RunnerStatus.REMOVED,
                    reason="remove",
                    process_handle=None,
                    container_id=None,
                    error=None,
                )
        logger.info("Removed runner %s", runner_id)
        return runner

    def _kill_leftover(self, runner: Runner) -> None:
        try:
            if runner.mode == RunnerMode.PROCESS:
                self.process.stop_runner(runner.process_handle)
            else:
                self.container.stop_docker_runner(runner.container_id, runner_id=runner.runner_id)
        except RunnerEngineError as e:
            raise self._fail(runner.runner_id, e.bind(step="stop"))

    # --- Sync / edit
    def sync_runner_status(self, runner_id: str) -> Runner:
        """On-demand reconciliation of one runner against backend and hosting views."""
        self.ready.require()
        with self.locks.hold(runner_id):
            with self._store() as store:
                runner = store.require_runner(runner_id=runner_id)
            if runner.status == RunnerStatus.REMOVED:
                return runner
            outcome = self.synchronizer.sync_runner(runner)
        if outcome.deferred and outcome.error is not None:
            raise outcome.error
        return outcome.runner

    def sync_docker_runner_status(self, runner_id: str) -> Runner:
        with self._store() as store:
            runner = store.require_runner(runner_id=runner_id)
        if runner.mode != RunnerMode.CONTAINER:
            raise InvalidTransition("not a container runner", runner_id=runner_id, step="sync")
        return self.sync_runner_status(runner_id)

    def update_runner(
        self,
        runner_id: str,
        *,
        name: str | None = None,
        labels: Iterable[str] | None = None,
        mode: RunnerMode | str | None = None,
    ) -> Runner:
        """Edit mutable fields. Labels apply at the next registration; mode never changes."""
        with self.locks.hold(runner_id):
            with self._store() as store:
                runner = store.require_runner(runner_id=runner_id)
                if mode is not None and RunnerMode(mode) != runner.mode:
                    raise ModeImmutable(
                        f"cannot change mode from {runner.mode.value} to {RunnerMode(mode).value}",
                        runner_id=runner_id,
                    )
                changes: dict[str, Any] = {}
                if name is not None and name.strip():
                    changes["name"] = name.strip()
                if labels is not None:
                    changes["labels"] = normalize_labels(labels)
                if not changes:
                    return runner
                runner = store.update_runner(runner_id, **changes)
                store.append_event(runner_id, "runner_updated", {k: v for k, v in changes.items()})
        return runner

    # --- Reads
    def get_runner(self, runner_id: str) -> Runner:
        with self._store() as store:
            return store.require_runner(runner_id=runner_id)

    def get_runner_process(self, runner_id: str) -> RunnerProcessInfo | None:
        runner = self.get_runner(runner_id)
        if runner.mode != RunnerMode.PROCESS:
            return None
        return self.process.get_runner_process(runner)

    def get_container_status(self, runner_id: str) -> dict[str, Any]:
        runner = self.get_runner(runner_id)
        if runner.mode != RunnerMode.CONTAINER:
            raise InvalidTransition("not a container runner", runner_id=runner_id, step="container_status")
        state = self.container.get_container_status(runner.container_id, runner_id=runner_id)
        return {
            "runner_id": runner_id,
            "container_id": runner.container_id,
            "status": runner_status_for_container(state.observed, runner.status).value,
            "native": state.native,
            "exit_code": state.exit_code,
        }

    def get_container_logs(self, runner_id: str, *, tail: int = 100) -> str:
        runner = self.get_runner(runner_id)
        if runner.mode == RunnerMode.PROCESS:
            return self.process.read_log_tail(runner, tail)
        return self.container.get_container_logs(runner.container_id, tail=tail, runner_id=runner_id)

    def cancel_operation(self, runner_id: str) -> bool:
        """Cancel an in-flight create-and-start (download / image pull)."""
        with self._cancels_guard:
            token = self._cancels.get(runner_id)
        if token is None:
            return False
        token.request_cancel("cancelled by caller")
        logger.info("Cancellation requested for runner %s", runner_id)
        return True

    def system_info(self) -> dict[str, Any]:
        with self._store() as store:
            counts = store.count_runners_by_status()
        return {
            "ready": self.ready.is_open,
            "capabilities": self.capabilities.snapshot(),
            "docker": self.container.get_docker_info(),
            "runners_dir": str(self.process.runners_dir),
            "runners_by_status": counts,
        }

    # --- Periodic reconciliation
    def reconcile_once(self) -> dict[str, Any] | None:
        """One synchronizer + orphan pass. Returns None if a pass is already running."""
        self.ready.require()
        if not self._pass_lock.acquire(blocking=False):
            return None
        try:
            started = time.monotonic()
            deadline = started + self.config.reconcile.pass_timeout_s
            if not self.capabilities.docker_available:
                self.container.is_docker_available()

            stale = self.synchronizer.sweep_stale_ephemeral(
                locks=self.locks, stale_after_s=self.config.reconcile.stale_heartbeat_s, deadline=deadline
            )
            stats: dict[str, Any] = dict(self.synchronizer.run_pass(locks=self.locks, deadline=deadline))
            stats.update(stale)
            found = self.orphans.scan()
            stopped = 0
            for orphan in found:
                try:
                    stopped += int(self.orphans.stop_orphaned_runner(orphan))
                except RunnerEngineError as e:
                    logger.warning("Could not stop orphan %s: %s", orphan.orphan_id, e)
                    stats["errors"] += 1
            stats["orphans_found"] = len(found)
            stats["orphans_stopped"] = stopped
            stats["dirs_removed"] = self.orphans.cleanup_orphaned_directories()
            stats["duration_s"] = round(time.monotonic() - started, 3)
        finally:
            self._pass_lock.release()
        logger.info("Reconcile pass: %s", stats)
        return stats
