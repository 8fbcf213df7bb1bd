from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

from src.credentials.resolver import CredentialResolver
from src.engine.container_backend import ContainerBackend
from src.engine.errors import (
    AuthError,
    CredentialExpired,
    CredentialNotFound,
    HostingServiceError,
    RegistrationLost,
    RunnerEngineError,
)
from src.engine.locks import RunnerLocks
from src.engine.models import Observed, Runner, RunnerMode, RunnerStatus, SYNCABLE_STATUSES
from src.engine.process_backend import ProcessBackend
from src.hosting.github_client import RegisteredRunner
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)

# Failures that leave the hosting view unknown for this pass.
_HOSTING_ERRORS = (HostingServiceError, AuthError, CredentialNotFound, CredentialExpired)


def resolve_status(
    observed: Observed,
    registered: bool | None,
    *,
    registration_pending: bool = False,
) -> tuple[RunnerStatus, str] | None:
    """Decide a runner's status from what the backend and hosting service report.

    `registered` is None when the hosting service could not be asked. Returns
    None when the decision depends on that unknown answer (or on a
    registration that may still be in progress), in which case the record
    must be left as it is.
    """
    if observed == Observed.MISSING:
        if registered is None:
            return None
        if registered:
            return RunnerStatus.ORPHANED, "resource_vanished_while_registered"
        return RunnerStatus.REMOVED, "resource_vanished"
    if observed == Observed.RUNNING:
        if registered is None:
            return None
        if not registered:
            if registration_pending:
                return None
            return RunnerStatus.ERROR, "registration_lost"
        return RunnerStatus.RUNNING, "backend_running"
    return RunnerStatus.STOPPED, "backend_stopped"


def runner_status_for_container(observed: Observed, recorded: RunnerStatus) -> RunnerStatus:
    """Map a container observation onto the runner status enum without a hosting view."""
    if observed == Observed.RUNNING:
        return RunnerStatus.RUNNING
    if observed == Observed.STOPPED:
        return RunnerStatus.STOPPED
    return RunnerStatus.REMOVED if recorded == RunnerStatus.REMOVED else RunnerStatus.ORPHANED


def match_registration(listing: list[RegisteredRunner], runner: Runner) -> RegisteredRunner | None:
    if runner.github_runner_id is not None:
        for r in listing:
            if r.runner_id == runner.github_runner_id:
                return r
    for r in listing:
        if r.name == runner.name:
            return r
    return None


@dataclass(frozen=True)
class SyncOutcome:
    runner: Runner
    changed: bool
    deferred: bool = False
    error: RunnerEngineError | None = None


class StatusSynchronizer:
    """Read-then-write status correction. Never starts or stops anything."""

    def __init__(
        self,
        *,
        db_path: str | Path | None,
        process_backend: ProcessBackend,
        container_backend: ContainerBackend,
        resolver: CredentialResolver,
        registration_grace_s: float = 120.0,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._process = process_backend
        self._container = container_backend
        self._resolver = resolver
        self._registration_grace_s = registration_grace_s
        self._now = now

    @contextmanager
    def _store(self) -> Iterator[SQLiteStore]:
        store = SQLiteStore(self._db_path)
        try:
            yield store
        finally:
            store.close()

    def observe(self, runner: Runner) -> Observed:
        if runner.mode == RunnerMode.PROCESS:
            return self._process.observe(runner)
        return self._container.get_container_status(runner.container_id, runner_id=runner.runner_id).observed

    def list_registrations(self, runner: Runner) -> list[RegisteredRunner]:
        ref = self._resolver.get_ref(runner.scope.credential_id)
        client = self._resolver.create_client_from_credential(ref)
        return client.list_runners()

    def _registration(
        self, runner: Runner, cache: dict[str, Any] | None
    ) -> tuple[RegisteredRunner | None, bool | None, RunnerEngineError | None]:
        key = runner.scope.credential_id
        try:
            if cache is not None and key in cache:
                cached = cache[key]
                if isinstance(cached, RunnerEngineError):
                    raise cached
                listing = cached
            else:
                listing = self.list_registrations(runner)
                if cache is not None:
                    cache[key] = listing
        except _HOSTING_ERRORS as e:
            if cache is not None:
                cache[key] = e
            return None, None, type(e)(e.cause, runner_id=runner.runner_id, step="list_registrations")
        found = match_registration(listing, runner)
        return found, found is not None, None

    def sync_runner(
        self,
        runner: Runner,
        *,
        listing_cache: dict[str, Any] | None = None,
        allow_pending: bool = True,
    ) -> SyncOutcome:
        """Apply the resolution policy to one runner (caller holds its lock).

        Backend observation errors propagate; an unreachable hosting service
        defers the decision and leaves the record untouched.
        """
        observed = self.observe(runner)
        registration, registered, hosting_error = self._registration(runner, listing_cache)

        now = self._now()
        pending = (
            allow_pending
            and runner.github_runner_id is None
            and runner.status in {RunnerStatus.STARTING, RunnerStatus.RUNNING}
            and now - runner.updated_at < self._registration_grace_s
        )
        decision = resolve_status(observed, registered, registration_pending=pending)
        if decision is None:
            logger.info(
                "Deferring status of runner %s (observed=%s, registered=%s)",
                runner.runner_id,
                observed.value,
                registered,
            )
            return SyncOutcome(runner=runner, changed=False, deferred=True, error=hosting_error)

        new_status, reason = decision
        return self._apply(runner, observed, registration, new_status, reason, now)

    def _apply(
        self,
        runner: Runner,
        observed: Observed,
        registration: RegisteredRunner | None,
        new_status: RunnerStatus,
        reason: str,
        now: float,
    ) -> SyncOutcome:
        changes: dict[str, Any] = {"last_observed_at": now}
        if registration is not None:
            changes["github_runner_id"] = registration.runner_id
            if registration.status == "online":
                changes["last_heartbeat_at"] = now
        if observed == Observed.MISSING:
            changes["process_handle"] = None
            changes["container_id"] = None
        elif runner.mode == RunnerMode.PROCESS and observed != Observed.RUNNING and runner.process_handle is not None:
            changes["process_handle"] = None
        if new_status == RunnerStatus.ERROR:
            changes["error"] = str(
                RegistrationLost(
                    "backend is running but the hosting service no longer lists the runner",
                    runner_id=runner.runner_id,
                )
            )
        else:
            changes["error"] = None

        with self._store() as store:
            if new_status != runner.status:
                updated = store.transition(
                    runner.runner_id, new_status, reason=reason, expected=[runner.status], **changes
                )
                logger.info(
                    "Runner %s corrected %s -> %s (%s)", runner.runner_id, runner.status.value, new_status.value, reason
                )
                if new_status == RunnerStatus.ERROR:
                    store.append_event(runner.runner_id, "registration_lost", {"observed": observed.value})
                return SyncOutcome(runner=updated, changed=True)
            updated = store.update_runner(runner.runner_id, **changes)
        return SyncOutcome(runner=updated, changed=False)

    def _lookup(self, runner: Runner) -> RegisteredRunner | None:
        ref = self._resolver.get_ref(runner.scope.credential_id)
        client = self._resolver.create_client_from_credential(ref)
        if runner.github_runner_id is not None:
            return client.get_runner(runner.github_runner_id)
        return match_registration(client.list_runners(), runner)

    def sweep_stale_ephemeral(self, *, locks: RunnerLocks, stale_after_s: float, deadline: float) -> dict[str, int]:
        """Look up ephemeral runners that have gone quiet, one fresh request each.

        A runner the hosting service still knows gets its heartbeat refreshed;
        one it has forgotten (an ephemeral agent finished its job) is resolved
        with the usual policy, which removes it once its backend is gone.
        """
        stats = {"stale_checked": 0, "stale_resolved": 0}
        if stale_after_s <= 0:
            return stats
        with self._store() as store:
            runners = store.list_stale_ephemeral(heard_before=self._now() - stale_after_s)
        for runner in runners:
            if time.monotonic() > deadline:
                break
            with locks.try_hold(runner.runner_id) as acquired:
                if not acquired:
                    continue
                with self._store() as store:
                    fresh = store.get_runner(runner_id=runner.runner_id)
                if fresh is None or fresh.status != RunnerStatus.RUNNING:
                    continue
                try:
                    registration = self._lookup(fresh)
                except _HOSTING_ERRORS as e:
                    logger.warning("Stale check of runner %s deferred: %s", fresh.runner_id, e)
                    continue
                stats["stale_checked"] += 1
                now = self._now()
                if registration is not None:
                    with self._store() as store:
                        store.update_runner(fresh.runner_id, last_heartbeat_at=now, last_observed_at=now)
                    continue
                try:
                    observed = self.observe(fresh)
                except RunnerEngineError as e:
                    logger.warning("Stale check of runner %s deferred: %s", fresh.runner_id, e)
                    continue
                decision = resolve_status(observed, False)
                if decision is None:
                    continue
                logger.info("Ephemeral runner %s is no longer registered (observed=%s)", fresh.runner_id, observed.value)
                outcome = self._apply(fresh, observed, None, *decision, now)
                stats["stale_resolved"] += int(outcome.changed)
        return stats

    def run_pass(self, *, locks: RunnerLocks, deadline: float) -> dict[str, int]:
        """Synchronize every syncable runner, skipping ones with an operation in flight."""
        stats = {"checked": 0, "corrected": 0, "deferred": 0, "skipped_busy": 0, "errors": 0}
        with self._store() as store:
            runners = store.list_runners(statuses=SYNCABLE_STATUSES)
        cache: dict[str, Any] = {}
        for i, runner in enumerate(runners):
            if time.monotonic() > deadline:
                stats["deferred"] += len(runners) - i
                logger.warning("Reconcile pass timed out; %d runner(s) deferred", len(runners) - i)
                break
            with locks.try_hold(runner.runner_id) as acquired:
                if not acquired:
                    stats["skipped_busy"] += 1
                    continue
                with self._store() as store:
                    fresh = store.get_runner(runner_id=runner.runner_id)
                if fresh is None or fresh.status not in SYNCABLE_STATUSES:
                    continue
                try:
                    outcome = self.sync_runner(fresh, listing_cache=cache)
                except RunnerEngineError as e:
                    # Transient: keep last-known status, retry next pass.
                    logger.warning("Sync of runner %s deferred: %s", runner.runner_id, e)
                    stats["deferred"] += 1
                    continue
                except Exception:
                    logger.exception("Unexpected error syncing runner %s", runner.runner_id)
                    stats["errors"] += 1
                    continue
                stats["checked"] += 1
                stats["corrected"] += int(outcome.changed)
                stats["deferred"] += int(outcome.deferred)
        return stats
