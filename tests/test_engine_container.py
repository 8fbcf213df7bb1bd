from __future__ import annotations

import tempfile
import time

import pytest

from fakes import build_fleet, kill_all
from src.engine.errors import ContainerRuntimeUnavailable, InvalidTransition
from src.engine.models import ContainerOptions, RunnerMode, RunnerStatus
from src.storage.sqlite_store import SQLiteStore


def _history(engine, runner_id: str) -> list[str]:
    store = SQLiteStore(engine.db_path)
    try:
        return store.list_status_history(runner_id=runner_id)
    finally:
        store.close()


def test_container_runner_lifecycle() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td)
        engine = fleet.engine

        runner = engine.create_and_start_runner(
            credential_id=fleet.credential_id,
            mode="container",
            labels=["docker"],
            options=ContainerOptions(privileged=True),
        )
        assert runner.mode == RunnerMode.CONTAINER
        assert runner.status == RunnerStatus.RUNNING
        assert runner.container_id in fleet.docker.containers.by_id
        assert runner.options.privileged is True
        assert fleet.docker.containers.by_id[runner.container_id].kwargs["privileged"] is True
        assert _history(engine, runner.runner_id) == ["pending", "configuring", "starting", "running"]
        assert engine.get_container_status(runner.runner_id)["status"] == "running"
        assert engine.get_runner_process(runner.runner_id) is None

        stopped = engine.stop_runner(runner.runner_id)
        assert stopped.status == RunnerStatus.STOPPED
        assert stopped.container_id == runner.container_id
        assert engine.get_container_status(runner.runner_id)["native"] == "exited"

        assert engine.start_runner(runner.runner_id).status == RunnerStatus.RUNNING

        removed = engine.remove_runner(runner.runner_id)
        assert removed.status == RunnerStatus.REMOVED
        assert removed.container_id is None
        assert runner.container_id not in fleet.docker.containers.by_id
        assert fleet.hosting.deleted == [runner.github_runner_id]


def test_vanished_container_resolution_depends_on_registration() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td)
        engine = fleet.engine

        kept = engine.create_and_start_runner(credential_id=fleet.credential_id, mode="container", ephemeral=True)
        dropped = engine.create_and_start_runner(credential_id=fleet.credential_id, mode="container", ephemeral=True)
        for r in (kept, dropped):
            fleet.docker.containers.by_id[r.container_id].kill()
            assert r.container_id not in fleet.docker.containers.by_id
        fleet.hosting.unregister(dropped.name)

        orphaned = engine.sync_docker_runner_status(kept.runner_id)
        assert orphaned.status == RunnerStatus.ORPHANED
        assert orphaned.container_id is None

        removed = engine.sync_docker_runner_status(dropped.runner_id)
        assert removed.status == RunnerStatus.REMOVED


def test_killed_persistent_container_is_stopped() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td)
        runner = fleet.engine.create_and_start_runner(credential_id=fleet.credential_id, mode="container")
        fleet.docker.containers.by_id[runner.container_id].kill()

        synced = fleet.engine.sync_runner_status(runner.runner_id)
        assert synced.status == RunnerStatus.STOPPED
        assert synced.container_id == runner.container_id


def test_lost_runtime_fails_container_ops_but_not_process_ops() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td)
        engine = fleet.engine
        try:
            runner = engine.create_and_start_runner(credential_id=fleet.credential_id, mode="container")
            fleet.docker.down = True
            assert engine.probe_capabilities()["docker_available"] is False

            with pytest.raises(ContainerRuntimeUnavailable):
                engine.stop_runner(runner.runner_id)
            with pytest.raises(ContainerRuntimeUnavailable):
                engine.create_and_start_runner(credential_id=fleet.credential_id, mode="container")
            with pytest.raises(ContainerRuntimeUnavailable):
                engine.sync_docker_runner_status(runner.runner_id)
            assert engine.get_runner(runner.runner_id).status == RunnerStatus.RUNNING

            proc = engine.create_and_start_runner(credential_id=fleet.credential_id)
            assert proc.status == RunnerStatus.RUNNING
            with pytest.raises(InvalidTransition):
                engine.get_container_status(proc.runner_id)
            with pytest.raises(InvalidTransition):
                engine.sync_docker_runner_status(proc.runner_id)

            stats = engine.reconcile_once()
            assert stats is not None
            assert stats["deferred"] >= 1
            assert engine.get_runner(runner.runner_id).status == RunnerStatus.RUNNING

            fleet.docker.down = False
            engine.probe_capabilities()
            assert engine.stop_runner(runner.runner_id).status == RunnerStatus.STOPPED
        finally:
            kill_all(engine)


def test_quiet_ephemeral_runners_are_looked_up_again() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td, stale_heartbeat_s=600.0)
        engine = fleet.engine

        kept = engine.create_and_start_runner(credential_id=fleet.credential_id, mode="container", ephemeral=True)
        gone = engine.create_and_start_runner(credential_id=fleet.credential_id, mode="container", ephemeral=True)
        recent = engine.create_and_start_runner(credential_id=fleet.credential_id, mode="container", ephemeral=True)
        quiet_since = time.time() - 4000
        store = SQLiteStore(engine.db_path)
        try:
            for r in (kept, gone):
                store.update_runner(r.runner_id, last_heartbeat_at=quiet_since)
            assert {r.runner_id for r in store.list_stale_ephemeral(heard_before=time.time() - 600)} == {
                kept.runner_id,
                gone.runner_id,
            }
        finally:
            store.close()

        # The job finished: the hosting service forgot the runner and its container auto-removed.
        fleet.hosting.unregister(gone.name)
        fleet.docker.containers.by_id[gone.container_id].kill()
        fleet.hosting.calls.clear()

        stats = engine.reconcile_once()
        assert stats["stale_checked"] == 2
        assert stats["stale_resolved"] == 1
        assert fleet.hosting.calls.count("get_runner") == 2

        assert engine.get_runner(gone.runner_id).status == RunnerStatus.REMOVED
        assert _history(engine, gone.runner_id)[-1] == "removed"
        refreshed = engine.get_runner(kept.runner_id)
        assert refreshed.status == RunnerStatus.RUNNING
        assert refreshed.last_heartbeat_at > quiet_since
        assert engine.get_runner(recent.runner_id).status == RunnerStatus.RUNNING


def test_stale_lookup_can_be_disabled() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td, stale_heartbeat_s=0.0)
        engine = fleet.engine
        runner = engine.create_and_start_runner(credential_id=fleet.credential_id, mode="container", ephemeral=True)
        store = SQLiteStore(engine.db_path)
        try:
            store.update_runner(runner.runner_id, last_heartbeat_at=time.time() - 4000)
        finally:
            store.close()
        fleet.hosting.calls.clear()

        stats = engine.reconcile_once()
        assert stats["stale_checked"] == 0
        assert "get_runner" not in fleet.hosting.calls
