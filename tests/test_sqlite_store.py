from __future__ import annotations

import sqlite3
import tempfile
from pathlib import Path

import pytest

from src.engine.errors import InvalidTransition, ModeImmutable, RunnerNotFound
from src.engine.models import ProcessHandle, RunnerMode, RunnerStatus, Scope, ScopeType
from src.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


def _scope(credential_id: str = "cred_1") -> Scope:
    return Scope(scope_type=ScopeType.REPO, target="octo/widgets", credential_id=credential_id)


def test_schema_is_created_once_and_guards_newer_databases() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = Path(td) / "fleet.db"
        store = SQLiteStore(db_path)
        store.close()

        # Re-opening an existing database keeps its schema.
        store = SQLiteStore(db_path)
        try:
            assert store._get_schema_version() == SCHEMA_VERSION == 1
            cols = {r["name"] for r in store._conn.execute("PRAGMA table_info(runners);").fetchall()}
            assert "last_heartbeat_at" in cols
            store._conn.execute("UPDATE meta SET value = ? WHERE key = 'schema_version';", (str(SCHEMA_VERSION + 1),))
            store._conn.commit()
        finally:
            store.close()

        with pytest.raises(RuntimeError, match="newer than code expects"):
            SQLiteStore(db_path)


def test_mode_is_write_once() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(Path(td) / "fleet.db")
        try:
            runner = store.create_runner(name="r1", mode=RunnerMode.PROCESS, scope=_scope(), labels=["a"])

            with pytest.raises(ModeImmutable):
                store.update_runner(runner.runner_id, mode="container")

            # The schema refuses it even for writers that bypass the store API.
            with pytest.raises(sqlite3.IntegrityError):
                store._conn.execute("UPDATE runners SET mode = 'container' WHERE runner_id = ?;", (runner.runner_id,))
            store._conn.rollback()

            assert store.require_runner(runner_id=runner.runner_id).mode == RunnerMode.PROCESS
        finally:
            store.close()


def test_running_requires_handle_and_removed_forbids_one() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(Path(td) / "fleet.db")
        try:
            runner = store.create_runner(name="r1", mode=RunnerMode.CONTAINER, scope=_scope(), labels=[])

            with pytest.raises(InvalidTransition):
                store.transition(runner.runner_id, RunnerStatus.RUNNING, reason="test")
            assert store.require_runner(runner_id=runner.runner_id).status == RunnerStatus.PENDING

            store.transition(runner.runner_id, RunnerStatus.RUNNING, reason="test", container_id="c" * 64)
            with pytest.raises(InvalidTransition):
                store.transition(runner.runner_id, RunnerStatus.REMOVED, reason="test")

            removed = store.transition(runner.runner_id, RunnerStatus.REMOVED, reason="test", container_id=None)
            assert removed.status == RunnerStatus.REMOVED
            assert removed.has_handle is False
        finally:
            store.close()


def test_handle_type_must_match_mode() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(Path(td) / "fleet.db")
        try:
            runner = store.create_runner(name="r1", mode=RunnerMode.PROCESS, scope=_scope(), labels=[])
            with pytest.raises(InvalidTransition):
                store.update_runner(runner.runner_id, container_id="c" * 64)
        finally:
            store.close()


def test_backend_handle_is_never_shared() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(Path(td) / "fleet.db")
        try:
            a = store.create_runner(name="a", mode=RunnerMode.CONTAINER, scope=_scope(), labels=[])
            b = store.create_runner(name="b", mode=RunnerMode.CONTAINER, scope=_scope(), labels=[])
            store.update_runner(a.runner_id, container_id="f" * 64)
            with pytest.raises(InvalidTransition):
                store.update_runner(b.runner_id, container_id="f" * 64)

            p = store.create_runner(name="p", mode=RunnerMode.PROCESS, scope=_scope(), labels=[])
            q = store.create_runner(name="q", mode=RunnerMode.PROCESS, scope=_scope(), labels=[])
            handle = ProcessHandle(pid=4242, started_at=1700000000.0)
            store.update_runner(p.runner_id, process_handle=handle)
            with pytest.raises(InvalidTransition):
                store.update_runner(q.runner_id, process_handle=handle)
        finally:
            store.close()


def test_transition_checks_expected_status_and_traces() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(Path(td) / "fleet.db")
        try:
            runner = store.create_runner(name="r1", mode=RunnerMode.PROCESS, scope=_scope(), labels=[])
            store.transition(
                runner.runner_id, RunnerStatus.CONFIGURING, reason="create", expected=[RunnerStatus.PENDING]
            )
            with pytest.raises(InvalidTransition):
                store.transition(
                    runner.runner_id, RunnerStatus.STARTING, reason="create", expected=[RunnerStatus.STOPPED]
                )
            store.transition(runner.runner_id, RunnerStatus.ERROR, reason="configure_failed", error="boom")

            assert store.list_status_history(runner_id=runner.runner_id) == ["pending", "configuring", "error"]
            page = store.list_events_page(
                runner_id=runner.runner_id, limit=10, cursor=None, event_types=["status_changed"]
            )
            assert [e["payload"]["to"] for e in page["items"]] == ["configuring", "error"]
            assert page["items"][-1]["payload"]["error"] == "boom"

            with pytest.raises(RunnerNotFound):
                store.transition("runner_missing", RunnerStatus.STOPPED, reason="x")
        finally:
            store.close()


def test_runner_ids_are_never_reused() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(Path(td) / "fleet.db")
        try:
            runner = store.create_runner(name="r1", mode=RunnerMode.PROCESS, scope=_scope(), labels=[])
            store.transition(runner.runner_id, RunnerStatus.REMOVED, reason="remove")
            assert store.get_runner(runner_id=runner.runner_id) is not None
            with pytest.raises(sqlite3.IntegrityError):
                store.create_runner(
                    runner_id=runner.runner_id, name="r2", mode=RunnerMode.PROCESS, scope=_scope(), labels=[]
                )
        finally:
            store.close()


def test_runner_page_is_newest_first_and_filterable() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(Path(td) / "fleet.db")
        try:
            ids = [
                store.create_runner(name=f"r{i}", mode=RunnerMode.PROCESS, scope=_scope(), labels=[]).runner_id
                for i in range(3)
            ]
            store.transition(ids[0], RunnerStatus.STOPPED, reason="test")

            first = store.list_runners_page(limit=2, cursor=None, statuses=None)
            assert first["has_more"] is True
            second = store.list_runners_page(limit=2, cursor=first["next_cursor"], statuses=None)
            seen = [r["runner_id"] for r in first["items"] + second["items"]]
            assert sorted(seen) == sorted(ids)
            assert len(set(seen)) == 3

            stopped = store.list_runners_page(limit=10, cursor=None, statuses=["stopped"])
            assert [r["runner_id"] for r in stopped["items"]] == [ids[0]]
            assert store.count_runners_by_status() == {"pending": 2, "stopped": 1}
        finally:
            store.close()


def test_credential_secret_is_not_exposed() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(Path(td) / "fleet.db")
        try:
            cred = store.create_credential(
                name="ci", kind="pat", scope_type="repo", target="/octo/widgets/", secret="ghp_secret"
            )
            assert cred.target == "octo/widgets"
            assert "ghp_secret" not in str(cred.to_dict())
            assert store.get_credential_secret(credential_id=cred.credential_id) == "ghp_secret"

            store.create_runner(name="r1", mode=RunnerMode.PROCESS, scope=_scope(cred.credential_id), labels=[])
            assert store.count_active_runners_for_credential(credential_id=cred.credential_id) == 1
            assert store.delete_credential(credential_id=cred.credential_id) is True
            assert store.get_credential(credential_id=cred.credential_id) is None
        finally:
            store.close()
