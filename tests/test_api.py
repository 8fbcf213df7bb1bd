from __future__ import annotations

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

from fakes import build_fleet, kill_all
from src.api.app import create_app
from src.engine.errors import FleetLeaseHeld
from src.engine.lease import FleetLease


def test_health_and_empty_fleet_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        monkeypatch.setenv("ACTION_PACKER_CONFIG_PATH", os.path.join(td, "missing.toml"))
        monkeypatch.setenv("ACTION_PACKER_SQLITE_PATH", os.path.join(td, "app.db"))
        monkeypatch.setenv("ACTION_PACKER_RUNNERS_DIR", os.path.join(td, "runners"))
        monkeypatch.setenv("ACTION_PACKER_ENABLE_RECONCILER", "0")

        with TestClient(create_app()) as client:
            assert client.get("/api/v1/healthz").json() == {"status": "ok"}
            assert client.get("/api/v1/version").json()["schema_version"] == 1

            page = client.get("/api/v1/runners").json()
            assert page == {"items": [], "has_more": False, "next_cursor": None}

            info = client.get("/api/v1/system/info").json()
            assert info["ready"] is True
            assert info["runners_by_status"] == {}

            reconciler = client.get("/api/v1/system/reconciler").json()
            assert reconciler["reconciler"]["enabled"] is False
            assert reconciler["startup"]["checked"] == 0

            resp = client.get("/api/v1/runners?status=bogus")
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "invalid_argument"


def test_credentials_validation() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td, startup=False)
        with TestClient(create_app(fleet.engine)) as client:
            bad_scope = client.post(
                "/api/v1/credentials", json={"name": "x", "scope_type": "repo", "target": "octo", "token": "t"}
            )
            assert bad_scope.status_code == 400

            no_token = client.post("/api/v1/credentials", json={"name": "x", "scope_type": "org", "target": "octo"})
            assert no_token.status_code == 400

            no_install = client.post(
                "/api/v1/credentials",
                json={"name": "x", "kind": "installation", "scope_type": "org", "target": "octo"},
            )
            assert no_install.status_code == 400

            created = client.post(
                "/api/v1/credentials",
                json={"name": "ci", "scope_type": "repo", "target": "octo/widgets", "token": "ghp_secret"},
            )
            assert created.status_code == 201
            cred = created.json()["credential"]
            assert "ghp_secret" not in created.text

            got = client.get(f"/api/v1/credentials/{cred['credential_id']}").json()
            assert got["active_runners"] == 0
            assert len(client.get("/api/v1/credentials").json()["items"]) == 2

            assert client.delete(f"/api/v1/credentials/{cred['credential_id']}").json()["deleted"] is True
            assert client.get(f"/api/v1/credentials/{cred['credential_id']}").status_code == 404


def test_runner_lifecycle_over_http() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td, startup=False)
        try:
            with TestClient(create_app(fleet.engine)) as client:
                resp = client.post(
                    "/api/v1/runners",
                    json={"credential_id": fleet.credential_id, "labels": ["linux"], "name": "http-01"},
                )
                assert resp.status_code == 201
                runner = resp.json()["runner"]
                runner_id = runner["runner_id"]
                assert runner["status"] == "running"
                assert runner["process"]["pid"] > 0

                assert client.get(f"/api/v1/runners/{runner_id}").json()["runner"]["name"] == "http-01"
                assert client.get(f"/api/v1/runners/{runner_id}/process").json()["alive"] is True
                assert client.get(f"/api/v1/runners/{runner_id}/logs?tail=5").json()["tail"] == 5
                assert client.get(f"/api/v1/runners/{runner_id}/logs?tail=5001").status_code == 400

                events = client.get(f"/api/v1/runners/{runner_id}/events?event_type=status_changed").json()
                assert [e["payload"]["to"] for e in events["items"]] == ["configuring", "starting", "running"]

                conflict = client.patch(f"/api/v1/runners/{runner_id}", json={"mode": "container"})
                assert conflict.status_code == 409
                assert conflict.json()["error"]["details"]["type"] == "ModeImmutable"

                again = client.post(f"/api/v1/runners/{runner_id}/start")
                assert again.status_code == 409
                assert again.json()["error"]["details"]["type"] == "AlreadyRunning"

                in_use = client.delete(f"/api/v1/credentials/{fleet.credential_id}")
                assert in_use.status_code == 409

                assert client.post(f"/api/v1/runners/{runner_id}/sync").json()["runner"]["status"] == "running"
                assert client.post(f"/api/v1/runners/{runner_id}/cancel").json()["cancel_requested"] is False
                assert client.post(f"/api/v1/runners/{runner_id}/stop").json()["runner"]["status"] == "stopped"
                assert client.delete(f"/api/v1/runners/{runner_id}").json()["runner"]["status"] == "removed"

                missing = client.get("/api/v1/runners/runner_nope")
                assert missing.status_code == 404
                assert missing.json()["error"]["code"] == "not_found"

                stats = client.post("/api/v1/system/reconcile").json()["stats"]
                assert stats["orphans_found"] == 0
        finally:
            kill_all(fleet.engine)


def test_container_runtime_loss_maps_to_unavailable() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td, startup=False)
        fleet.docker.down = True
        with TestClient(create_app(fleet.engine)) as client:
            resp = client.post("/api/v1/runners", json={"credential_id": fleet.credential_id, "mode": "container"})
            assert resp.status_code == 503
            assert resp.json()["error"]["details"]["type"] == "ContainerRuntimeUnavailable"

            assert client.get("/api/v1/system/info").json()["capabilities"]["docker_available"] is False
            assert client.post("/api/v1/orphans/scan").json()["found"] == []
            assert client.post("/api/v1/orphans/container:nope/stop").status_code == 404


def test_server_owns_the_fleet_while_it_runs() -> None:
    with tempfile.TemporaryDirectory() as td:
        fleet = build_fleet(td, startup=False)
        other = FleetLease(fleet.engine.db_path)
        with TestClient(create_app(fleet.engine)):
            assert not other.acquire()
            assert other.holder_pid() == os.getpid()
        assert other.acquire()
        try:
            # A second server on the same fleet refuses to start.
            with pytest.raises(FleetLeaseHeld):
                with TestClient(create_app(fleet.engine)):
                    pass
        finally:
            other.release()
