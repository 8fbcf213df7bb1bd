from __future__ import annotations

import json
import os
import tempfile
import urllib.error
from pathlib import Path

import pytest

from src.cli.fleet import default_api_url, main
from src.engine.fleet import RunnerEngine
from src.engine.lease import FleetLease


def _write_config(root: Path) -> Path:
    path = root / "config" / "fleet.toml"
    path.parent.mkdir(parents=True)
    path.write_text(
        f'[storage]\nsqlite_path = "{(root / "fleet.db").as_posix()}"\n\n'
        '[runners]\nrunners_dir = "state/runners"\n\n'
        "[reconcile]\nenabled = false\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch) -> None:
    monkeypatch.setattr("src.cli.fleet.configure_logging", lambda level=None: None)


def test_cli_list_show_and_reconcile(capsys) -> None:
    with tempfile.TemporaryDirectory() as td:
        cfg = _write_config(Path(td))

        assert main(["--config", str(cfg), "list"]) == 0
        assert json.loads(capsys.readouterr().out) == {"items": []}

        assert main(["--config", str(cfg), "show", "runner_missing"]) == 1
        out = json.loads(capsys.readouterr().out)
        assert out["error"]["type"] == "RunnerNotFound"

        assert main(["--config", str(cfg), "startup"]) == 0
        assert json.loads(capsys.readouterr().out)["startup"]["checked"] == 0

        assert main(["--config", str(cfg), "reconcile"]) == 0
        assert json.loads(capsys.readouterr().out)["stats"]["checked"] == 0

        # Every command hands the fleet back when it is done.
        lease = FleetLease(Path(td) / "fleet.db")
        assert lease.acquire()
        lease.release()


def test_lifecycle_commands_do_not_run_the_startup_pass(monkeypatch, capsys) -> None:
    def refuse(self):
        raise AssertionError("startup pass must only run on request")

    monkeypatch.setattr(RunnerEngine, "initialize_runners_on_startup", refuse)
    with tempfile.TemporaryDirectory() as td:
        cfg = _write_config(Path(td))
        assert main(["--config", str(cfg), "stop", "runner_missing"]) == 1
        assert json.loads(capsys.readouterr().out)["error"]["type"] == "RunnerNotFound"


def test_commands_are_forwarded_while_a_server_owns_the_fleet(monkeypatch, capsys) -> None:
    calls: list[tuple[str, str, str]] = []

    def fake_server(api_url, method, path, **_kwargs):
        calls.append((api_url, method, path))
        if path.endswith("/runner_gone"):
            return 404, {"error": {"code": "not_found", "message": "no such runner"}}
        return 200, {"runner": {"runner_id": "runner_ab", "status": "stopped"}}

    monkeypatch.setattr("src.cli.fleet.call_server", fake_server)
    monkeypatch.setattr(RunnerEngine, "stop_runner", lambda self, runner_id: pytest.fail("ran locally"))
    with tempfile.TemporaryDirectory() as td:
        cfg = _write_config(Path(td))
        server = FleetLease(Path(td) / "fleet.db")
        assert server.acquire()
        try:
            api = "http://fleet.test:9000"
            assert main(["--config", str(cfg), "--api-url", api, "stop", "runner_ab"]) == 0
            assert json.loads(capsys.readouterr().out)["runner"]["status"] == "stopped"

            assert main(["--config", str(cfg), "--api-url", api, "remove", "runner_gone"]) == 1
            assert json.loads(capsys.readouterr().out)["error"]["code"] == "not_found"

            assert main(["--config", str(cfg), "--api-url", api, "reconcile"]) == 0
            capsys.readouterr()

            assert calls == [
                (api, "POST", "/api/v1/runners/runner_ab/stop"),
                (api, "DELETE", "/api/v1/runners/runner_gone"),
                (api, "POST", "/api/v1/system/reconcile"),
            ]

            assert main(["--config", str(cfg), "startup"]) == 1
            captured = capsys.readouterr()
            assert json.loads(captured.out)["error"]["type"] == "FleetLeaseHeld"
            assert str(os.getpid()) in captured.err
            assert len(calls) == 3
        finally:
            server.release()


def test_unreachable_server_is_reported(monkeypatch, capsys) -> None:
    def down(api_url, method, path, **_kwargs):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr("src.cli.fleet.call_server", down)
    with tempfile.TemporaryDirectory() as td:
        cfg = _write_config(Path(td))
        server = FleetLease(Path(td) / "fleet.db")
        assert server.acquire()
        try:
            assert main(["--config", str(cfg), "sync", "runner_ab"]) == 1
            assert "unreachable" in capsys.readouterr().err
        finally:
            server.release()


def test_default_api_url_follows_server_env(monkeypatch) -> None:
    assert default_api_url() == "http://127.0.0.1:8000"
    monkeypatch.setenv("ACTION_PACKER_PORT", "9100")
    assert default_api_url() == "http://127.0.0.1:9100"
    monkeypatch.setenv("ACTION_PACKER_API_URL", "https://fleet.internal/")
    assert default_api_url() == "https://fleet.internal"


def test_cli_reports_config_errors(capsys) -> None:
    with tempfile.TemporaryDirectory() as td:
        assert main(["--config", str(Path(td) / "nope.toml"), "list"]) == 2
        assert "config error" in capsys.readouterr().err
