from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from src.config.load_config import ConfigError, load_app_config


def test_builtin_defaults_when_no_file(monkeypatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        monkeypatch.setenv("ACTION_PACKER_CONFIG_PATH", str(Path(td) / "absent.toml"))
        cfg = load_app_config()
        assert cfg.reconcile.enabled is True
        assert cfg.reconcile.interval_s == 60.0
        assert cfg.reconcile.restart_on_startup is False
        assert cfg.runners.runner_version == "latest"
        assert cfg.runners.cache_dir == cfg.runners.runners_dir.parent / "cache"
        assert cfg.github.api_url == "https://api.github.com"


def test_shipped_default_toml_loads() -> None:
    path = Path(__file__).resolve().parents[1] / "config" / "default.toml"
    cfg = load_app_config(path)
    assert cfg.docker.image == "myoung34/github-runner:latest"
    assert cfg.reconcile.pass_timeout_s == 120.0
    assert cfg.runners.stop_grace_period_s == 10.0
    assert cfg.reconcile.stale_heartbeat_s == 1800.0


def test_relative_paths_resolve_against_repo_root_and_env_overrides(monkeypatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        root = Path(td).resolve()
        (root / "config").mkdir()
        path = root / "config" / "fleet.toml"
        path.write_text(
            '[runners]\nrunners_dir = "state/runners"\n\n[github]\napi_url = "https://ghe.example/api/v3/"\n'
            "\n[reconcile]\nenabled = true\ninterval_s = 15\nstale_heartbeat_s = 0\n",
            encoding="utf-8",
        )
        cfg = load_app_config(path)
        assert cfg.runners.runners_dir == root / "state" / "runners"
        assert cfg.github.api_url == "https://ghe.example/api/v3"
        assert cfg.reconcile.interval_s == 15.0
        assert cfg.reconcile.stale_heartbeat_s == 0.0

        monkeypatch.setenv("ACTION_PACKER_ENABLE_RECONCILER", "0")
        monkeypatch.setenv("ACTION_PACKER_RUNNER_IMAGE", "example/runner:2")
        monkeypatch.setenv("ACTION_PACKER_SQLITE_PATH", str(root / "other.db"))
        cfg = load_app_config(path)
        assert cfg.reconcile.enabled is False
        assert cfg.docker.image == "example/runner:2"
        assert cfg.storage.sqlite_path == str(root / "other.db")


def test_explicit_missing_path_is_an_error() -> None:
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(ConfigError):
            load_app_config(Path(td) / "nope.toml")


def test_invalid_values_are_rejected() -> None:
    with tempfile.TemporaryDirectory() as td:
        path = Path(td) / "bad.toml"
        path.write_text("[reconcile\ninterval_s = 1\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_app_config(path)

        path.write_text('[reconcile]\ninterval_s = -5\n', encoding="utf-8")
        with pytest.raises(ConfigError):
            load_app_config(path)

        path.write_text('[reconcile]\nenabled = "sometimes"\n', encoding="utf-8")
        with pytest.raises(ConfigError):
            load_app_config(path)
