from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e
    if out < 0:
        raise ConfigError(f"Invalid {key}: must be >= 0, got {out}")
    return out


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _resolve_path(value: Any, *, key: str, base_dir: Path) -> Path:
    raw = _as_str(value, key=key)
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


@dataclass(frozen=True)
class StorageConfig:
    sqlite_path: str


@dataclass(frozen=True)
class RunnersConfig:
    runners_dir: Path
    cache_dir: Path
    runner_version: str
    stop_grace_period_s: float
    start_settle_s: float
    command_timeout_s: float
    download_timeout_s: float


@dataclass(frozen=True)
class DockerConfig:
    image: str
    stop_timeout_s: float
    client_timeout_s: float
    pull_timeout_s: float


@dataclass(frozen=True)
class GitHubConfig:
    api_url: str
    web_url: str
    timeout_s: float


@dataclass(frozen=True)
class ReconcileConfig:
    """Periodic reconciliation is purely time-based on a fixed interval."""

    enabled: bool
    interval_s: float
    initial_delay_s: float
    pass_timeout_s: float
    on_startup: bool
    restart_on_startup: bool
    # Ephemeral runners not heard from for this long get a fresh hosting lookup; 0 disables.
    stale_heartbeat_s: float = 1800.0


@dataclass(frozen=True)
class AppConfig:
    storage: StorageConfig
    runners: RunnersConfig
    docker: DockerConfig
    github: GitHubConfig
    reconcile: ReconcileConfig


def default_config_path() -> Path:
    return Path(os.getenv("ACTION_PACKER_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def _read_toml(path: Path | None) -> tuple[dict[str, Any], Path]:
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        cfg_path = path
    else:
        cfg_path = default_config_path()
        if not cfg_path.exists():
            # Built-in defaults; relative paths resolve against the working directory.
            return {}, Path.cwd()

    import tomllib

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e
    # Config usually lives in `<repo>/config/`; relative paths are repo-relative.
    return raw, cfg_path.parent.parent


def load_app_config(path: Path | None = None) -> AppConfig:
    raw, base_dir = _read_toml(path)

    storage = raw.get("storage", {})
    runners = raw.get("runners", {})
    docker = raw.get("docker", {})
    github = raw.get("github", {})
    reconcile = raw.get("reconcile", {})

    sqlite_path = os.getenv("ACTION_PACKER_SQLITE_PATH") or storage.get("sqlite_path", "data/action-packer.db")

    runners_dir = _resolve_path(
        os.getenv("ACTION_PACKER_RUNNERS_DIR") or runners.get("runners_dir", "~/.action-packer/runners"),
        key="runners.runners_dir",
        base_dir=base_dir,
    )
    cache_dir_raw = os.getenv("ACTION_PACKER_CACHE_DIR") or runners.get("cache_dir")
    cache_dir = (
        _resolve_path(cache_dir_raw, key="runners.cache_dir", base_dir=base_dir)
        if cache_dir_raw
        else runners_dir.parent / "cache"
    )

    return AppConfig(
        storage=StorageConfig(sqlite_path=_as_str(sqlite_path, key="storage.sqlite_path")),
        runners=RunnersConfig(
            runners_dir=runners_dir,
            cache_dir=cache_dir,
            runner_version=_as_str(runners.get("runner_version", "latest"), key="runners.runner_version"),
            stop_grace_period_s=_as_float(
                runners.get("stop_grace_period_s", 10.0), key="runners.stop_grace_period_s"
            ),
            start_settle_s=_as_float(runners.get("start_settle_s", 2.0), key="runners.start_settle_s"),
            command_timeout_s=_as_float(runners.get("command_timeout_s", 120.0), key="runners.command_timeout_s"),
            download_timeout_s=_as_float(
                runners.get("download_timeout_s", 300.0), key="runners.download_timeout_s"
            ),
        ),
        docker=DockerConfig(
            image=_as_str(
                os.getenv("ACTION_PACKER_RUNNER_IMAGE") or docker.get("image", "myoung34/github-runner:latest"),
                key="docker.image",
            ),
            stop_timeout_s=_as_float(docker.get("stop_timeout_s", 10.0), key="docker.stop_timeout_s"),
            client_timeout_s=_as_float(docker.get("client_timeout_s", 60.0), key="docker.client_timeout_s"),
            pull_timeout_s=_as_float(docker.get("pull_timeout_s", 600.0), key="docker.pull_timeout_s"),
        ),
        github=GitHubConfig(
            api_url=_as_str(github.get("api_url", "https://api.github.com"), key="github.api_url").rstrip("/"),
            web_url=_as_str(github.get("web_url", "https://github.com"), key="github.web_url").rstrip("/"),
            timeout_s=_as_float(github.get("timeout_s", 30.0), key="github.timeout_s"),
        ),
        reconcile=ReconcileConfig(
            enabled=_env_bool(
                "ACTION_PACKER_ENABLE_RECONCILER",
                _as_bool(reconcile.get("enabled", True), key="reconcile.enabled"),
            ),
            interval_s=_as_float(reconcile.get("interval_s", 60.0), key="reconcile.interval_s"),
            initial_delay_s=_as_float(reconcile.get("initial_delay_s", 10.0), key="reconcile.initial_delay_s"),
            pass_timeout_s=_as_float(reconcile.get("pass_timeout_s", 120.0), key="reconcile.pass_timeout_s"),
            on_startup=_env_bool(
                "ACTION_PACKER_RECONCILE_ON_STARTUP",
                _as_bool(reconcile.get("on_startup", True), key="reconcile.on_startup"),
            ),
            restart_on_startup=_as_bool(
                reconcile.get("restart_on_startup", False), key="reconcile.restart_on_startup"
            ),
            stale_heartbeat_s=_as_float(reconcile.get("stale_heartbeat_s", 1800.0), key="reconcile.stale_heartbeat_s"),
        ),
    )
