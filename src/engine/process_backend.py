from __future__ import annotations

import hashlib
import json
import logging
import os
import platform as _platform
import shutil
import subprocess
import tarfile
import time
import urllib.error
import urllib.request
import zipfile
from collections import deque
from dataclasses import dataclass
from pathlib import Path

import psutil

from src.config.load_config import RunnersConfig
from src.engine.errors import (
    ConfigurationError,
    DownloadError,
    RemoveError,
    StartError,
    StopError,
    UnsupportedPlatform,
)
from src.engine.models import Observed, Platform, ProcessHandle, Runner
from src.hosting.github_client import RunnerDownload
from src.utils.cancel import CancellationToken


logger = logging.getLogger(__name__)

BUNDLE_MARKER = ".action-packer-bundle"
# Written by the agent's own config script once registration succeeded.
CONFIGURED_MARKER = ".runner"
LOG_FILE = "runner.log"
HEALTHY_LINE = "Listening for Jobs"

RELEASE_URL = "https://github.com/actions/runner/releases/download/v{version}/actions-runner-{os}-{arch}-{version}.{ext}"

_OS_MAP = {"linux": "linux", "darwin": "osx", "windows": "win"}
_ARCH_MAP = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
}
SUPPORTED_PLATFORMS = frozenset(
    {
        ("linux", "x64"),
        ("linux", "arm64"),
        ("linux", "arm"),
        ("osx", "x64"),
        ("osx", "arm64"),
        ("win", "x64"),
        ("win", "arm64"),
    }
)

_CHUNK = 1024 * 1024


def detect_platform(system: str | None = None, machine: str | None = None) -> Platform:
    """Map the host OS/CPU onto the agent's platform naming. Pure."""
    sys_name = (system if system is not None else _platform.system()).strip().lower()
    mach = (machine if machine is not None else _platform.machine()).strip().lower()
    os_name = _OS_MAP.get(sys_name)
    arch = _ARCH_MAP.get(mach)
    if os_name is None or arch is None or (os_name, arch) not in SUPPORTED_PLATFORMS:
        raise UnsupportedPlatform(f"unsupported host platform {sys_name}/{mach}")
    return Platform(os=os_name, arch=arch)


@dataclass(frozen=True)
class RunnerProcessInfo:
    pid: int
    started_at: float
    status: str
    cmdline: tuple[str, ...]
    memory_rss: int | None

    def to_dict(self) -> dict[str, object]:
        return {
            "pid": self.pid,
            "started_at": self.started_at,
            "status": self.status,
            "cmdline": list(self.cmdline),
            "memory_rss": self.memory_rss,
        }


@dataclass(frozen=True)
class DiscoveredProcess:
    """A process running inside some runner working directory."""

    runner_id: str
    pid: int
    started_at: float

    @property
    def handle(self) -> ProcessHandle:
        return ProcessHandle(pid=self.pid, started_at=self.started_at)


class ProcessBackend:
    """Runs the agent as a detached host process inside `runners_dir/<runner_id>`."""

    def __init__(self, config: RunnersConfig) -> None:
        self._config = config
        self.runners_dir = Path(config.runners_dir)
        self._children: dict[int, subprocess.Popen[bytes]] = {}

    # --- Paths
    def runner_dir(self, runner_id: str) -> Path:
        return self.runners_dir / runner_id

    def _dir_for(self, runner: Runner) -> Path:
        return Path(runner.runner_dir) if runner.runner_dir else self.runner_dir(runner.runner_id)

    @staticmethod
    def _script(directory: Path, name: str) -> Path:
        suffix = ".cmd" if os.name == "nt" else ".sh"
        return directory / f"{name}{suffix}"

    @staticmethod
    def is_configured(directory: Path) -> bool:
        return (directory / CONFIGURED_MARKER).exists()

    def list_runner_dirs(self) -> list[Path]:
        if not self.runners_dir.is_dir():
            return []
        return sorted(p for p in self.runners_dir.iterdir() if p.is_dir())

    @staticmethod
    def _agent_env() -> dict[str, str]:
        env = os.environ.copy()
        # The agent refuses to configure as root unless told otherwise.
        env.setdefault("RUNNER_ALLOW_RUNASROOT", "1")
        return env

    # --- Download
    def resolve_download(
        self,
        platform: Platform,
        version: str,
        *,
        available: list[RunnerDownload] | None = None,
    ) -> RunnerDownload:
        if version and version != "latest":
            v = version.lstrip("v")
            filename = f"actions-runner-{platform.os}-{platform.arch}-{v}.{platform.archive_ext}"
            return RunnerDownload(
                os=platform.os,
                architecture=platform.arch,
                download_url=RELEASE_URL.format(version=v, os=platform.os, arch=platform.arch, ext=platform.archive_ext),
                filename=filename,
                sha256=None,
            )
        for d in available or []:
            if d.os == platform.os and d.architecture == platform.arch:
                return d
        raise DownloadError(f"no agent bundle published for {platform.os}/{platform.arch}")

    def download_runner(
        self,
        platform: Platform,
        version: str,
        *,
        runner_dir: Path,
        download: RunnerDownload | None = None,
        cancel: CancellationToken | None = None,
    ) -> Path:
        """Fetch and unpack the agent bundle into `runner_dir`.

        A no-op when the directory already holds the same verified bundle.
        Archives are cached under `cache_dir` and checked against their
        published SHA-256 when one is known.
        """
        download = download or self.resolve_download(platform, version)
        target = Path(runner_dir)
        marker = target / BUNDLE_MARKER
        if marker.exists():
            try:
                recorded = json.loads(marker.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                recorded = {}
            same_file = recorded.get("filename") == download.filename
            same_sum = download.sha256 is None or recorded.get("sha256") == download.sha256
            if same_file and same_sum and self._script(target, "config").exists():
                logger.debug("Agent bundle %s already present in %s", download.filename, target)
                return target

        archive = self._fetch_archive(download, cancel=cancel)
        if cancel is not None:
            cancel.raise_if_cancelled()

        target.mkdir(parents=True, exist_ok=True)
        try:
            if download.filename.endswith(".zip"):
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(target)
            else:
                with tarfile.open(archive, "r:gz") as tf:
                    tf.extractall(target, filter="data")
        except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
            raise DownloadError(f"could not unpack {download.filename}: {e}") from e

        marker.write_text(
            json.dumps({"filename": download.filename, "sha256": download.sha256, "version": version}),
            encoding="utf-8",
        )
        logger.info("Unpacked agent bundle %s into %s", download.filename, target)
        return target

    def _fetch_archive(self, download: RunnerDownload, *, cancel: CancellationToken | None) -> Path:
        cache_dir = Path(self._config.cache_dir)
        cache_dir.mkdir(parents=True, exist_ok=True)
        dest = cache_dir / download.filename
        if dest.exists() and (download.sha256 is None or _sha256_file(dest) == download.sha256):
            return dest

        part = dest.with_name(dest.name + ".part")
        digest = hashlib.sha256()
        req = urllib.request.Request(download.download_url, headers={"User-Agent": "action-packer"})
        try:
            with urllib.request.urlopen(req, timeout=self._config.download_timeout_s) as resp, open(part, "wb") as fh:
                while True:
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    chunk = resp.read(_CHUNK)
                    if not chunk:
                        break
                    digest.update(chunk)
                    fh.write(chunk)
        except urllib.error.HTTPError as e:
            part.unlink(missing_ok=True)
            raise DownloadError(f"HTTP {e.code} for {download.download_url}") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            part.unlink(missing_ok=True)
            raise DownloadError(f"network error for {download.download_url}: {e}") from e
        except BaseException:
            part.unlink(missing_ok=True)
            raise

        actual = digest.hexdigest()
        if download.sha256 and actual != download.sha256:
            part.unlink(missing_ok=True)
            raise DownloadError(f"checksum mismatch for {download.filename}: expected {download.sha256}, got {actual}")
        os.replace(part, dest)
        return dest

    # --- Configure
    def configure_runner(self, runner: Runner, registration_token: str, labels: list[str], *, url: str) -> None:
        directory = self._dir_for(runner)
        script = self._script(directory, "config")
        if not directory.is_dir() or not script.exists():
            raise ConfigurationError(f"working directory {directory} is missing or holds no agent")

        args = [
            str(script),
            "--url",
            url,
            "--token",
            registration_token,
            "--name",
            runner.name,
            "--work",
            "_work",
            "--unattended",
            "--replace",
        ]
        if labels:
            args.extend(["--labels", ",".join(labels)])
        if runner.ephemeral:
            args.append("--ephemeral")

        proc = self._run_agent_command(args, directory, error_cls=ConfigurationError)
        if proc.returncode != 0:
            raise ConfigurationError(f"agent config exited with {proc.returncode}: {_tail(proc.stdout, 10)}")
        logger.info("Configured runner %s (%s) against %s", runner.runner_id, runner.name, url)

    def _run_agent_command(
        self, args: list[str], directory: Path, *, error_cls: type[ConfigurationError] | type[RemoveError]
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                args,
                cwd=directory,
                env=self._agent_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self._config.command_timeout_s,
            )
        except subprocess.TimeoutExpired as e:
            raise error_cls(f"agent command timed out after {self._config.command_timeout_s}s") from e
        except OSError as e:
            raise error_cls(f"could not run agent command: {e}") from e

    # --- Start / stop
    def start_runner(self, runner: Runner) -> ProcessHandle:
        """Spawn the agent detached and wait for it to settle.

        The process counts as healthy once it logs that it is listening for
        jobs, or once the settle window passes without it exiting.
        """
        directory = self._dir_for(runner)
        script = self._script(directory, "run")
        if not script.exists():
            raise StartError(f"no agent found in {directory}")

        log_path = directory / LOG_FILE
        log_offset = log_path.stat().st_size if log_path.exists() else 0
        try:
            with open(log_path, "ab") as log:
                proc = subprocess.Popen(
                    [str(script)],
                    cwd=directory,
                    env=self._agent_env(),
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise StartError(f"could not spawn agent: {e}") from e
        self._children[proc.pid] = proc

        deadline = time.monotonic() + self._config.start_settle_s
        while time.monotonic() < deadline:
            code = proc.poll()
            if code is not None:
                self._children.pop(proc.pid, None)
                raise StartError(f"agent exited with {code} during startup: {self.read_log_tail(runner, 10)}")
            if HEALTHY_LINE in _read_from(log_path, log_offset):
                break
            time.sleep(0.1)

        try:
            started_at = psutil.Process(proc.pid).create_time()
        except psutil.NoSuchProcess as e:
            self._children.pop(proc.pid, None)
            raise StartError("agent exited right after spawn") from e
        logger.info("Started runner %s as pid %s", runner.runner_id, proc.pid)
        return ProcessHandle(pid=proc.pid, started_at=started_at)

    def stop_runner(self, handle: ProcessHandle | None, *, grace_s: float | None = None) -> bool:
        """Terminate the agent's process tree; returns True if it had to be killed.

        Idempotent: a handle whose process is already gone is a no-op.
        """
        if handle is None:
            return False
        proc = self._process_for(handle)
        if proc is None:
            self.release(handle)
            return False

        grace = self._config.stop_grace_period_s if grace_s is None else float(grace_s)
        try:
            children = proc.children(recursive=True)
        except psutil.NoSuchProcess:
            children = []
        procs = [proc, *children]
        for p in procs:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                pass
        _gone, alive = psutil.wait_procs(procs, timeout=grace)
        forced = bool(alive)
        if alive:
            logger.warning("Runner pid %s did not stop within %.1fs, killing", handle.pid, grace)
            for p in alive:
                try:
                    p.kill()
                except psutil.NoSuchProcess:
                    pass
            _gone, alive = psutil.wait_procs(alive, timeout=5)
            if alive:
                raise StopError(f"pids {[p.pid for p in alive]} survived SIGKILL")
        self.release(handle)
        return forced

    def release(self, handle: ProcessHandle | None) -> bool:
        """Reap our spawned child for `handle` once it has exited.

        Returns True when no child of ours is left behind for that pid.
        """
        if handle is None:
            return True
        child = self._children.get(handle.pid)
        if child is None:
            return True
        if child.poll() is None:
            return False
        self._children.pop(handle.pid, None)
        logger.debug("Reaped agent pid %s (exit %s)", handle.pid, child.returncode)
        return True

    # --- Remove
    def remove_runner(self, runner: Runner, *, remove_token: str | None) -> bool:
        """Unregister the agent locally and delete its working directory.

        Returns True when the agent's own removal command succeeded.
        """
        directory = self._dir_for(runner)
        unregistered = False
        if remove_token and self.is_configured(directory) and self._script(directory, "config").exists():
            proc = self._run_agent_command(
                [str(self._script(directory, "config")), "remove", "--token", remove_token],
                directory,
                error_cls=RemoveError,
            )
            unregistered = proc.returncode == 0
            if not unregistered:
                logger.warning(
                    "Agent removal for %s exited with %s: %s", runner.runner_id, proc.returncode, _tail(proc.stdout, 5)
                )
        self.delete_directory(directory)
        return unregistered

    def delete_directory(self, directory: Path) -> None:
        if not directory.exists():
            return
        try:
            shutil.rmtree(directory)
        except OSError as e:
            raise RemoveError(f"could not delete {directory}: {e}") from e
        logger.info("Deleted runner directory %s", directory)

    # --- Liveness
    def _process_for(self, handle: ProcessHandle) -> psutil.Process | None:
        try:
            proc = psutil.Process(handle.pid)
            if handle.started_at and abs(proc.create_time() - handle.started_at) > 1.0:
                return None  # pid recycled
            if not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE:
                return None
            return proc
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def is_runner_process_alive(self, handle: ProcessHandle | None) -> bool:
        return handle is not None and self._process_for(handle) is not None

    @staticmethod
    def is_process_alive(pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def get_runner_process(self, runner: Runner) -> RunnerProcessInfo | None:
        if runner.process_handle is None:
            return None
        proc = self._process_for(runner.process_handle)
        if proc is None:
            return None
        try:
            with proc.oneshot():
                try:
                    rss: int | None = proc.memory_info().rss
                except psutil.AccessDenied:
                    rss = None
                return RunnerProcessInfo(
                    pid=proc.pid,
                    started_at=proc.create_time(),
                    status=proc.status(),
                    cmdline=tuple(proc.cmdline()),
                    memory_rss=rss,
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def observe(self, runner: Runner) -> Observed:
        if self.is_runner_process_alive(runner.process_handle):
            return Observed.RUNNING
        self.release(runner.process_handle)
        if self.is_configured(self._dir_for(runner)):
            return Observed.STOPPED
        return Observed.MISSING

    def scan_runner_processes(self) -> list[DiscoveredProcess]:
        """Processes whose working directory is inside `runners_dir`.

        Only the root of each process tree is reported.
        """
        root = self.runners_dir.resolve()
        found: dict[int, tuple[str, float, int]] = {}
        for proc in psutil.process_iter(["pid", "cwd", "create_time", "ppid"]):
            info = proc.info
            cwd = info.get("cwd")
            if not cwd:
                continue
            try:
                rel = Path(cwd).resolve().relative_to(root)
            except ValueError:
                continue
            if not rel.parts:
                continue
            found[int(info["pid"])] = (rel.parts[0], float(info.get("create_time") or 0.0), int(info.get("ppid") or 0))
        return [
            DiscoveredProcess(runner_id=runner_id, pid=pid, started_at=started_at)
            for pid, (runner_id, started_at, ppid) in sorted(found.items())
            if ppid not in found
        ]

    def read_log_tail(self, runner: Runner, tail: int) -> str:
        path = self._dir_for(runner) / LOG_FILE
        if not path.exists():
            return ""
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            return "".join(deque(fh, maxlen=max(0, int(tail))))


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _read_from(path: Path, offset: int) -> str:
    try:
        with open(path, "rb") as fh:
            fh.seek(offset)
            return fh.read().decode("utf-8", errors="replace")
    except OSError:
        return ""


def _tail(text: str | None, lines: int) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])
