from __future__ import annotations

import argparse
import json
import os
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

from src.config.load_config import ConfigError, load_app_config
from src.engine.errors import FleetLeaseHeld, RunnerEngineError
from src.engine.fleet import RunnerEngine
from src.engine.lease import FleetLease
from src.storage.sqlite_store import SQLiteStore
from src.utils.logging_setup import configure_logging


# Lifecycle commands the running server can do for us: (method, path template).
_SERVER_ROUTES: dict[str, tuple[str, str]] = {
    "stop": ("POST", "/api/v1/runners/{runner_id}/stop"),
    "remove": ("DELETE", "/api/v1/runners/{runner_id}"),
    "sync": ("POST", "/api/v1/runners/{runner_id}/sync"),
    "reconcile": ("POST", "/api/v1/system/reconcile"),
}


def default_api_url() -> str:
    url = os.getenv("ACTION_PACKER_API_URL", "").strip()
    if url:
        return url.rstrip("/")
    host = os.getenv("ACTION_PACKER_HOST", "127.0.0.1")
    port = os.getenv("ACTION_PACKER_PORT", "8000")
    return f"http://{host}:{port}"


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and operate the local runner fleet.")
    parser.add_argument("--config", default="", help="Config TOML (default: env ACTION_PACKER_CONFIG_PATH).")
    parser.add_argument("--log-level", default="", help="Override ACTION_PACKER_LOG_LEVEL.")
    parser.add_argument(
        "--api-url",
        default="",
        help="Server to forward lifecycle commands to while it owns the fleet (default: env ACTION_PACKER_API_URL).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("list", help="List runners.")
    p_list.add_argument("--status", action="append", default=None, help="Filter by status (repeatable).")

    for name, help_text in (
        ("show", "Show one runner."),
        ("stop", "Stop a runner (graceful, then forced)."),
        ("remove", "Stop, delete and de-register a runner."),
        ("sync", "Reconcile one runner's recorded status."),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("runner_id")

    sub.add_parser("reconcile", help="Run one reconciliation pass.")
    sub.add_parser("startup", help="Run the startup reconciliation pass (only while no server is running).")
    return parser.parse_args(argv)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))


def call_server(api_url: str, method: str, path: str, *, timeout_s: float = 300.0) -> tuple[int, Any]:
    """One JSON request to the server; HTTP error statuses are returned, not raised."""
    req = urllib.request.Request(
        f"{api_url.rstrip('/')}{path}",
        method=method,
        headers={"Accept": "application/json"},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            return int(resp.status), json.loads(resp.read().decode("utf-8") or "null")
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        try:
            return int(e.code), json.loads(body)
        except json.JSONDecodeError:
            return int(e.code), {"error": {"code": "http_error", "message": body[:200]}}


def _forward(args: argparse.Namespace, lease: FleetLease) -> int:
    method, template = _SERVER_ROUTES[args.command]
    path = template.format(runner_id=getattr(args, "runner_id", ""))
    api_url = args.api_url or default_api_url()
    try:
        status, body = call_server(api_url, method, path)
    except OSError as e:
        print(
            f"fleet is owned by pid {lease.holder_pid()} but its server at {api_url} is unreachable: {e}",
            file=sys.stderr,
        )
        return 1
    _emit(body)
    return 0 if status < 400 else 1


def _run_locally(args: argparse.Namespace, engine: RunnerEngine) -> None:
    engine.probe_capabilities()
    if args.command == "startup":
        _emit({"startup": engine.initialize_runners_on_startup()})
        return
    engine.ready.open()
    if args.command == "stop":
        _emit({"runner": engine.stop_runner(args.runner_id).to_dict()})
    elif args.command == "remove":
        _emit({"runner": engine.remove_runner(args.runner_id).to_dict()})
    elif args.command == "sync":
        _emit({"runner": engine.sync_runner_status(args.runner_id).to_dict()})
    elif args.command == "reconcile":
        _emit({"stats": engine.reconcile_once()})


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    configure_logging(args.log_level or None)

    try:
        config = load_app_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2

    engine = RunnerEngine(config)

    if args.command == "list":
        store = SQLiteStore(engine.db_path)
        try:
            _emit({"items": [r.to_dict() for r in store.list_runners(statuses=args.status)]})
        finally:
            store.close()
        return 0

    lease = FleetLease(engine.db_path)
    try:
        if args.command == "show":
            _emit({"runner": engine.get_runner(args.runner_id).to_dict()})
            return 0

        if not lease.acquire():
            if args.command in _SERVER_ROUTES:
                return _forward(args, lease)
            raise FleetLeaseHeld(f"fleet is owned by pid {lease.holder_pid()}; it already ran its startup pass")
        _run_locally(args, engine)
    except RunnerEngineError as e:
        print(str(e), file=sys.stderr)
        _emit({"error": {"type": type(e).__name__, **e.details()}})
        return 1
    finally:
        lease.release()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
