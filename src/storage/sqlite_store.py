from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from src.engine.errors import InvalidTransition, ModeImmutable, RunnerNotFound
from src.engine.models import (
    ContainerOptions,
    ProcessHandle,
    Runner,
    RunnerMode,
    RunnerStatus,
    Scope,
)


SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def default_db_path() -> str:
    return os.getenv("ACTION_PACKER_SQLITE_PATH", "data/action-packer.db")


@dataclass(frozen=True)
class CredentialRecord:
    credential_id: str
    name: str
    kind: str
    scope_type: str
    target: str
    installation_id: str | None
    expires_at: float | None
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        # The secret is deliberately not part of the record.
        return {
            "credential_id": self.credential_id,
            "name": self.name,
            "kind": self.kind,
            "scope_type": self.scope_type,
            "target": self.target,
            "installation_id": self.installation_id,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
        }


_RUNNER_COLUMNS = (
    "runner_id, name, mode, status, scope_type, target, credential_id, labels_json, ephemeral, "
    "options_json, runner_dir, process_id, process_started_at, container_id, github_runner_id, "
    "error, created_at, updated_at, last_observed_at, last_heartbeat_at"
)

# Field name (as used by callers) -> column name.
_UPDATABLE_FIELDS = {
    "name": "name",
    "status": "status",
    "labels": "labels_json",
    "runner_dir": "runner_dir",
    "container_id": "container_id",
    "github_runner_id": "github_runner_id",
    "error": "error",
    "last_observed_at": "last_observed_at",
    "last_heartbeat_at": "last_heartbeat_at",
}


class SQLiteStore:
    """SQLite-backed store for runner records, credentials and runner events.

    - One connection per instance; each thread/request opens its own store.
    - Record invariants (handle matches mode, running has a handle, removed has
      none, handles unique, mode write-once) are enforced by the schema so
      that no code path can persist a record that violates them.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        try:
            self._init_schema()
        except Exception:
            self._conn.close()
            raise

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, so a read-then-write
        status transition cannot interleave with another writer.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        stored = self._get_schema_version()
        if stored > SCHEMA_VERSION:
            raise RuntimeError(f"DB schema_version={stored} is newer than code expects ({SCHEMA_VERSION}).")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS credentials (
              credential_id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              kind TEXT NOT NULL CHECK (kind IN ('pat', 'installation')),
              scope_type TEXT NOT NULL CHECK (scope_type IN ('repo', 'org')),
              target TEXT NOT NULL,
              secret TEXT,
              installation_id TEXT,
              expires_at REAL,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runners (
              runner_id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              mode TEXT NOT NULL CHECK (mode IN ('process', 'container')),
              status TEXT NOT NULL,
              scope_type TEXT NOT NULL,
              target TEXT NOT NULL,
              credential_id TEXT NOT NULL,
              labels_json TEXT NOT NULL,
              ephemeral INTEGER NOT NULL DEFAULT 0,
              options_json TEXT NOT NULL,
              runner_dir TEXT,
              process_id INTEGER,
              process_started_at REAL,
              container_id TEXT,
              github_runner_id INTEGER,
              error TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              last_observed_at REAL,
              last_heartbeat_at REAL,
              CHECK (mode = 'process' OR process_id IS NULL),
              CHECK (mode = 'container' OR container_id IS NULL),
              CHECK (status != 'running' OR process_id IS NOT NULL OR container_id IS NOT NULL),
              CHECK (status != 'removed' OR (process_id IS NULL AND container_id IS NULL))
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runner_events (
              event_id TEXT PRIMARY KEY,
              runner_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (runner_id) REFERENCES runners(runner_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runner_events_ts ON runner_events(runner_id, created_at, event_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runners_credential ON runners(credential_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runners_status_created ON runners(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runners_created ON runners(created_at, runner_id);")

        # A backend handle belongs to at most one runner at a time.
        cur.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_runners_container_handle "
            "ON runners(container_id) WHERE container_id IS NOT NULL;"
        )
        cur.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_runners_process_handle "
            "ON runners(process_id, process_started_at) WHERE process_id IS NOT NULL;"
        )
        # Mode is write-once.
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS trg_runners_mode_immutable
            BEFORE UPDATE OF mode ON runners
            WHEN NEW.mode IS NOT OLD.mode
            BEGIN
              SELECT RAISE(ABORT, 'runner mode is immutable');
            END;
            """
        )
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", str(SCHEMA_VERSION)),
        )
        self._conn.commit()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    # --- Credentials
    def create_credential(
        self,
        *,
        name: str,
        kind: str,
        scope_type: str,
        target: str,
        secret: str | None,
        installation_id: str | None = None,
        expires_at: float | None = None,
    ) -> CredentialRecord:
        credential_id = _new_id("cred")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO credentials(
              credential_id, name, kind, scope_type, target, secret, installation_id, expires_at, created_at
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (credential_id, name, kind, scope_type, target.strip().strip("/"), secret, installation_id, expires_at, created_at),
        )
        self._conn.commit()
        record = self.get_credential(credential_id=credential_id)
        assert record is not None
        return record

    def _credential_from_row(self, row: sqlite3.Row) -> CredentialRecord:
        return CredentialRecord(
            credential_id=str(row["credential_id"]),
            name=str(row["name"]),
            kind=str(row["kind"]),
            scope_type=str(row["scope_type"]),
            target=str(row["target"]),
            installation_id=row["installation_id"],
            expires_at=float(row["expires_at"]) if row["expires_at"] is not None else None,
            created_at=float(row["created_at"]),
        )

    def get_credential(self, *, credential_id: str) -> CredentialRecord | None:
        row = self._conn.execute(
            """
            SELECT credential_id, name, kind, scope_type, target, installation_id, expires_at, created_at
            FROM credentials
            WHERE credential_id = ?
            LIMIT 1;
            """,
            (credential_id,),
        ).fetchone()
        return self._credential_from_row(row) if row is not None else None

    def get_credential_secret(self, *, credential_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT secret FROM credentials WHERE credential_id = ? LIMIT 1;",
            (credential_id,),
        ).fetchone()
        if row is None:
            return None
        return row["secret"]

    def list_credentials(self) -> list[CredentialRecord]:
        rows = self._conn.execute(
            """
            SELECT credential_id, name, kind, scope_type, target, installation_id, expires_at, created_at
            FROM credentials
            ORDER BY created_at DESC, credential_id DESC;
            """
        ).fetchall()
        return [self._credential_from_row(r) for r in rows]

    def delete_credential(self, *, credential_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM credentials WHERE credential_id = ?;", (credential_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def count_active_runners_for_credential(self, *, credential_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM runners WHERE credential_id = ? AND status != 'removed';",
            (credential_id,),
        ).fetchone()
        return int(row["n"])

    # --- Runners
    def create_runner(
        self,
        *,
        name: str,
        mode: RunnerMode,
        scope: Scope,
        labels: Iterable[str],
        ephemeral: bool = False,
        options: ContainerOptions | None = None,
        runner_id: str | None = None,
    ) -> Runner:
        runner_id = runner_id or _new_id("runner")
        ts = _utc_ts()
        with self.transaction():
            self._conn.execute(
                f"""
                INSERT INTO runners({_RUNNER_COLUMNS})
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL, NULL, NULL, NULL, ?, ?, NULL, NULL);
                """,
                (
                    runner_id,
                    name,
                    RunnerMode(mode).value,
                    RunnerStatus.PENDING.value,
                    scope.scope_type.value,
                    scope.target,
                    scope.credential_id,
                    _json_dumps(list(labels)),
                    1 if ephemeral else 0,
                    _json_dumps((options or ContainerOptions()).as_dict()),
                    ts,
                    ts,
                ),
            )
            self._insert_event(runner_id, "runner_created", {"mode": RunnerMode(mode).value, "status": "pending"}, ts)
        runner = self.get_runner(runner_id=runner_id)
        assert runner is not None
        return runner

    def get_runner(self, *, runner_id: str) -> Runner | None:
        row = self._conn.execute(
            f"SELECT {_RUNNER_COLUMNS} FROM runners WHERE runner_id = ? LIMIT 1;",
            (runner_id,),
        ).fetchone()
        return Runner.from_row(row) if row is not None else None

    def require_runner(self, *, runner_id: str) -> Runner:
        runner = self.get_runner(runner_id=runner_id)
        if runner is None:
            raise RunnerNotFound("no such runner", runner_id=runner_id)
        return runner

    def list_runners(
        self,
        *,
        statuses: Iterable[RunnerStatus | str] | None = None,
        mode: RunnerMode | None = None,
    ) -> list[Runner]:
        where = ["1=1"]
        params: list[Any] = []
        status_values = [RunnerStatus(s).value for s in statuses] if statuses is not None else None
        if status_values is not None:
            if not status_values:
                return []
            where.append("status IN (%s)" % ",".join(["?"] * len(status_values)))
            params.extend(status_values)
        if mode is not None:
            where.append("mode = ?")
            params.append(RunnerMode(mode).value)
        where_sql = " AND ".join(where)
        rows = self._conn.execute(
            f"SELECT {_RUNNER_COLUMNS} FROM runners WHERE {where_sql} ORDER BY created_at ASC, runner_id ASC;",
            params,
        ).fetchall()
        return [Runner.from_row(r) for r in rows]

    def list_stale_ephemeral(self, *, heard_before: float) -> list[Runner]:
        """Ephemeral running runners with no online heartbeat since `heard_before`."""
        rows = self._conn.execute(
            f"""
            SELECT {_RUNNER_COLUMNS} FROM runners
            WHERE ephemeral = 1 AND status = ?
              AND COALESCE(last_heartbeat_at, created_at) < ?
            ORDER BY created_at ASC, runner_id ASC;
            """,
            (RunnerStatus.RUNNING.value, float(heard_before)),
        ).fetchall()
        return [Runner.from_row(r) for r in rows]

    def list_runner_ids(self) -> set[str]:
        rows = self._conn.execute("SELECT runner_id FROM runners;").fetchall()
        return {str(r["runner_id"]) for r in rows}

    def list_runners_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, runner_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND runner_id < ?))")
            params.extend([float(created_at), float(created_at), str(runner_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT {_RUNNER_COLUMNS}
            FROM runners
            WHERE {where_sql}
            ORDER BY created_at DESC, runner_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [Runner.from_row(r).to_dict() for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["runner_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_runners_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM runners GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def find_runner_by_container(self, *, container_id: str) -> Runner | None:
        row = self._conn.execute(
            f"SELECT {_RUNNER_COLUMNS} FROM runners WHERE container_id = ? LIMIT 1;",
            (container_id,),
        ).fetchone()
        return Runner.from_row(row) if row is not None else None

    def _set_clause(self, changes: dict[str, Any]) -> tuple[list[str], list[Any]]:
        if "mode" in changes:
            raise ModeImmutable("runner mode is write-once", step="update")
        sets: list[str] = []
        params: list[Any] = []
        for key, value in changes.items():
            if key == "process_handle":
                handle: ProcessHandle | None = value
                sets.extend(["process_id = ?", "process_started_at = ?"])
                params.extend([handle.pid if handle else None, handle.started_at if handle else None])
                continue
            column = _UPDATABLE_FIELDS.get(key)
            if column is None:
                raise ValueError(f"Unknown runner field: {key}")
            if key == "labels":
                value = _json_dumps(list(value))
            elif key == "status":
                value = RunnerStatus(value).value
            sets.append(f"{column} = ?")
            params.append(value)
        return sets, params

    def update_runner(self, runner_id: str, **changes: Any) -> Runner:
        """Write the given fields; keys present with None clear the column."""
        sets, params = self._set_clause(changes)
        sets.append("updated_at = ?")
        params.append(_utc_ts())
        try:
            with self.transaction():
                cur = self._conn.execute(
                    f"UPDATE runners SET {', '.join(sets)} WHERE runner_id = ?;",
                    (*params, runner_id),
                )
                if cur.rowcount != 1:
                    raise RunnerNotFound("no such runner", runner_id=runner_id)
        except sqlite3.IntegrityError as e:
            raise self._integrity_error(e, runner_id=runner_id) from e
        return self.require_runner(runner_id=runner_id)

    def transition(
        self,
        runner_id: str,
        status: RunnerStatus,
        *,
        reason: str,
        expected: Iterable[RunnerStatus] | None = None,
        **changes: Any,
    ) -> Runner:
        """Atomically move a runner to `status`, applying `changes` and tracing the move.

        When `expected` is given the transition only applies from one of those
        statuses; otherwise InvalidTransition is raised and nothing is written.
        """
        status = RunnerStatus(status)
        sets, params = self._set_clause({"status": status, **changes})
        ts = _utc_ts()
        sets.append("updated_at = ?")
        params.append(ts)
        try:
            with self.transaction():
                row = self._conn.execute(
                    "SELECT status FROM runners WHERE runner_id = ? LIMIT 1;",
                    (runner_id,),
                ).fetchone()
                if row is None:
                    raise RunnerNotFound("no such runner", runner_id=runner_id)
                previous = RunnerStatus(row["status"])
                if expected is not None and previous not in set(expected):
                    raise InvalidTransition(
                        f"cannot move from {previous.value} to {status.value}",
                        runner_id=runner_id,
                    )
                self._conn.execute(
                    f"UPDATE runners SET {', '.join(sets)} WHERE runner_id = ?;",
                    (*params, runner_id),
                )
                if previous != status:
                    payload: dict[str, Any] = {"from": previous.value, "to": status.value, "reason": reason}
                    if changes.get("error"):
                        payload["error"] = changes["error"]
                    self._insert_event(runner_id, "status_changed", payload, ts)
        except sqlite3.IntegrityError as e:
            raise self._integrity_error(e, runner_id=runner_id) from e
        return self.require_runner(runner_id=runner_id)

    @staticmethod
    def _integrity_error(e: sqlite3.IntegrityError, *, runner_id: str) -> Exception:
        msg = str(e)
        if "mode is immutable" in msg:
            return ModeImmutable("runner mode is write-once", runner_id=runner_id)
        if "UNIQUE" in msg and ("container_id" in msg or "process_id" in msg):
            return InvalidTransition("backend handle already belongs to another runner", runner_id=runner_id)
        return InvalidTransition(f"record invariant violated: {msg}", runner_id=runner_id)

    # --- Events (trace)
    def _insert_event(self, runner_id: str, event_type: str, payload: dict[str, Any], created_at: float) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO runner_events(event_id, runner_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, runner_id, created_at, event_type, _json_dumps(payload)),
        )
        return event_id

    def append_event(self, runner_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = self._insert_event(runner_id, event_type, payload, _utc_ts())
        self._conn.commit()
        return event_id

    def get_latest_event(self, *, runner_id: str, event_type: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT event_id, runner_id, created_at, event_type, payload_json
            FROM runner_events
            WHERE runner_id = ? AND event_type = ?
            ORDER BY created_at DESC, event_id DESC
            LIMIT 1;
            """,
            (runner_id, event_type),
        ).fetchone()

    def list_status_history(self, *, runner_id: str) -> list[str]:
        """Statuses a runner has been in, oldest first (starting at pending)."""
        rows = self._conn.execute(
            """
            SELECT payload_json FROM runner_events
            WHERE runner_id = ? AND event_type = 'status_changed'
            ORDER BY rowid ASC;
            """,
            (runner_id,),
        ).fetchall()
        history = [RunnerStatus.PENDING.value]
        for r in rows:
            history.append(str(json.loads(r["payload_json"])["to"]))
        return history

    def list_events_page(
        self,
        *,
        runner_id: str,
        limit: int,
        cursor: tuple[float, str] | None,
        event_types: list[str] | None,
    ) -> dict[str, Any]:
        # Cursor-based pagination, stable ordering by (created_at, event_id).
        where = ["runner_id = ?"]
        params: list[Any] = [runner_id]

        if event_types:
            where.append("event_type IN (%s)" % ",".join(["?"] * len(event_types)))
            params.extend(event_types)

        if cursor is not None:
            created_at, event_id = cursor
            # Fetch strictly after the cursor to avoid duplicates.
            where.append("(created_at > ? OR (created_at = ? AND event_id > ?))")
            params.extend([float(created_at), float(created_at), str(event_id)])

        where_sql = " AND ".join(where)
        # Fetch one extra row to determine has_more.
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            "SELECT event_id, runner_id, created_at, event_type, payload_json "
            "FROM runner_events "
            f"WHERE {where_sql} "
            "ORDER BY created_at ASC, event_id ASC "
            "LIMIT ?",
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [
            {
                "event_id": r["event_id"],
                "runner_id": r["runner_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }
            for r in rows
        ]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["event_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}
