from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import IO

from src.storage.sqlite_store import default_db_path


logger = logging.getLogger(__name__)


class FleetLease:
    """Exclusive cross-process claim on one fleet database.

    Per-runner locks only serialize work inside one process. Whoever holds
    this lease (the API server for its lifetime, or a one-shot CLI command)
    is the only process allowed to run lifecycle operations on the fleet.
    The lock file sits next to the database and records the holder's pid.
    """

    def __init__(self, db_path: str | Path | None) -> None:
        db = Path(db_path or default_db_path()).expanduser().resolve()
        self.path = db.with_name(db.name + ".lock")
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        """Take the lease without blocking; False if another holder has it."""
        if self._handle is not None:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        handle.seek(0)
        try:
            if os.name == "nt":
                import msvcrt

                msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl

                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            return False
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("Fleet lease %s taken by pid %s", self.path, os.getpid())
        return True

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            if os.name == "nt":
                import msvcrt

                handle.seek(0)
                msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl

                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.warning("Could not unlock fleet lease %s: %s", self.path, e)
        finally:
            handle.close()

    def holder_pid(self) -> int | None:
        """Pid recorded by the last holder; only meaningful while the lease is taken."""
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return int(raw) if raw.isdigit() else None
