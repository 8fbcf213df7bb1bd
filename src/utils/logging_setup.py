from __future__ import annotations

import logging
import os


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def log_level_from_env(default: str = "info") -> str:
    return (os.getenv("ACTION_PACKER_LOG_LEVEL") or default).strip().lower()


def configure_logging(level: str | None = None) -> None:
    """Install one stream handler on the root logger (idempotent)."""
    name = (level or log_level_from_env()).upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=LOG_FORMAT, force=True)
