from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


# `import src...` from the repo root, `import fakes` from this directory.
TESTS_DIR = Path(__file__).resolve().parent
REPO_ROOT = TESTS_DIR.parent
for _p in (REPO_ROOT, TESTS_DIR):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))


@pytest.fixture(autouse=True)
def _isolate_action_packer_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """A developer's shell must not leak config overrides into tests."""
    for key in [k for k in os.environ if k.startswith("ACTION_PACKER_")]:
        monkeypatch.delenv(key, raising=False)
