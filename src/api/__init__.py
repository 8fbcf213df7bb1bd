"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface to:
- create, start, stop, sync and remove runners
- inspect runner processes, containers, logs and trace events
- manage hosting-service credentials and reclaim orphans

The API is intentionally thin: core behavior lives in `src/engine` and `src/storage`.
"""

