"""Runtime orchestration (background loops).

This layer is responsible for:
- running the periodic reconciliation pass on a fixed interval
- exposing a snapshot of the last pass for observability

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same engine.
"""

