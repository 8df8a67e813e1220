"""Transport constants shared by config and the error taxonomy."""

from __future__ import annotations

# Statuses a caller-side retry layer may reasonably retry.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

DEFAULT_TIMEOUT_S: float = 120.0
