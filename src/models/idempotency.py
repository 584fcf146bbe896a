"""Idempotency record definitions."""

from enum import Enum
from typing import Any, TypedDict


class IdempotencyStatus(str, Enum):
    """Lifecycle of an idempotency reservation."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class IdempotencyRecord(TypedDict):
    """Stored result of the first execution for a (key, fingerprint) pair."""

    key: str
    endpoint_fingerprint: str
    request_hash: str
    status: str
    result_snapshot: dict[str, Any] | None
    created_at: str
    expires_at: str
