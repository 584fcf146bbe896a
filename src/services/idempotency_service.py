"""At-most-once execution of mutating requests keyed by Idempotency-Key."""

import hashlib
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from src.api.middleware.error_handler import IdempotencyConflictError, IdempotencyKeyReuseError
from src.models.idempotency import IdempotencyRecord, IdempotencyStatus
from src.repositories.interface import IdempotencyRepository
from src.schemas.common import utcnow

logger = logging.getLogger(__name__)

# Reservation attempts when a competing record disappears between insert and read
MAX_RESERVE_ATTEMPTS = 3


def hash_request(payload: Any) -> str:
    """Stable digest of a JSON-compatible request payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def endpoint_fingerprint(method: str, route_path: str, user_id: str) -> str:
    """Scope a key to the endpoint and the caller."""
    return f"{method.upper()} {route_path}|{user_id}"


@dataclass
class IdempotentResult:
    """Outcome of a guarded execution."""

    data: dict[str, Any]
    replayed: bool = False


class IdempotencyGuard:
    """Runs an operation once per (key, endpoint fingerprint).

    The first request reserves the pair with a conditional insert and
    stores the result when the operation completes. Later requests with
    the same payload get that result back; a request arriving while the
    first is still running is told to retry instead of waiting.
    """

    def __init__(self, records: IdempotencyRepository, retention_hours: int = 24, retry_after: int = 1) -> None:
        self.records = records
        self.retention = timedelta(hours=retention_hours)
        self.retry_after = retry_after

    async def execute(
        self,
        key: str | None,
        fingerprint: str,
        operation: Callable[[], Awaitable[dict[str, Any]]],
        request_hash: str,
    ) -> IdempotentResult:
        """Run ``operation`` at most once for the key.

        Args:
            key: Client-supplied Idempotency-Key; None runs the operation directly.
            fingerprint: Endpoint and caller scope of the key.
            operation: Coroutine factory producing a JSON-compatible result.
            request_hash: Digest of the request payload.

        Raises:
            IdempotencyConflictError: If the first request is still running.
            IdempotencyKeyReuseError: If the key was used with another payload.
        """
        if not key:
            return IdempotentResult(data=await operation())

        for _ in range(MAX_RESERVE_ATTEMPTS):
            now = utcnow()
            reservation = IdempotencyRecord(
                key=key,
                endpoint_fingerprint=fingerprint,
                request_hash=request_hash,
                status=IdempotencyStatus.IN_PROGRESS.value,
                result_snapshot=None,
                created_at=now.isoformat(),
                expires_at=(now + self.retention).isoformat(),
            )
            if await self.records.try_reserve(reservation, now):
                return await self._run_reserved(key, fingerprint, operation)

            existing = await self.records.get(key, fingerprint)
            if existing is None:
                continue

            if existing["request_hash"] != request_hash:
                logger.warning("Idempotency key %s reused with a different payload (%s)", key, fingerprint)
                raise IdempotencyKeyReuseError()

            if existing["status"] == IdempotencyStatus.COMPLETED.value and existing["result_snapshot"] is not None:
                logger.info("Replaying stored result for idempotency key %s (%s)", key, fingerprint)
                return IdempotentResult(data=existing["result_snapshot"], replayed=True)

            raise IdempotencyConflictError(retry_after=self.retry_after)

        raise IdempotencyConflictError(retry_after=self.retry_after)

    async def _run_reserved(
        self,
        key: str,
        fingerprint: str,
        operation: Callable[[], Awaitable[dict[str, Any]]],
    ) -> IdempotentResult:
        try:
            data = await operation()
        except BaseException:
            # A failed attempt leaves no record behind
            await self.records.release(key, fingerprint)
            raise
        await self.records.complete(key, fingerprint, data)
        return IdempotentResult(data=data)

    async def prune_expired(self) -> int:
        """Delete records past their retention window."""
        removed = await self.records.prune_expired(utcnow())
        if removed:
            logger.info("Pruned %d expired idempotency records", removed)
        return removed
