"""Unit tests for the Idempotency-Key guard."""

import asyncio
from datetime import timedelta

import pytest

from src.api.middleware.error_handler import IdempotencyConflictError, IdempotencyKeyReuseError
from src.repositories.memory import InMemoryIdempotencyRepository
from src.schemas.common import utcnow
from src.services.idempotency_service import IdempotencyGuard, endpoint_fingerprint, hash_request

FINGERPRINT = endpoint_fingerprint("post", "/api/v1/orders", "customer-1")


@pytest.fixture
def records() -> InMemoryIdempotencyRepository:
    return InMemoryIdempotencyRepository()


@pytest.fixture
def guard(records: InMemoryIdempotencyRepository) -> IdempotencyGuard:
    return IdempotencyGuard(records, retention_hours=24)


class CountingOperation:
    """Awaitable factory that records how often it ran."""

    def __init__(self, result: dict | None = None, delay: float = 0, error: Exception | None = None) -> None:
        self.calls = 0
        self.result = result or {"id": "order-1"}
        self.delay = delay
        self.error = error

    async def __call__(self) -> dict:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.result, call=self.calls)


class TestHelpers:
    """Tests for hashing and fingerprinting."""

    def test_hash_ignores_key_order(self) -> None:
        assert hash_request({"a": 1, "b": [1, 2]}) == hash_request({"b": [1, 2], "a": 1})
        assert hash_request({"a": 1}) != hash_request({"a": 2})

    def test_fingerprint_scopes_method_route_and_user(self) -> None:
        assert FINGERPRINT == "POST /api/v1/orders|customer-1"
        assert endpoint_fingerprint("POST", "/api/v1/orders", "customer-2") != FINGERPRINT


class TestExecute:
    """Tests for IdempotencyGuard.execute."""

    @pytest.mark.asyncio
    async def test_without_key_always_runs(self, guard: IdempotencyGuard) -> None:
        operation = CountingOperation()

        await guard.execute(None, FINGERPRINT, operation, hash_request({}))
        await guard.execute(None, FINGERPRINT, operation, hash_request({}))

        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_replay_returns_stored_result(self, guard: IdempotencyGuard) -> None:
        operation = CountingOperation()
        request_hash = hash_request({"items": ["burger"]})

        first = await guard.execute("key-1", FINGERPRINT, operation, request_hash)
        second = await guard.execute("key-1", FINGERPRINT, operation, request_hash)

        assert operation.calls == 1
        assert first.replayed is False
        assert second.replayed is True
        assert second.data == first.data

    @pytest.mark.asyncio
    async def test_same_key_other_payload_rejected(self, guard: IdempotencyGuard) -> None:
        await guard.execute("key-1", FINGERPRINT, CountingOperation(), hash_request({"qty": 1}))

        with pytest.raises(IdempotencyKeyReuseError) as exc_info:
            await guard.execute("key-1", FINGERPRINT, CountingOperation(), hash_request({"qty": 2}))

        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_same_key_other_endpoint_is_independent(self, guard: IdempotencyGuard) -> None:
        operation = CountingOperation()
        other = endpoint_fingerprint("POST", "/api/v1/payments/intent", "customer-1")

        await guard.execute("key-1", FINGERPRINT, operation, hash_request({}))
        result = await guard.execute("key-1", other, operation, hash_request({}))

        assert operation.calls == 2
        assert result.replayed is False

    @pytest.mark.asyncio
    async def test_concurrent_requests_run_once(self, guard: IdempotencyGuard) -> None:
        operation = CountingOperation(delay=0.05)
        request_hash = hash_request({"items": ["burger"]})

        results = await asyncio.gather(
            *(guard.execute("key-1", FINGERPRINT, operation, request_hash) for _ in range(5)),
            return_exceptions=True,
        )

        assert operation.calls == 1
        assert sum(not isinstance(r, Exception) for r in results) == 1
        conflicts = [r for r in results if isinstance(r, IdempotencyConflictError)]
        assert len(conflicts) == 4
        assert conflicts[0].status_code == 409
        assert conflicts[0].headers["Retry-After"] == "1"

    @pytest.mark.asyncio
    async def test_failure_releases_key(self, guard: IdempotencyGuard, records) -> None:
        failing = CountingOperation(error=RuntimeError("boom"))
        request_hash = hash_request({})

        with pytest.raises(RuntimeError):
            await guard.execute("key-1", FINGERPRINT, failing, request_hash)

        assert await records.get("key-1", FINGERPRINT) is None
        result = await guard.execute("key-1", FINGERPRINT, CountingOperation(), request_hash)
        assert result.replayed is False

    @pytest.mark.asyncio
    async def test_cancellation_releases_key(self, guard: IdempotencyGuard, records) -> None:
        task = asyncio.create_task(guard.execute("key-1", FINGERPRINT, CountingOperation(delay=10), hash_request({})))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await records.get("key-1", FINGERPRINT) is None

    @pytest.mark.asyncio
    async def test_expired_record_is_replaced(self, guard: IdempotencyGuard, records) -> None:
        operation = CountingOperation()
        await guard.execute("key-1", FINGERPRINT, operation, hash_request({"qty": 1}))
        records._records[("key-1", FINGERPRINT)]["expires_at"] = (utcnow() - timedelta(seconds=1)).isoformat()

        result = await guard.execute("key-1", FINGERPRINT, operation, hash_request({"qty": 2}))

        assert operation.calls == 2
        assert result.replayed is False


class TestPrune:
    """Tests for prune_expired."""

    @pytest.mark.asyncio
    async def test_removes_only_expired(self, guard: IdempotencyGuard, records) -> None:
        await guard.execute("old", FINGERPRINT, CountingOperation(), hash_request({}))
        await guard.execute("new", FINGERPRINT, CountingOperation(), hash_request({}))
        records._records[("old", FINGERPRINT)]["expires_at"] = (utcnow() - timedelta(hours=1)).isoformat()

        assert await guard.prune_expired() == 1
        assert await records.get("old", FINGERPRINT) is None
        assert await records.get("new", FINGERPRINT) is not None
