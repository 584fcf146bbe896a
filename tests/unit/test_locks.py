"""Unit tests for KeyedLock."""

import asyncio

import pytest

from src.core.locks import KeyedLock, LockTimeoutError


class TestKeyedLock:
    """Tests for per-key mutual exclusion."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self) -> None:
        locks = KeyedLock()
        trace: list[str] = []

        async def critical(name: str) -> None:
            async with locks.acquire("order:1"):
                trace.append(f"{name}-in")
                await asyncio.sleep(0.01)
                trace.append(f"{name}-out")

        await asyncio.gather(critical("a"), critical("b"))

        assert trace == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self) -> None:
        locks = KeyedLock()

        async with locks.acquire("order:1"):
            async with locks.acquire("order:2", timeout=0.01):
                assert locks.is_locked("order:1")
                assert locks.is_locked("order:2")

    @pytest.mark.asyncio
    async def test_timeout_raises(self) -> None:
        locks = KeyedLock()

        async with locks.acquire("order:1"):
            with pytest.raises(LockTimeoutError) as exc_info:
                async with locks.acquire("order:1", timeout=0.01):
                    pass

        assert exc_info.value.key == "order:1"
        assert exc_info.value.timeout == 0.01

    @pytest.mark.asyncio
    async def test_entries_dropped_when_idle(self) -> None:
        locks = KeyedLock()

        async with locks.acquire("order:1"):
            assert len(locks) == 1

        assert len(locks) == 0
        assert locks.is_locked("order:1") is False

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self) -> None:
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.acquire("order:1"):
                raise RuntimeError("boom")

        async with locks.acquire("order:1", timeout=0.01):
            pass
