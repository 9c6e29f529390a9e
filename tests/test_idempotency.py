"""Tests for the idempotency cache and its sweeper."""

import asyncio

import pytest

from paysync.core.background_tasks import run_idempotency_sweep, start_idempotency_sweeper
from paysync.core.idempotency import (
    InMemoryIdempotencyStore,
    build_idempotency_store,
    generate_idempotency_key,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore(ttl_seconds=300, clock=clock)


async def test_get_returns_stored_result(store: InMemoryIdempotencyStore) -> None:
    await store.set("outcome:ws_CO_1", {"payment_state": "confirmed"})

    assert await store.get("outcome:ws_CO_1") == {"payment_state": "confirmed"}
    assert await store.exists("outcome:ws_CO_1")
    assert await store.get("outcome:ws_CO_2") is None


async def test_entries_expire_after_ttl(store: InMemoryIdempotencyStore, clock: FakeClock) -> None:
    await store.set("outcome:ws_CO_1", {"payment_state": "confirmed"})

    clock.now += 299
    assert await store.get("outcome:ws_CO_1") is not None

    clock.now += 1
    assert await store.get("outcome:ws_CO_1") is None


async def test_sweep_evicts_only_expired(store: InMemoryIdempotencyStore, clock: FakeClock) -> None:
    await store.set("old", {"n": 1})
    clock.now += 200
    await store.set("new", {"n": 2})
    clock.now += 150

    assert await run_idempotency_sweep(store) == 1
    assert len(store) == 1
    assert await store.get("new") == {"n": 2}


async def test_sweeper_runs_until_cancelled(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(ttl_seconds=1, clock=clock)
    await store.set("old", {"n": 1})
    clock.now += 5

    task = asyncio.create_task(start_idempotency_sweeper(store, interval_seconds=0.01))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(store) == 0


def test_key_is_deterministic() -> None:
    first = generate_idempotency_key("payment_refund", "abc", {"key": "k-1"})
    second = generate_idempotency_key("payment_refund", "abc", {"key": "k-1"})
    other = generate_idempotency_key("payment_refund", "abc", {"key": "k-2"})

    assert first == second
    assert first != other
    assert len(first) == 64


def test_memory_backend_is_the_default() -> None:
    assert isinstance(build_idempotency_store("memory"), InMemoryIdempotencyStore)
