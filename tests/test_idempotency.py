import asyncio

import pytest

from relaykit.core.exceptions import IdempotencyConflict, IdempotencyInFlight, InvalidIdempotencyKey
from relaykit.middleware.idempotency import execute_idempotent
from relaykit.models.idempotency import IdempotencyKey
from relaykit.services.idempotency_store import (
    ClaimOutcome,
    IdempotencyScope,
    IdempotencyStore,
    fingerprint,
)


class CountingHandler:
    """Handler that records how many times it actually ran."""

    def __init__(self, status=201, body=None, delay=0.0, error=None):
        self.calls = 0
        self.status = status
        self.body = body if body is not None else {"id": "r1"}
        self.delay = delay
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.status, dict(self.body, call=self.calls)


def test_fingerprint_ignores_key_order():
    a = fingerprint("post", "/records", {"a": 1, "b": [1, 2]})
    b = fingerprint("POST", "/records", {"b": [1, 2], "a": 1})

    assert a == b
    assert a != fingerprint("POST", "/records", {"a": 2, "b": [1, 2]})
    assert a != fingerprint("POST", "/other", {"a": 1, "b": [1, 2]})


@pytest.mark.asyncio
async def test_replay_runs_handler_once(db):
    handler = CountingHandler()

    first = await execute_idempotent("k1", "POST", "/records", {"title": "x"}, handler, org_id="org1")
    second = await execute_idempotent("k1", "POST", "/records", {"title": "x"}, handler, org_id="org1")

    assert handler.calls == 1
    assert (first.status, first.body) == (second.status, second.body)
    assert first.replayed is False
    assert second.replayed is True


@pytest.mark.asyncio
async def test_same_key_different_body_conflicts(db):
    handler = CountingHandler()
    await execute_idempotent("k1", "POST", "/records", {"title": "x"}, handler, org_id="org1")

    with pytest.raises(IdempotencyConflict):
        await execute_idempotent("k1", "POST", "/records", {"title": "y"}, handler, org_id="org1")

    assert handler.calls == 1


@pytest.mark.asyncio
async def test_concurrent_same_key_executes_once(db):
    handler = CountingHandler(delay=0.05)

    results = await asyncio.gather(*[
        execute_idempotent(
            "k-concurrent", "POST", "/records", {"title": "x"}, handler,
            org_id="org1", wait_timeout=5, poll_interval=0.01,
        )
        for _ in range(10)
    ])

    assert handler.calls == 1
    assert len({(r.status, str(r.body)) for r in results}) == 1
    assert sum(not r.replayed for r in results) == 1


@pytest.mark.asyncio
async def test_in_flight_without_wait_is_retryable_error(db, clock):
    store = IdempotencyStore(clock=clock, lock_timeout_seconds=30)
    scope = IdempotencyScope(method="POST", path="/records", org_id="org1")
    held = await store.claim(scope, "k1", fingerprint("POST", "/records", {"t": 1}))
    assert held.outcome is ClaimOutcome.ACQUIRED

    handler = CountingHandler()
    with pytest.raises(IdempotencyInFlight) as excinfo:
        await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1", store=store, wait_timeout=0)

    assert excinfo.value.retry_after >= 1
    assert handler.calls == 0


@pytest.mark.asyncio
async def test_stale_lock_is_reclaimed(db, clock):
    store = IdempotencyStore(clock=clock, lock_timeout_seconds=30)
    scope = IdempotencyScope(method="POST", path="/records", org_id="org1")
    abandoned = await store.claim(scope, "k1", fingerprint("POST", "/records", {"t": 1}))

    clock.advance(seconds=31)
    handler = CountingHandler()
    result = await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1", store=store, wait_timeout=0)

    assert handler.calls == 1
    assert result.status == 201
    # The crashed owner can no longer write its result
    assert await store.complete(abandoned.record_id, abandoned.lock_token, 200, {"late": True}) is False
    row = await IdempotencyKey.get(id=abandoned.record_id)
    assert row.status == 201
    assert row.lock_token is None


@pytest.mark.asyncio
async def test_handler_exception_releases_key(db):
    failing = CountingHandler(error=RuntimeError("db down"))
    with pytest.raises(RuntimeError):
        await execute_idempotent("k1", "POST", "/records", {"t": 1}, failing, org_id="org1")

    retry = CountingHandler()
    result = await execute_idempotent("k1", "POST", "/records", {"t": 1}, retry, org_id="org1")

    assert retry.calls == 1
    assert result.replayed is False


@pytest.mark.asyncio
async def test_server_errors_are_not_cached(db):
    broken = CountingHandler(status=503)
    first = await execute_idempotent("k1", "POST", "/records", {"t": 1}, broken, org_id="org1")
    assert first.status == 503

    healthy = CountingHandler()
    second = await execute_idempotent("k1", "POST", "/records", {"t": 1}, healthy, org_id="org1")

    assert healthy.calls == 1
    assert second.status == 201


@pytest.mark.asyncio
async def test_client_errors_are_replayed(db):
    handler = CountingHandler(status=400, body={"error": "bad"})
    await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1")
    replay = await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1")

    assert handler.calls == 1
    assert replay.status == 400
    assert replay.replayed is True


@pytest.mark.asyncio
async def test_expired_key_executes_again(db, clock):
    store = IdempotencyStore(clock=clock, ttl_hours=24)
    handler = CountingHandler()
    await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1", store=store)

    clock.advance(hours=25)
    result = await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1", store=store)

    assert handler.calls == 2
    assert result.replayed is False
    assert await IdempotencyKey.all().count() == 1


@pytest.mark.asyncio
async def test_expired_key_can_be_reused_with_new_body(db, clock):
    store = IdempotencyStore(clock=clock, ttl_hours=24)
    handler = CountingHandler()
    await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1", store=store)

    clock.advance(hours=25)
    result = await execute_idempotent("k1", "POST", "/records", {"t": 2}, handler, org_id="org1", store=store)

    assert handler.calls == 2
    assert result.replayed is False
    row = await IdempotencyKey.get(key="k1")
    assert row.request_hash == fingerprint("POST", "/records", {"t": 2})


@pytest.mark.asyncio
async def test_reclaimed_key_retention_starts_at_reclaim(db, clock):
    store = IdempotencyStore(clock=clock, lock_timeout_seconds=30, ttl_hours=24)
    scope = IdempotencyScope(method="POST", path="/records", org_id="org1")
    await store.claim(scope, "k1", fingerprint("POST", "/records", {"t": 1}))

    clock.advance(hours=1)
    handler = CountingHandler()
    await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1", store=store, wait_timeout=0)
    assert (await store.get(scope, "k1")).created_at == clock.now

    # 24h after the abandoned attempt but only 23h after the re-executed one
    clock.advance(hours=23, minutes=30)
    replay = await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1", store=store)

    assert replay.replayed is True
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_keys_are_scoped_per_org_and_route(db):
    handler = CountingHandler()
    await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org1")
    await execute_idempotent("k1", "POST", "/records", {"t": 1}, handler, org_id="org2")
    await execute_idempotent("k1", "POST", "/reminders", {"t": 1}, handler, org_id="org1")

    assert handler.calls == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["", "   ", "x" * 256])
async def test_invalid_keys_are_rejected(db, key):
    handler = CountingHandler()
    with pytest.raises(InvalidIdempotencyKey):
        await execute_idempotent(key, "POST", "/records", {}, handler)
    assert handler.calls == 0


@pytest.mark.asyncio
async def test_waiter_replays_after_owner_finishes(db):
    slow = CountingHandler(delay=0.1)
    owner = asyncio.create_task(
        execute_idempotent("k1", "POST", "/records", {"t": 1}, slow, org_id="org1")
    )
    await asyncio.sleep(0.02)

    other = CountingHandler()
    waited = await execute_idempotent(
        "k1", "POST", "/records", {"t": 1}, other, org_id="org1", wait_timeout=2, poll_interval=0.01
    )
    first = await owner

    assert other.calls == 0
    assert waited.replayed is True
    assert waited.body == first.body
