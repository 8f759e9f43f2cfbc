import asyncio
import random
from datetime import timedelta

import pytest
from tortoise.transactions import in_transaction

from relaykit.consumers.backoff import ExponentialBackoff
from relaykit.consumers.outbox_dispatcher import (
    DeliveryOutcome,
    OutboxDispatcher,
    list_failed_entries,
    outbox_status_counts,
)
from relaykit.core.exceptions import DeliveryTransientFailure
from relaykit.events.outbox_writer import enqueue_outbox_entry
from relaykit.models.outbox import OutboxEntry, OutboxStatus
from relaykit.testing.testing_mocks import ScriptedSink


async def _enqueue(org_id="org1", event="record.created", payload=None):
    async with in_transaction() as conn:
        return await enqueue_outbox_entry(org_id, event, payload or {"id": "r1"}, conn)


def _dispatcher(sink, clock, **kwargs):
    kwargs.setdefault("backoff", lambda attempt: 10)
    kwargs.setdefault("worker_id", "worker-a")
    return OutboxDispatcher(sink, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_delivers_after_transient_failures(db, clock):
    entry = await _enqueue()
    sink = ScriptedSink([False, False, True])
    dispatcher = _dispatcher(sink, clock)

    first = await dispatcher.run_once()
    assert first.retried == 1

    # Not due until the backoff has elapsed
    assert (await dispatcher.run_once()).claimed == 0

    clock.advance(11)
    assert (await dispatcher.run_once()).retried == 1
    clock.advance(11)
    assert (await dispatcher.run_once()).delivered == 1

    stored = await OutboxEntry.get(id=entry.id)
    assert stored.status == OutboxStatus.DELIVERED
    assert stored.delivered_at is not None
    assert stored.attempt_count == 3
    assert stored.claimed_by is None
    assert len(sink.calls_for(entry.id)) == 3

    clock.advance(3600)
    assert (await dispatcher.run_once()).claimed == 0
    assert len(sink.calls) == 3


@pytest.mark.asyncio
async def test_retry_schedule_follows_backoff(db, clock):
    entry = await _enqueue()
    delays = []

    def backoff(attempt):
        delays.append(attempt)
        return 42

    dispatcher = _dispatcher(ScriptedSink(default=False), clock, backoff=backoff)
    await dispatcher.run_once()

    stored = await OutboxEntry.get(id=entry.id)
    assert delays == [1]
    assert stored.status == OutboxStatus.PENDING
    assert (stored.next_retry_at - clock.now).total_seconds() == pytest.approx(42)
    assert stored.error == "HTTP 503: unavailable"


@pytest.mark.asyncio
async def test_entry_fails_after_max_attempts(db, clock):
    entry = await _enqueue()
    sink = ScriptedSink(default=False)
    dispatcher = _dispatcher(sink, clock, max_attempts=3, backoff=lambda attempt: 0)

    outcomes = []
    for _ in range(3):
        stats = await dispatcher.run_once()
        outcomes.append((stats.retried, stats.failed))

    assert outcomes == [(1, 0), (1, 0), (0, 1)]
    stored = await OutboxEntry.get(id=entry.id)
    assert stored.status == OutboxStatus.FAILED
    assert stored.failed_at == clock.now
    assert stored.attempt_count == 3
    assert stored.delivered_at is None

    clock.advance(86400)
    assert (await dispatcher.run_once()).claimed == 0
    assert len(sink.calls) == 3

    failed = await list_failed_entries()
    assert [e.id for e in failed] == [entry.id]
    assert await list_failed_entries(org_id="other-org") == []


@pytest.mark.asyncio
async def test_sink_exceptions_count_as_failures(db, clock):
    entry = await _enqueue()
    sink = ScriptedSink([RuntimeError("boom"), DeliveryTransientFailure(entry.id, "HTTP 502", 502)])
    dispatcher = _dispatcher(sink, clock, backoff=lambda attempt: 0)

    assert (await dispatcher.run_once()).retried == 1
    stored = await OutboxEntry.get(id=entry.id)
    assert stored.error == "RuntimeError: boom"

    assert (await dispatcher.run_once()).retried == 1
    stored = await OutboxEntry.get(id=entry.id)
    assert stored.error == "HTTP 502"
    assert stored.attempt_count == 2


@pytest.mark.asyncio
async def test_lease_prevents_double_claim(db, clock):
    entry = await _enqueue()
    sink_a, sink_b = ScriptedSink(), ScriptedSink()
    worker_a = _dispatcher(sink_a, clock, worker_id="worker-a", lease_seconds=60)
    worker_b = _dispatcher(sink_b, clock, worker_id="worker-b", lease_seconds=60)

    claimed = await worker_a.claim_batch()
    assert [e.id for e in claimed] == [entry.id]
    assert await worker_b.claim_batch() == []

    # worker-a stalls past its lease; worker-b takes the entry over
    clock.advance(61)
    taken_over = await worker_b.claim_batch()
    assert [e.id for e in taken_over] == [entry.id]

    assert await worker_a.dispatch_entry(claimed[0]) is DeliveryOutcome.LEASE_LOST
    assert await worker_b.dispatch_entry(taken_over[0]) is DeliveryOutcome.DELIVERED

    stored = await OutboxEntry.get(id=entry.id)
    assert stored.status == OutboxStatus.DELIVERED
    assert stored.attempt_count == 1
    # The stale worker never reached its sink
    assert sink_a.calls == []
    assert len(sink_b.calls) == 1


class StallingSink(ScriptedSink):
    """Stalls past the lease on its first delivery while another dispatcher polls."""

    def __init__(self, clock, competitor):
        super().__init__()
        self.clock = clock
        self.competitor = competitor

    async def deliver(self, entry_id, event, payload):
        if not self.calls:
            self.clock.advance(61)
            await self.competitor.run_once()
        return await super().deliver(entry_id, event, payload)


@pytest.mark.asyncio
async def test_entries_whose_lease_lapsed_mid_batch_are_skipped(db, clock):
    first = await _enqueue(payload={"n": 1})
    second = await _enqueue(payload={"n": 2})
    sink_b = ScriptedSink()
    worker_b = _dispatcher(sink_b, clock, worker_id="worker-b", lease_seconds=60)
    sink_a = StallingSink(clock, worker_b)
    worker_a = _dispatcher(sink_a, clock, worker_id="worker-a", lease_seconds=60, batch_size=2)

    stats = await worker_a.run_once()

    assert stats.claimed == 2
    assert stats.delivered == 0
    # worker-b took both entries over; worker-a must not deliver the second again
    assert sink_a.calls_for(second.id) == []
    assert len(sink_b.calls_for(second.id)) == 1
    for entry in (first, second):
        stored = await OutboxEntry.get(id=entry.id)
        assert stored.status == OutboxStatus.DELIVERED
        assert stored.attempt_count == 1


@pytest.mark.asyncio
async def test_lease_is_renewed_before_each_delivery(db, clock):
    entry = await _enqueue()
    dispatcher = _dispatcher(ScriptedSink(), clock, lease_seconds=60)
    [claimed] = await dispatcher.claim_batch()

    clock.advance(30)
    assert await dispatcher.renew_lease(claimed) is True
    assert claimed.lease_expires_at == clock.now + timedelta(seconds=60)

    # Expired with nobody else holding it: still not ours to deliver
    clock.advance(61)
    assert await dispatcher.renew_lease(claimed) is False
    assert await dispatcher.dispatch_entry(claimed) is DeliveryOutcome.LEASE_LOST
    assert (await OutboxEntry.get(id=entry.id)).attempt_count == 0


@pytest.mark.asyncio
async def test_batch_is_claimed_in_creation_order(db, clock):
    first = await _enqueue(payload={"n": 1})
    second = await _enqueue(payload={"n": 2})
    third = await _enqueue(payload={"n": 3})
    sink = ScriptedSink()
    dispatcher = _dispatcher(sink, clock, batch_size=2)

    stats = await dispatcher.run_once()
    assert stats.claimed == 2
    assert [c["entry_id"] for c in sink.calls] == [first.id, second.id]

    await dispatcher.run_once()
    assert sink.calls[-1]["entry_id"] == third.id


@pytest.mark.asyncio
async def test_run_forever_stops_on_event(db, clock):
    entry = await _enqueue()
    sink = ScriptedSink()
    dispatcher = _dispatcher(sink, clock)
    stop = asyncio.Event()

    task = asyncio.create_task(dispatcher.run_forever(poll_interval=0.01, stop_event=stop))
    for _ in range(100):
        if sink.calls:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=2)

    assert sink.calls_for(entry.id)
    assert (await OutboxEntry.get(id=entry.id)).status == OutboxStatus.DELIVERED


@pytest.mark.asyncio
async def test_status_counts(db):
    await _enqueue()
    await _enqueue()
    delivered = await _enqueue()
    await OutboxEntry.filter(id=delivered.id).update(status=OutboxStatus.DELIVERED)

    assert await outbox_status_counts() == {"PENDING": 2, "DELIVERED": 1, "FAILED": 0}


def test_dispatcher_rejects_zero_attempts():
    with pytest.raises(ValueError):
        OutboxDispatcher(ScriptedSink(), max_attempts=0)


def test_backoff_doubles_until_cap():
    backoff = ExponentialBackoff(base_seconds=60, max_seconds=600, jitter=0)

    assert [backoff(n) for n in range(1, 6)] == [60, 120, 240, 480, 600]
    assert backoff(200) == 600


def test_backoff_jitter_only_shortens():
    backoff = ExponentialBackoff(base_seconds=60, max_seconds=86400, jitter=0.2, rng=random.Random(7))

    for attempt in range(1, 10):
        raw = backoff.raw_delay(attempt)
        assert raw * 0.8 <= backoff(attempt) <= raw


@pytest.mark.parametrize("kwargs", [{"base_seconds": -1}, {"jitter": 1.5}, {"jitter": -0.1}])
def test_backoff_rejects_bad_settings(kwargs):
    with pytest.raises(ValueError):
        ExponentialBackoff(**kwargs)
