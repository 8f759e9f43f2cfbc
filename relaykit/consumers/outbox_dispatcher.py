import asyncio
import logging
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from relaykit.consumers.backoff import ExponentialBackoff
from relaykit.consumers.sinks import DeliveryResult, DeliverySink, build_default_sink
from relaykit.core.clock import utcnow
from relaykit.core.config import BATCH_SIZE, MAX_ATTEMPTS, OUTBOX_LEASE_SECONDS, POLLING_INTERVAL
from relaykit.core.db import close_db, init_db
from relaykit.core.exceptions import DeliveryPermanentFailure, DeliveryTransientFailure
from relaykit.core.logging import configure_logging
from relaykit.models.outbox import OutboxEntry, OutboxStatus

log = logging.getLogger("relaykit.dispatcher")


class DeliveryOutcome(str, Enum):
    DELIVERED = "DELIVERED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    FAILED = "FAILED"
    LEASE_LOST = "LEASE_LOST"


@dataclass
class DispatchStats:
    claimed: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


class OutboxDispatcher:
    """
    Drains notifications_outbox: PENDING -> (claimed) -> DELIVERED | PENDING
    with next_retry_at | FAILED once max_attempts is reached.

    Several dispatchers may run at once. A batch is claimed with
    SELECT ... FOR UPDATE SKIP LOCKED and stamped with a lease, so each entry
    has at most one delivery attempt in progress; an expired lease (crashed
    worker) makes the entry claimable again.
    """

    def __init__(
        self,
        sink: DeliverySink,
        batch_size: int = BATCH_SIZE,
        max_attempts: int = MAX_ATTEMPTS,
        lease_seconds: float = OUTBOX_LEASE_SECONDS,
        backoff: Optional[Callable[[int], float]] = None,
        worker_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.sink = sink
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.lease = timedelta(seconds=lease_seconds)
        self.backoff = backoff or ExponentialBackoff()
        self.worker_id = worker_id or default_worker_id()
        self._clock = clock

    @staticmethod
    def due_entries(now: datetime):
        """Entries a dispatcher may pick up at `now`."""
        return (
            OutboxEntry.filter(status=OutboxStatus.PENDING, delivered_at__isnull=True)
            .filter(Q(next_retry_at__isnull=True) | Q(next_retry_at__lte=now))
            .filter(Q(lease_expires_at__isnull=True) | Q(lease_expires_at__lte=now))
        )

    async def claim_batch(self) -> List[OutboxEntry]:
        now = self._clock()
        lease_until = now + self.lease

        async with in_transaction() as conn:
            entries = await (
                self.due_entries(now)
                .order_by("created_at")
                .limit(self.batch_size)
                .select_for_update(skip_locked=True)
                .using_db(conn)
            )
            if not entries:
                return []
            await OutboxEntry.filter(id__in=[e.id for e in entries]).using_db(conn).update(
                claimed_by=self.worker_id, lease_expires_at=lease_until
            )

        for entry in entries:
            entry.claimed_by = self.worker_id
            entry.lease_expires_at = lease_until
        return entries

    async def _deliver(self, entry: OutboxEntry) -> DeliveryResult:
        try:
            return await self.sink.deliver(entry.id, entry.event, entry.payload)
        except DeliveryTransientFailure as e:
            return DeliveryResult(success=False, error=e.reason, status_code=e.http_status)
        except Exception as e:
            log.exception(f"Sink raised while delivering entry {entry.id}")
            return DeliveryResult(success=False, error=f"{type(e).__name__}: {e}")

    def _owned(self, entry: OutboxEntry):
        return OutboxEntry.filter(
            id=entry.id,
            claimed_by=self.worker_id,
            status=OutboxStatus.PENDING,
            attempt_count=entry.attempt_count,
        )

    async def renew_lease(self, entry: OutboxEntry) -> bool:
        """Extends our lease on entry; False once it expired or another dispatcher took it."""
        now = self._clock()
        lease_until = now + self.lease
        renewed = await self._owned(entry).filter(lease_expires_at__gt=now).update(lease_expires_at=lease_until)
        if renewed:
            entry.lease_expires_at = lease_until
        return renewed > 0

    async def dispatch_entry(self, entry: OutboxEntry) -> DeliveryOutcome:
        """Delivers one claimed entry and records the outcome while still holding the lease."""
        # Entries late in a batch may have outlived the lease taken at claim time
        if not await self.renew_lease(entry):
            log.warning(f"Lease on entry {entry.id} expired before delivery, skipping it")
            return DeliveryOutcome.LEASE_LOST

        log.info(f"Dispatcher DISPATCHING: {entry.event} (ID: {entry.id.hex[:8]}..., attempt {entry.attempt_count + 1})")
        result = await self._deliver(entry)

        now = self._clock()
        attempts = entry.attempt_count + 1
        owned = self._owned(entry)
        release_lease = dict(claimed_by=None, lease_expires_at=None)

        if result.success:
            updated = await owned.update(
                status=OutboxStatus.DELIVERED,
                delivered_at=now,
                attempt_count=attempts,
                next_retry_at=None,
                error=None,
                **release_lease,
            )
            if not updated:
                log.warning(f"Lease on entry {entry.id} was lost before recording delivery")
                return DeliveryOutcome.LEASE_LOST
            entry.status, entry.delivered_at, entry.attempt_count = OutboxStatus.DELIVERED, now, attempts
            return DeliveryOutcome.DELIVERED

        error = result.error or "delivery failed"
        if attempts >= self.max_attempts:
            updated = await owned.update(
                status=OutboxStatus.FAILED,
                failed_at=now,
                attempt_count=attempts,
                next_retry_at=None,
                error=error,
                **release_lease,
            )
            if not updated:
                log.warning(f"Lease on entry {entry.id} was lost before recording failure")
                return DeliveryOutcome.LEASE_LOST
            failure = DeliveryPermanentFailure(entry.id, error, result.status_code)
            log.error(f"{failure.message} after {attempts} attempts; entry moved to FAILED for operator review")
            entry.status, entry.failed_at, entry.attempt_count = OutboxStatus.FAILED, now, attempts
            return DeliveryOutcome.FAILED

        next_retry_at = now + timedelta(seconds=self.backoff(attempts))
        updated = await owned.update(
            attempt_count=attempts,
            next_retry_at=next_retry_at,
            error=error,
            **release_lease,
        )
        if not updated:
            log.warning(f"Lease on entry {entry.id} was lost before scheduling a retry")
            return DeliveryOutcome.LEASE_LOST
        failure = DeliveryTransientFailure(entry.id, error, result.status_code)
        log.warning(f"{failure.message}; retry {attempts}/{self.max_attempts} at {next_retry_at.isoformat()}")
        entry.attempt_count, entry.next_retry_at = attempts, next_retry_at
        return DeliveryOutcome.RETRY_SCHEDULED

    async def run_once(self) -> DispatchStats:
        """Claims one batch and delivers it entry by entry."""
        stats = DispatchStats()
        entries = await self.claim_batch()
        stats.claimed = len(entries)

        for entry in entries:
            outcome = await self.dispatch_entry(entry)
            if outcome is DeliveryOutcome.DELIVERED:
                stats.delivered += 1
            elif outcome is DeliveryOutcome.RETRY_SCHEDULED:
                stats.retried += 1
            elif outcome is DeliveryOutcome.FAILED:
                stats.failed += 1

        if stats.claimed:
            log.info(f"Batch complete: {stats}")
        return stats

    async def run_forever(self, poll_interval: float = POLLING_INTERVAL, stop_event: Optional[asyncio.Event] = None):
        """Main loop. Storage errors end the iteration, not the worker."""
        stop_event = stop_event or asyncio.Event()
        log.info(f"--- Outbox Dispatcher {self.worker_id} Started ---")

        while not stop_event.is_set():
            full_batch = False
            try:
                stats = await self.run_once()
                full_batch = stats.claimed >= self.batch_size
            except Exception as e:
                log.exception(f"Dispatcher encountered a critical DB error: {e}.")

            if full_batch:
                # More work is waiting; poll again right away
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass

        log.info(f"--- Outbox Dispatcher {self.worker_id} Stopped ---")


async def list_failed_entries(limit: int = 100, org_id: Optional[str] = None) -> List[OutboxEntry]:
    """Operator view of entries that exhausted their retries, newest failures first."""
    query = OutboxEntry.filter(status=OutboxStatus.FAILED)
    if org_id:
        query = query.filter(org_id=org_id)
    return await query.order_by("-failed_at").limit(limit)


async def outbox_status_counts() -> Dict[str, int]:
    return {status.value: await OutboxEntry.filter(status=status).count() for status in OutboxStatus}


async def start_outbox_dispatcher():
    """Entry point for the dispatcher service."""
    configure_logging()
    await init_db()
    dispatcher = OutboxDispatcher(build_default_sink())
    try:
        await dispatcher.run_forever()
    finally:
        await close_db()

if __name__ == "__main__":
    try:
        asyncio.run(start_outbox_dispatcher())
    except KeyboardInterrupt:
        print("Dispatcher service stopped.")
