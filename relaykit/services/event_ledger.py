import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from relaykit.core.exceptions import DuplicateExternalEvent
from relaykit.models.processed_event import ProcessedEvent

log = logging.getLogger("relaykit.ledger")

EventHandler = Callable[[Dict[str, Any], Any], Awaitable[None]]


@dataclass(frozen=True)
class MarkResult:
    is_new: bool


async def mark_processed_if_new(
    event_id: str,
    event_type: str,
    org_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    conn: Any = None,
) -> MarkResult:
    """
    Records event_id in the ledger unless it is already there.

    With conn, the mark belongs to the caller's transaction and commits or
    rolls back with the side effects it guards. A concurrent delivery that
    inserted first surfaces as DuplicateExternalEvent so that transaction
    unwinds; process_external_event turns it into is_new=False.
    """
    if not event_id:
        raise ValueError("event_id is required")

    if await ProcessedEvent.filter(event_id=event_id).using_db(conn).exists():
        log.info(f"Idempotency: Event {event_id} already processed.")
        return MarkResult(is_new=False)

    try:
        await ProcessedEvent.create(
            event_id=event_id,
            event_type=event_type,
            org_id=org_id,
            metadata=metadata or {},
            using_db=conn,
        )
    except IntegrityError:
        if conn is not None:
            raise DuplicateExternalEvent(event_id)
        log.info(f"Idempotency: Event {event_id} recorded concurrently.")
        return MarkResult(is_new=False)

    log.info(f"Event {event_id} ({event_type}) marked as processed.")
    return MarkResult(is_new=True)


async def process_external_event(
    event_id: str,
    event_type: str,
    payload: Dict[str, Any],
    handler: Optional[EventHandler] = None,
    org_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> MarkResult:
    """
    Marks the event and applies its side effects in one transaction.

    handler(payload, conn) runs only for a new event. If it raises, the mark
    rolls back with it so the sender's next retry is processed again.
    """
    try:
        async with in_transaction() as conn:
            result = await mark_processed_if_new(event_id, event_type, org_id, metadata, conn=conn)
            if result.is_new and handler is not None:
                await handler(payload, conn)
    except DuplicateExternalEvent:
        log.info(f"Idempotency: Event {event_id} lost the race to a concurrent delivery.")
        return MarkResult(is_new=False)
    return result
