import logging
from typing import Dict, Any
from relaykit.core.exceptions import OutboxError
from relaykit.models.outbox import OutboxEntry, OutboxStatus

log = logging.getLogger("relaykit.outbox")


async def enqueue_outbox_entry(
    org_id: str,
    event: str,
    payload: Dict[str, Any],
    conn: Any,
) -> OutboxEntry:
    """
    Creates a new Outbox entry using the provided database connection (transaction).

    CRITICAL: 'conn' must be the transaction that performs the business change,
    so the notification obligation commits or rolls back together with it.
    """
    if conn is None:
        raise OutboxError("Outbox entries must be enqueued inside the domain transaction (conn is required).")
    if not org_id:
        raise OutboxError("Outbox entries require an org_id.")
    if not event:
        raise OutboxError("Outbox entries require an event name.")

    entry = await OutboxEntry.create(
        org_id=org_id,
        event=event,
        payload=payload,
        status=OutboxStatus.PENDING,
        attempt_count=0,
        using_db=conn,
    )
    log.debug(f"Outbox entry {entry.id} ({event}) enqueued for org {org_id}")
    return entry
