from tortoise.transactions import in_transaction
from typing import Any, Dict, Optional, Tuple
from relaykit.models.outbox import OutboxEntry
from relaykit.models.record import Record
from relaykit.events.outbox_writer import enqueue_outbox_entry
from uuid import UUID


async def create_record(org_id: str, title: str, data: Optional[Dict[str, Any]] = None, user_id: Optional[str] = None) -> Tuple[Record, OutboxEntry]:
    """
    Creates the Record and its 'record.created' Outbox entry atomically.
    If anything fails, neither the record nor the notification survives.
    """
    if not org_id:
        raise ValueError("org_id is required.")
    if not title or not title.strip():
        raise ValueError("Record title must not be empty.")

    async with in_transaction() as conn:
        record = await Record.create(
            org_id=org_id,
            title=title.strip(),
            data=data or {},
            created_by=user_id,
            using_db=conn,
        )

        entry = await enqueue_outbox_entry(
            org_id=org_id,
            event="record.created",
            payload={
                "id": str(record.id),
                "org_id": org_id,
                "title": record.title,
                "created_by": user_id,
            },
            conn=conn,
        )

    return record, entry


async def get_record(org_id: str, record_id: UUID) -> Optional[Record]:
    """Fetches a record within the caller's tenant."""
    return await Record.get_or_none(id=record_id, org_id=org_id)
