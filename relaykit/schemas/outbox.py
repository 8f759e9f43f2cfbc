from pydantic import BaseModel
from typing import Any, Dict, Optional
import uuid


class OutboxEntryResponse(BaseModel):
    """Operator view of one outbox entry."""
    id: uuid.UUID
    org_id: str
    event: str
    status: str
    attempt_count: int
    error: Optional[str] = None
    payload: Dict[str, Any]
    created_at: str
    failed_at: Optional[str] = None
    delivered_at: Optional[str] = None

    @classmethod
    def from_entry(cls, entry) -> "OutboxEntryResponse":
        return cls(
            id=entry.id,
            org_id=entry.org_id,
            event=entry.event,
            status=entry.status.value,
            attempt_count=entry.attempt_count,
            error=entry.error,
            payload=entry.payload,
            created_at=str(entry.created_at),
            failed_at=str(entry.failed_at) if entry.failed_at else None,
            delivered_at=str(entry.delivered_at) if entry.delivered_at else None,
        )
