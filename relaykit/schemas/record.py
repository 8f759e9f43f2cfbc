from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
import uuid


class RecordCreateRequest(BaseModel):
    """Schema for the record creation request body."""
    title: str = Field(..., min_length=1, max_length=255)
    data: Dict[str, Any] = Field(default_factory=dict)


class RecordResponse(BaseModel):
    id: uuid.UUID
    org_id: str
    title: str
    data: Dict[str, Any]
    created_by: Optional[str] = None
    created_at: str
    outbox_entry_id: Optional[uuid.UUID] = None
