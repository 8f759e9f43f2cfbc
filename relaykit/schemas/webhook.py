from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class WebhookEvent(BaseModel):
    """Envelope of an inbound provider callback."""
    id: str = Field(..., min_length=1, max_length=200, description="Provider-assigned unique event id.")
    type: str = Field(..., min_length=1, max_length=128)
    org_id: Optional[str] = Field(None, max_length=64)
    data: Dict[str, Any] = Field(default_factory=dict)


class WebhookAck(BaseModel):
    ok: bool = True
    duplicate: bool = False
