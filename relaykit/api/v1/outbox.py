from typing import Optional

from fastapi import APIRouter, Depends, Query

from relaykit.api.dependencies import rate_limited
from relaykit.consumers.outbox_dispatcher import list_failed_entries, outbox_status_counts
from relaykit.schemas.outbox import OutboxEntryResponse
from relaykit.schemas.response import SuccessResponse

router = APIRouter()


@router.get("/failed", response_model=SuccessResponse, dependencies=[Depends(rate_limited("/api/v1/outbox/failed"))])
async def list_failed_endpoint(
    limit: int = Query(100, ge=1, le=500),
    org_id: Optional[str] = Query(None, max_length=64),
):
    """Entries that exhausted their delivery attempts (operator error queue)."""
    entries = await list_failed_entries(limit=limit, org_id=org_id)
    data = [OutboxEntryResponse.from_entry(e).model_dump(mode="json") for e in entries]
    return SuccessResponse(data=data)


@router.get("/stats", response_model=SuccessResponse)
async def outbox_stats_endpoint():
    """Number of outbox entries per status."""
    return SuccessResponse(data=await outbox_status_counts())
