import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder

from relaykit.api.dependencies import RequestContext, get_request_context, idempotent_response, rate_limited
from relaykit.middleware.rate_limit import rate_limit_headers
from relaykit.schemas.record import RecordCreateRequest, RecordResponse
from relaykit.schemas.response import SuccessResponse
from relaykit.services.rate_limiter import RateLimitResult
from relaykit.services.record_service import create_record, get_record

router = APIRouter()
log = logging.getLogger("relaykit.api")


def _record_data(record, outbox_entry_id=None) -> dict:
    return RecordResponse(
        id=record.id,
        org_id=record.org_id,
        title=record.title,
        data=record.data,
        created_by=record.created_by,
        created_at=str(record.created_at),
        outbox_entry_id=outbox_entry_id,
    ).model_dump(mode="json")


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def create_record_endpoint(
    request: Request,
    request_data: RecordCreateRequest,
    ctx: RequestContext = Depends(get_request_context),
    rate: Optional[RateLimitResult] = Depends(rate_limited("/api/v1/records")),
):
    """
    Creates a record and queues its 'record.created' notification.
    Send an Idempotency-Key header to make client retries safe.
    """
    async def handler():
        try:
            record, entry = await create_record(
                org_id=ctx.org_id,
                title=request_data.title,
                data=request_data.data,
                user_id=ctx.user_id,
            )
        except ValueError as e:
            log.error(f"Value error creating record: {e}")
            return status.HTTP_400_BAD_REQUEST, {"success": False, "error": {"code": "invalid_record", "message": str(e)}}

        log.info(f"Record {record.id} created for org {ctx.org_id}.")
        body = SuccessResponse(data=_record_data(record, entry.id))
        return status.HTTP_201_CREATED, jsonable_encoder(body)

    return await idempotent_response(request, ctx, handler, headers=rate_limit_headers(rate))


@router.get("/{record_id}", response_model=SuccessResponse)
async def get_record_endpoint(
    record_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    rate: Optional[RateLimitResult] = Depends(rate_limited("/api/v1/records/{record_id}")),
):
    """Fetches one record of the caller's organization."""
    record = await get_record(ctx.org_id, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    return SuccessResponse(data=_record_data(record))
