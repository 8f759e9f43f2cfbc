import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from fastapi import Depends, Header, Request
from fastapi.responses import JSONResponse

from relaykit.core.config import IDEMPOTENCY_KEY_REQUIRED, get_rate_limit_for_route
from relaykit.core.exceptions import InvalidIdempotencyKey
from relaykit.middleware.idempotency import execute_idempotent
from relaykit.middleware.rate_limit import enforce_rate_limit, rate_limit_bucket
from relaykit.services.rate_limiter import RateLimitResult

IDEMPOTENCY_HEADER = "Idempotency-Key"


@dataclass(frozen=True)
class RequestContext:
    """Tenant and caller identity; authentication upstream sets these headers."""
    org_id: str
    user_id: str


async def get_request_context(
    x_org_id: str = Header(..., min_length=1, max_length=64),
    x_user_id: str = Header("anonymous", max_length=64),
) -> RequestContext:
    return RequestContext(org_id=x_org_id, user_id=x_user_id)


def rate_limited(route: str):
    """Dependency factory: one fixed-window bucket per org, method and route template."""
    async def dependency(
        request: Request,
        ctx: RequestContext = Depends(get_request_context),
    ) -> Optional[RateLimitResult]:
        limit, window_seconds = get_rate_limit_for_route(route, request.method)
        bucket = rate_limit_bucket(ctx.org_id, request.method, route)
        return await enforce_rate_limit(bucket, limit, window_seconds)

    return dependency


async def _request_json(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


async def idempotent_response(
    request: Request,
    ctx: RequestContext,
    handler: Callable[[], Awaitable[Tuple[int, Any]]],
    headers: Optional[dict] = None,
) -> JSONResponse:
    """
    Runs handler through the idempotency middleware when the client sent an
    Idempotency-Key header, and directly otherwise (unless keys are required).
    """
    headers = dict(headers or {})
    key = request.headers.get(IDEMPOTENCY_HEADER)

    if key is None:
        if IDEMPOTENCY_KEY_REQUIRED:
            raise InvalidIdempotencyKey(f"{IDEMPOTENCY_HEADER} header is required for {request.method} requests")
        status, body = await handler()
        return JSONResponse(content=body, status_code=status, headers=headers)

    result = await execute_idempotent(
        key=key,
        method=request.method,
        path=request.url.path,
        request_body=await _request_json(request),
        handler=handler,
        org_id=ctx.org_id,
        user_id=ctx.user_id,
    )
    headers[IDEMPOTENCY_HEADER] = key
    headers["Idempotent-Replayed"] = "true" if result.replayed else "false"
    headers["Cache-Control"] = "no-store"
    return JSONResponse(content=result.body, status_code=result.status, headers=headers)
