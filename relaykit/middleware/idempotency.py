"""Idempotency middleware: runs a mutating handler at most once per idempotency key."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from relaykit.core.config import (
    IDEMPOTENCY_KEY_MAX_LENGTH,
    IDEMPOTENCY_POLL_INTERVAL_SECONDS,
    IDEMPOTENCY_WAIT_TIMEOUT_SECONDS,
)
from relaykit.core.exceptions import IdempotencyConflict, IdempotencyInFlight, InvalidIdempotencyKey
from relaykit.services.idempotency_store import (
    ClaimOutcome,
    ClaimResult,
    IdempotencyScope,
    IdempotencyStore,
    fingerprint,
)

log = logging.getLogger("relaykit.idempotency")

Handler = Callable[[], Awaitable[Tuple[int, Any]]]

MAX_POLL_DELAY_SECONDS = 1.0

_default_store: Optional[IdempotencyStore] = None


def get_idempotency_store() -> IdempotencyStore:
    global _default_store
    if _default_store is None:
        _default_store = IdempotencyStore()
    return _default_store


@dataclass(frozen=True)
class IdempotentResponse:
    status: int
    body: Any
    replayed: bool = False


def validate_idempotency_key(key: Optional[str]) -> str:
    if key is None or not key.strip():
        raise InvalidIdempotencyKey("Idempotency-Key must not be empty")
    if len(key) > IDEMPOTENCY_KEY_MAX_LENGTH:
        raise InvalidIdempotencyKey(f"Idempotency-Key must be at most {IDEMPOTENCY_KEY_MAX_LENGTH} characters")
    return key.strip()


def _as_json(body: Any) -> Any:
    # Normalize so the first caller sees exactly what a replay will return
    return json.loads(json.dumps(body, default=str))


async def _run_as_owner(store: IdempotencyStore, claim: ClaimResult, key: str, handler: Handler) -> IdempotentResponse:
    try:
        status, body = await handler()
        body = _as_json(body)
    except Exception:
        # Failed attempts are not cached; the client may retry with the same key
        await store.release(claim.record_id, claim.lock_token)
        raise

    if status >= 500:
        await store.release(claim.record_id, claim.lock_token)
        log.info(f"Idempotency key {key}: handler answered {status}, not cached")
        return IdempotentResponse(status, body)

    if not await store.complete(claim.record_id, claim.lock_token, status, body):
        log.warning(f"Idempotency key {key}: lock expired before completion, response not stored")
    return IdempotentResponse(status, body)


async def execute_idempotent(
    key: str,
    method: str,
    path: str,
    request_body: Any,
    handler: Handler,
    org_id: str = "",
    user_id: str = "",
    store: Optional[IdempotencyStore] = None,
    wait_timeout: float = IDEMPOTENCY_WAIT_TIMEOUT_SECONDS,
    poll_interval: float = IDEMPOTENCY_POLL_INTERVAL_SECONDS,
) -> IdempotentResponse:
    """
    Executes handler() at most once successfully for (org, user, method, path, key).

    Replays a stored response without calling the handler, raises
    IdempotencyConflict when the key was used for a different body, and
    waits up to wait_timeout for a concurrent request holding the key
    before raising IdempotencyInFlight.
    """
    key = validate_idempotency_key(key)
    store = store or get_idempotency_store()
    scope = IdempotencyScope(method=method.upper(), path=path, org_id=org_id, user_id=user_id)
    request_hash = fingerprint(method, path, request_body)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, wait_timeout)
    delay = max(poll_interval, 0.001)

    while True:
        claim = await store.claim(scope, key, request_hash)

        if claim.outcome is ClaimOutcome.ACQUIRED:
            return await _run_as_owner(store, claim, key, handler)
        if claim.outcome is ClaimOutcome.REPLAY:
            log.info(f"Idempotency key {key}: replaying stored {claim.status} response")
            return IdempotentResponse(claim.status, claim.response, replayed=True)
        if claim.outcome is ClaimOutcome.CONFLICT:
            raise IdempotencyConflict(key)

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise IdempotencyInFlight(key, retry_after=1)
        await asyncio.sleep(min(delay, remaining))
        delay = min(delay * 2, MAX_POLL_DELAY_SECONDS)
