"""Idempotency-key store.

Rows in idempotency_keys move through three shapes:

* locked   - lock_token/locked_at set, no status: a request owns execution
* complete - status/response set, lock cleared: later requests replay it
* absent   - never seen, released after a failed attempt, or expired

Every transition is a unique-constrained insert or an UPDATE/DELETE
conditioned on the lock_token the caller holds, so ownership is decided by
the database and not by any process-local state.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from tortoise.exceptions import IntegrityError

from relaykit.core.clock import utcnow
from relaykit.core.config import IDEMPOTENCY_LOCK_TIMEOUT_SECONDS, IDEMPOTENCY_TTL_HOURS
from relaykit.models.idempotency import IdempotencyKey

log = logging.getLogger("relaykit.idempotency")

# Insert/re-read rounds before a claim gives up and reports the key as busy
MAX_CLAIM_ROUNDS = 3


class ClaimOutcome(str, Enum):
    ACQUIRED = "ACQUIRED"
    REPLAY = "REPLAY"
    IN_FLIGHT = "IN_FLIGHT"
    CONFLICT = "CONFLICT"


@dataclass(frozen=True)
class IdempotencyScope:
    method: str
    path: str
    org_id: str = ""
    user_id: str = ""


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    record_id: Optional[uuid.UUID] = None
    lock_token: Optional[str] = None
    status: Optional[int] = None
    response: Any = None


def fingerprint(method: str, path: str, body: Any) -> str:
    """SHA-256 over canonical JSON of the request, independent of dict key order."""
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    canonical = json.dumps(
        {"method": method.upper(), "path": path, "body": body},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyStore:
    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        lock_timeout_seconds: float = IDEMPOTENCY_LOCK_TIMEOUT_SECONDS,
        ttl_hours: float = IDEMPOTENCY_TTL_HOURS,
    ):
        self._clock = clock
        self.lock_timeout = timedelta(seconds=lock_timeout_seconds)
        self.ttl = timedelta(hours=ttl_hours)

    def _scope_filter(self, scope: IdempotencyScope, key: str):
        return dict(org_id=scope.org_id, user_id=scope.user_id, method=scope.method, path=scope.path, key=key)

    async def get(self, scope: IdempotencyScope, key: str) -> Optional[IdempotencyKey]:
        return await IdempotencyKey.get_or_none(**self._scope_filter(scope, key))

    async def claim(self, scope: IdempotencyScope, key: str, request_hash: str) -> ClaimResult:
        """Tries to take exclusive execution of (scope, key); see ClaimOutcome for the answers."""
        for _ in range(MAX_CLAIM_ROUNDS):
            now = self._clock()
            token = str(uuid.uuid4())
            try:
                row = await IdempotencyKey.create(
                    **self._scope_filter(scope, key),
                    request_hash=request_hash,
                    locked_at=now,
                    lock_token=token,
                    created_at=now,
                )
                return ClaimResult(ClaimOutcome.ACQUIRED, record_id=row.id, lock_token=token)
            except IntegrityError:
                pass

            row = await self.get(scope, key)
            if row is None:
                # Released or purged between our insert and read
                continue

            # An expired response counts as absent, whatever body it was stored for
            if row.status is not None and row.created_at <= now - self.ttl:
                await IdempotencyKey.filter(id=row.id, status__isnull=False).delete()
                log.info(f"Expired idempotency key {key} purged, executing again")
                continue

            if row.request_hash != request_hash:
                return ClaimResult(ClaimOutcome.CONFLICT, record_id=row.id)

            if row.status is not None:
                return ClaimResult(
                    ClaimOutcome.REPLAY, record_id=row.id, status=row.status, response=row.response
                )

            if row.locked_at is not None and row.locked_at > now - self.lock_timeout:
                return ClaimResult(ClaimOutcome.IN_FLIGHT, record_id=row.id)

            # Abandoned: owner crashed or was cancelled before completing
            if row.lock_token is None:
                stale = IdempotencyKey.filter(id=row.id, status__isnull=True, lock_token__isnull=True)
            else:
                stale = IdempotencyKey.filter(id=row.id, status__isnull=True, lock_token=row.lock_token)
            if await stale.update(locked_at=now, lock_token=token, created_at=now):
                log.warning(f"Re-claimed stale idempotency key {key} (locked at {row.locked_at})")
                return ClaimResult(ClaimOutcome.ACQUIRED, record_id=row.id, lock_token=token)

        return ClaimResult(ClaimOutcome.IN_FLIGHT)

    async def complete(self, record_id: uuid.UUID, lock_token: str, status: int, response: Any) -> bool:
        """Stores the response and clears the lock. False if the claim was lost meanwhile."""
        updated = await IdempotencyKey.filter(id=record_id, lock_token=lock_token).update(
            response=response,
            status=status,
            locked_at=None,
            lock_token=None,
            completed_at=self._clock(),
        )
        return updated > 0

    async def release(self, record_id: uuid.UUID, lock_token: str) -> bool:
        """Drops an unfinished claim so the client can retry the same key."""
        deleted = await IdempotencyKey.filter(
            id=record_id, lock_token=lock_token, status__isnull=True
        ).delete()
        return deleted > 0
