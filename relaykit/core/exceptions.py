"""Error taxonomy for the delivery and request-safety core.

Lock contention and uniqueness conflicts are handled as control flow inside
the components; the classes below are what crosses a component boundary.
"""

from typing import Optional


class RelayKitError(Exception):
    """Base class for every error raised by relaykit."""

    code = "relaykit_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class RateLimitExceeded(RelayKitError):
    code = "rate_limit_exceeded"
    status_code = 429

    def __init__(self, bucket: str, limit: int, retry_after: int):
        super().__init__(f"Rate limit of {limit} exceeded for bucket {bucket}")
        self.bucket = bucket
        self.limit = limit
        self.retry_after = retry_after


class RateLimiterUnavailable(RelayKitError):
    """The limiter could not reach storage and the fail mode is 'closed'."""

    code = "rate_limiter_unavailable"
    status_code = 503


class InvalidIdempotencyKey(RelayKitError):
    code = "invalid_idempotency_key"
    status_code = 400


class IdempotencyConflict(RelayKitError):
    """Same idempotency key reused with a different request."""

    code = "idempotency_conflict"
    status_code = 422

    def __init__(self, key: str):
        super().__init__(f"Idempotency key {key!r} was already used with a different request")
        self.key = key


class IdempotencyInFlight(RelayKitError):
    """A request with the same key is still executing."""

    code = "idempotency_in_flight"
    status_code = 409

    def __init__(self, key: str, retry_after: int = 1):
        super().__init__(f"A request with idempotency key {key!r} is still in progress")
        self.key = key
        self.retry_after = retry_after


class OutboxError(RelayKitError):
    code = "outbox_error"


class DeliveryTransientFailure(RelayKitError):
    """A sink rejected or failed a delivery; the dispatcher schedules a retry."""

    code = "delivery_failed"

    def __init__(self, entry_id, reason: str, status_code: Optional[int] = None):
        super().__init__(f"Delivery of {entry_id} failed: {reason}")
        self.entry_id = entry_id
        self.reason = reason
        self.http_status = status_code


class DeliveryPermanentFailure(DeliveryTransientFailure):
    """Retry cap reached. Recorded on the outbox row, only visible to operators."""

    code = "delivery_failed_permanently"


class DuplicateExternalEvent(RelayKitError):
    """Raised inside a transaction when a concurrent delivery already recorded the event."""

    code = "duplicate_event"
    status_code = 200

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} was already processed")
        self.event_id = event_id


class WebhookVerificationError(RelayKitError):
    code = "invalid_signature"
    status_code = 401

    def __init__(self, reason: str, status_code: int = 401):
        super().__init__(reason)
        self.status_code = status_code
