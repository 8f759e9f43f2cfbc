# relaykit/models/__init__.py
from .idempotency import IdempotencyKey
from .outbox import OutboxEntry, OutboxStatus
from .processed_event import ProcessedEvent
from .rate_limit import RateLimitBucket
from .record import Record

# Export all models
__all__ = [
    "IdempotencyKey",
    "OutboxEntry",
    "OutboxStatus",
    "ProcessedEvent",
    "RateLimitBucket",
    "Record",
]
