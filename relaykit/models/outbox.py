from enum import Enum
from tortoise import fields, models
import uuid


class OutboxStatus(str, Enum):
    PENDING = "PENDING"  # Waiting for its first attempt or for next_retry_at
    DELIVERED = "DELIVERED"  # Terminal: the sink acknowledged it
    FAILED = "FAILED"  # Terminal: retry cap reached, left for operators


class OutboxEntry(models.Model):
    """
    One notification obligation, written in the same transaction as the
    business change that produced it. Only the dispatcher mutates it afterwards.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    org_id = fields.CharField(max_length=64)
    event = fields.CharField(max_length=128) # e.g., 'record.created'
    payload = fields.JSONField()
    status = fields.CharEnumField(OutboxStatus, default=OutboxStatus.PENDING)
    attempt_count = fields.IntField(default=0)
    next_retry_at = fields.DatetimeField(null=True) # NULL means ready now
    delivered_at = fields.DatetimeField(null=True)
    failed_at = fields.DatetimeField(null=True)
    error = fields.TextField(null=True) # Last failure description
    # Claim/lease held by the dispatcher currently delivering the entry
    claimed_by = fields.CharField(max_length=64, null=True)
    lease_expires_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "notifications_outbox"
        indexes = [
            ("status", "next_retry_at"),  # Dispatcher polling query
            ("created_at",),              # Oldest-first ordering
            ("org_id",),
        ]
