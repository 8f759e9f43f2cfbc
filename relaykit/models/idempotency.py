from tortoise import fields, models
import uuid


class IdempotencyKey(models.Model):
    """
    A previously seen mutating request. While locked_at/lock_token are set the
    request is in flight; once status is set the stored response is replayed.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    org_id = fields.CharField(max_length=64, default="")
    user_id = fields.CharField(max_length=64, default="")
    method = fields.CharField(max_length=10)
    path = fields.CharField(max_length=255)
    key = fields.CharField(max_length=255)
    request_hash = fields.CharField(max_length=64)
    locked_at = fields.DatetimeField(null=True)
    lock_token = fields.CharField(max_length=36, null=True)
    response = fields.JSONField(null=True)
    status = fields.IntField(null=True)
    created_at = fields.DatetimeField()
    completed_at = fields.DatetimeField(null=True)

    class Meta:
        table = "idempotency_keys"
        unique_together = (("org_id", "user_id", "method", "path", "key"),)
        indexes = [
            ("created_at",),  # TTL checks and cleanup
        ]
