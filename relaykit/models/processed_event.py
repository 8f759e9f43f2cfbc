from tortoise import fields, models
import uuid


class ProcessedEvent(models.Model):
    """
    Ledger of externally delivered events (e.g. payment webhooks) that were
    already handled. The unique event_id is what suppresses redeliveries.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    event_id = fields.CharField(max_length=255, unique=True)
    event_type = fields.CharField(max_length=128)
    org_id = fields.CharField(max_length=64, null=True)
    metadata = fields.JSONField(null=True)
    processed_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "processed_events"
