from tortoise import fields, models
import uuid


class Record(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    org_id = fields.CharField(max_length=64)
    title = fields.CharField(max_length=255)
    data = fields.JSONField(default=dict)
    created_by = fields.CharField(max_length=64, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "records"
        indexes = [
            ("org_id", "created_at"),  # Tenant listing, newest first
        ]
