from tortoise import fields, models


class RateLimitBucket(models.Model):
    """Admitted-request counter for one bucket in one fixed window."""
    id = fields.IntField(primary_key=True)
    bucket = fields.CharField(max_length=255) # e.g., 'org:<id>:POST:/api/v1/records'
    window_start = fields.DatetimeField()
    count = fields.IntField(default=0)

    class Meta:
        table = "rate_limit_buckets"
        unique_together = (("bucket", "window_start"),)
