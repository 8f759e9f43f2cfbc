from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware UTC now. Components take a clock callable so tests can freeze time."""
    return datetime.now(timezone.utc)
