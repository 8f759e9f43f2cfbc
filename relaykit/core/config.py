import os

# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/relaykit_db")

# Application Metadata
PROJECT_NAME = "RelayKit Delivery Core"
VERSION = "1.0.0"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Outbox Dispatcher Configuration
POLLING_INTERVAL = float(os.getenv("POLLING_INTERVAL", 1)) # Dispatcher checks for due entries every N seconds
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", 8)) # Delivery attempts before an entry is marked FAILED
BATCH_SIZE = int(os.getenv("BATCH_SIZE", 50)) # How many entries to claim per poll
OUTBOX_LEASE_SECONDS = int(os.getenv("OUTBOX_LEASE_SECONDS", 60)) # How long a claim keeps other dispatchers away
BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", 60))
BACKOFF_MAX_SECONDS = float(os.getenv("BACKOFF_MAX_SECONDS", 86400))
BACKOFF_JITTER = float(os.getenv("BACKOFF_JITTER", 0.2))

# Delivery sink (no URL means deliveries are only logged)
OUTBOX_WEBHOOK_URL = os.getenv("OUTBOX_WEBHOOK_URL")
OUTBOX_SIGNING_SECRET = os.getenv("OUTBOX_SIGNING_SECRET", "change-me")
DELIVERY_TIMEOUT_SECONDS = float(os.getenv("DELIVERY_TIMEOUT_SECONDS", 30))

# Idempotency Configuration
IDEMPOTENCY_LOCK_TIMEOUT_SECONDS = int(os.getenv("IDEMPOTENCY_LOCK_TIMEOUT_SECONDS", 30)) # After this a held lock counts as abandoned
IDEMPOTENCY_WAIT_TIMEOUT_SECONDS = float(os.getenv("IDEMPOTENCY_WAIT_TIMEOUT_SECONDS", 5)) # 0 = answer 409 immediately
IDEMPOTENCY_POLL_INTERVAL_SECONDS = float(os.getenv("IDEMPOTENCY_POLL_INTERVAL_SECONDS", 0.05))
IDEMPOTENCY_TTL_HOURS = int(os.getenv("IDEMPOTENCY_TTL_HOURS", 24))
IDEMPOTENCY_KEY_REQUIRED = os.getenv("IDEMPOTENCY_KEY_REQUIRED", "false").lower() in ("1", "true", "yes")
IDEMPOTENCY_KEY_MAX_LENGTH = 255

# Rate Limiting Configuration
RATE_LIMIT_FAIL_MODE = os.getenv("RATE_LIMIT_FAIL_MODE", "closed") # "closed" rejects on storage errors, "open" admits
RATE_LIMIT_DEFAULT_PER_MIN = int(os.getenv("RATE_LIMIT_DEFAULT_PER_MIN", 60))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", 60))
MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# Per-route limits: route template -> method -> (limit, window seconds)
RATE_LIMIT_ROUTES = {
    "/api/v1/records": {
        "GET": (120, 60),
        "POST": (60, 60),
    },
    "/api/v1/records/{record_id}": {
        "GET": (120, 60),
    },
    "/api/v1/outbox/failed": {
        "GET": (30, 60),
    },
}

# Inbound Webhooks
WEBHOOK_TOLERANCE_SEC = int(os.getenv("WEBHOOK_TOLERANCE_SEC", 300))
WEBHOOK_PROVIDERS = tuple(
    p.strip() for p in os.getenv("WEBHOOK_PROVIDERS", "stripe,n8n").split(",") if p.strip()
)


def get_webhook_secret(provider: str):
    """Looks up WEBHOOK_SECRET_<PROVIDER>; None when the provider is not configured."""
    return os.getenv(f"WEBHOOK_SECRET_{provider.upper()}")


def get_rate_limit_for_route(route: str, method: str):
    """Returns (limit, window_seconds) for a route template and HTTP method."""
    method = method.upper()
    route_config = RATE_LIMIT_ROUTES.get(route, {})
    if method in route_config:
        return route_config[method]

    # Fallback to default based on method
    if method in MUTATING_METHODS:
        return 60, RATE_LIMIT_WINDOW_SECONDS
    return RATE_LIMIT_DEFAULT_PER_MIN, RATE_LIMIT_WINDOW_SECONDS
