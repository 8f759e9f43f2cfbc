import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from relaykit.core.db import init_db, close_db
from relaykit.api.v1.records import router as records_router
from relaykit.api.v1.webhooks import router as webhooks_router
from relaykit.api.v1.outbox import router as outbox_router
from relaykit.core.config import PROJECT_NAME, VERSION
from relaykit.core.exception_handlers import setup_exception_handlers
from relaykit.core.logging import configure_logging

log = logging.getLogger("relaykit.api")

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    configure_logging()
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db() # Connect to DB and generate schemas
    yield
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers for modular API structure
app.include_router(records_router, prefix="/api/v1/records", tags=["Records"])
app.include_router(webhooks_router, prefix="/api/v1/webhooks", tags=["Inbound Webhooks"])
app.include_router(outbox_router, prefix="/api/v1/outbox", tags=["Outbox Operations"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME}
