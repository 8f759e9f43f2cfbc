import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from relaykit.consumers.webhook_consumer import handle_inbound_webhook
from relaykit.core.config import WEBHOOK_PROVIDERS, WEBHOOK_TOLERANCE_SEC, get_webhook_secret
from relaykit.core.signing import verify_signature
from relaykit.schemas.webhook import WebhookAck, WebhookEvent

router = APIRouter()
log = logging.getLogger("relaykit.webhooks")

SIGNATURE_HEADER = "X-Webhook-Signature"


@router.post("/{provider}", response_model=WebhookAck)
async def receive_webhook(provider: str, request: Request):
    """
    Verifies and records a provider callback. Redeliveries of an already
    processed event id are acknowledged with 200 so the sender stops retrying.
    """
    secret = get_webhook_secret(provider)
    if provider not in WEBHOOK_PROVIDERS or not secret:
        raise HTTPException(status_code=404, detail=f"Unknown webhook provider: {provider}")

    raw_body = await request.body()
    verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), secret, WEBHOOK_TOLERANCE_SEC)

    try:
        event = WebhookEvent.model_validate_json(raw_body)
    except ValidationError as e:
        log.warning(f"Malformed {provider} webhook payload: {e.error_count()} errors")
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    result = await handle_inbound_webhook(provider, event)
    return WebhookAck(ok=True, duplicate=not result.is_new)
