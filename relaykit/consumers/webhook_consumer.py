import logging
from typing import Any, Dict

from relaykit.events.outbox_writer import enqueue_outbox_entry
from relaykit.schemas.webhook import WebhookEvent
from relaykit.services.event_ledger import EventHandler, MarkResult, process_external_event

log = logging.getLogger("relaykit.webhooks")

# event type -> handler(payload, conn); handlers run inside the ledger transaction
WEBHOOK_HANDLERS: Dict[str, EventHandler] = {}


def webhook_handler(event_type: str):
    """Registers a handler for one inbound event type."""
    def decorator(func: EventHandler) -> EventHandler:
        WEBHOOK_HANDLERS[event_type] = func
        return func
    return decorator


def ledger_event_id(provider: str, event_id: str) -> str:
    # Providers pick their ids independently, so the ledger key is namespaced
    return f"{provider}:{event_id}"


@webhook_handler("invoice.paid")
async def handle_invoice_paid(payload: Dict[str, Any], conn: Any):
    """Turns a paid invoice into a billing notification for the tenant."""
    org_id = payload.get("org_id")
    invoice = payload.get("data", {})
    if not org_id:
        log.warning(f"invoice.paid without org_id (invoice {invoice.get('id')}), nothing to notify")
        return
    await enqueue_outbox_entry(
        org_id=org_id,
        event="billing.invoice.paid",
        payload={
            "invoice_id": invoice.get("id"),
            "amount_paid": invoice.get("amount_paid"),
            "currency": invoice.get("currency"),
            "source_event_id": payload.get("id"),
        },
        conn=conn,
    )


@webhook_handler("customer.subscription.updated")
async def handle_subscription_updated(payload: Dict[str, Any], conn: Any):
    subscription = payload.get("data", {})
    org_id = payload.get("org_id")
    log.info(f"Subscription {subscription.get('id')} updated to {subscription.get('status')} for org {org_id}")
    if org_id:
        await enqueue_outbox_entry(
            org_id=org_id,
            event="billing.subscription.updated",
            payload={
                "subscription_id": subscription.get("id"),
                "status": subscription.get("status"),
                "source_event_id": payload.get("id"),
            },
            conn=conn,
        )


async def handle_inbound_webhook(provider: str, event: WebhookEvent) -> MarkResult:
    """
    Runs the ledger check and, for a first delivery, the event's handler in
    the same transaction. Unknown event types are recorded and acknowledged.
    """
    handler = WEBHOOK_HANDLERS.get(event.type)
    if handler is None:
        log.info(f"Unhandled {provider} event type {event.type} (logged only)")

    result = await process_external_event(
        event_id=ledger_event_id(provider, event.id),
        event_type=event.type,
        payload=event.model_dump(),
        handler=handler,
        org_id=event.org_id,
        metadata={"provider": provider},
    )
    if result.is_new:
        log.info(f"{provider} event {event.id} ({event.type}) processed successfully")
    else:
        log.info(f"{provider} event {event.id} already processed, skipping")
    return result
