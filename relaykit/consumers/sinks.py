"""Delivery sinks used by the outbox dispatcher.

A sink receives the outbox entry id with every delivery. Receivers use it as
their own idempotency key, because a crash between a successful delivery and
the dispatcher recording it leads to the same entry being delivered again.
"""

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol
from uuid import UUID

import httpx

from relaykit.core.config import DELIVERY_TIMEOUT_SECONDS, OUTBOX_SIGNING_SECRET, OUTBOX_WEBHOOK_URL
from relaykit.core.signing import create_signature_header

log = logging.getLogger("relaykit.sinks")

SIGNATURE_HEADER = "X-Relay-Signature"


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: Optional[str] = None
    status_code: Optional[int] = None
    latency_ms: int = 0


class DeliverySink(Protocol):
    async def deliver(self, entry_id: UUID, event: str, payload: Dict[str, Any]) -> DeliveryResult:
        ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class WebhookSink:
    """POSTs signed JSON to a webhook URL. Any 2xx counts as delivered."""

    def __init__(
        self,
        url: str,
        secret: str = OUTBOX_SIGNING_SECRET,
        timeout: float = DELIVERY_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.secret = secret
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def deliver(self, entry_id: UUID, event: str, payload: Dict[str, Any]) -> DeliveryResult:
        started = time.monotonic()
        body = json.dumps(
            {
                "id": str(entry_id),
                "event": event,
                "payload": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": str(entry_id),
            SIGNATURE_HEADER: create_signature_header(body, self.secret),
        }

        try:
            response = await self._client.post(self.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            log.error(f"Delivery error for entry {entry_id}: {e!r}")
            return DeliveryResult(success=False, error=f"{type(e).__name__}: {e}", latency_ms=_elapsed_ms(started))

        latency_ms = _elapsed_ms(started)
        if not response.is_success:
            error = f"HTTP {response.status_code}: {response.text[:500]}"
            log.error(f"Delivery failed for entry {entry_id}: {error}")
            return DeliveryResult(success=False, error=error, status_code=response.status_code, latency_ms=latency_ms)

        log.info(f"Entry {entry_id} ({event}) delivered with HTTP {response.status_code} in {latency_ms}ms")
        return DeliveryResult(success=True, status_code=response.status_code, latency_ms=latency_ms)

    async def aclose(self):
        await self._client.aclose()


class LoggingSink:
    """Acknowledges every entry after logging it; used when no webhook URL is configured."""

    async def deliver(self, entry_id: UUID, event: str, payload: Dict[str, Any]) -> DeliveryResult:
        log.info(f"EXTERNAL NOTIFICATION (simulated): {event} id={entry_id} keys={sorted(payload)}")
        return DeliveryResult(success=True)


class RoutingSink:
    """
    Routes entries to in-process async handlers by event type, the way a
    message broker would fan them out to consumers. A handler that raises
    makes the delivery fail and the dispatcher retry it.
    """

    def __init__(self, handlers: Optional[Dict[str, Callable[[UUID, Dict[str, Any]], Awaitable[None]]]] = None):
        self.handlers = dict(handlers or {})

    def register(self, event: str, handler: Callable[[UUID, Dict[str, Any]], Awaitable[None]]):
        self.handlers[event] = handler

    async def deliver(self, entry_id: UUID, event: str, payload: Dict[str, Any]) -> DeliveryResult:
        handler = self.handlers.get(event)
        if handler is None:
            log.warning(f"No handler found for event type: {event} (entry {entry_id} acknowledged)")
            return DeliveryResult(success=True)
        await handler(entry_id, payload)
        return DeliveryResult(success=True)


def build_default_sink() -> DeliverySink:
    if OUTBOX_WEBHOOK_URL:
        return WebhookSink(OUTBOX_WEBHOOK_URL)
    log.warning("No OUTBOX_WEBHOOK_URL configured, deliveries are simulated")
    return LoggingSink()
