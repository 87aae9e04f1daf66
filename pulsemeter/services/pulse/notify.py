from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
from typing import Any, Awaitable, Callable

import httpx

from pulsemeter.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

EVENT_QUOTA_EXCEEDED = "pulse.quota_exceeded"
EVENT_SOFT_CAP_REACHED = "pulse.soft_cap_reached"


@dataclass(frozen=True)
class WebhookDeliveryResult:
    # Summarize webhook delivery attempts for logging and tests.
    sent: bool
    status_code: int | None
    message: str


PulseNotifier = Callable[[str, dict[str, Any]], Awaitable[WebhookDeliveryResult]]


def build_billing_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures for billing webhook payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


async def send_pulse_webhook_event(
    event_type: str,
    payload: dict[str, Any],
    *,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> WebhookDeliveryResult:
    # Post signed quota events with a short timeout; delivery failures are non-fatal.
    resolved = settings or get_settings()
    if not resolved.billing_webhook_enabled:
        return WebhookDeliveryResult(sent=False, status_code=None, message="Billing webhook is disabled")
    if not resolved.billing_webhook_url or not resolved.billing_webhook_secret:
        logger.warning("billing_webhook_missing_config event_type=%s", event_type)
        return WebhookDeliveryResult(sent=False, status_code=None, message="Billing webhook is not configured")

    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Billing-Signature": build_billing_signature(resolved.billing_webhook_secret, body),
        "X-Billing-Event": event_type,
    }
    timeout = resolved.billing_webhook_timeout_ms / 1000.0
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(resolved.billing_webhook_url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("billing_webhook_send_failed event_type=%s", event_type, exc_info=exc)
        return WebhookDeliveryResult(sent=False, status_code=None, message=str(exc))

    if response.status_code >= 400:
        logger.warning(
            "billing_webhook_rejected event_type=%s status=%s", event_type, response.status_code
        )
        return WebhookDeliveryResult(
            sent=False,
            status_code=response.status_code,
            message=f"Webhook responded with {response.status_code}",
        )
    return WebhookDeliveryResult(sent=True, status_code=response.status_code, message="Delivered")
