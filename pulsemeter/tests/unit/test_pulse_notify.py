from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from pulsemeter.core.config import Settings
from pulsemeter.services.pulse.notify import (
    EVENT_QUOTA_EXCEEDED,
    build_billing_signature,
    send_pulse_webhook_event,
)


def _webhook_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "billing_webhook_enabled": True,
        "billing_webhook_url": "https://billing.example.test/hooks/pulse",
        "billing_webhook_secret": "supersecret",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_build_billing_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b'{"event":"test"}'
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_billing_signature(secret, payload) == expected


@pytest.mark.asyncio
async def test_webhook_posts_signed_payload() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(204)

    payload = {"event_type": EVENT_QUOTA_EXCEEDED, "tenant_id": "t-1", "used": 90, "requested": 20}
    result = await send_pulse_webhook_event(
        EVENT_QUOTA_EXCEEDED,
        payload,
        settings=_webhook_settings(),
        transport=httpx.MockTransport(handler),
    )

    assert result.sent is True
    assert result.status_code == 204
    request = captured[0]
    assert request.headers["X-Billing-Event"] == EVENT_QUOTA_EXCEEDED
    assert request.headers["X-Billing-Signature"] == build_billing_signature("supersecret", request.content)
    assert json.loads(request.content) == payload


@pytest.mark.asyncio
async def test_webhook_rejection_is_reported_not_raised() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    result = await send_pulse_webhook_event(
        EVENT_QUOTA_EXCEEDED, {"tenant_id": "t-1"}, settings=_webhook_settings(), transport=transport
    )
    assert result.sent is False
    assert result.status_code == 500


@pytest.mark.asyncio
async def test_webhook_transport_error_is_reported_not_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await send_pulse_webhook_event(
        EVENT_QUOTA_EXCEEDED,
        {"tenant_id": "t-1"},
        settings=_webhook_settings(),
        transport=httpx.MockTransport(handler),
    )
    assert result.sent is False
    assert result.status_code is None


@pytest.mark.asyncio
async def test_webhook_skips_when_disabled_or_unconfigured() -> None:
    disabled = await send_pulse_webhook_event(
        EVENT_QUOTA_EXCEEDED, {}, settings=_webhook_settings(billing_webhook_enabled=False)
    )
    assert disabled.sent is False
    assert disabled.message == "Billing webhook is disabled"

    missing = await send_pulse_webhook_event(
        EVENT_QUOTA_EXCEEDED, {}, settings=_webhook_settings(billing_webhook_secret=None)
    )
    assert missing.sent is False
    assert missing.message == "Billing webhook is not configured"
