from __future__ import annotations

from fastapi import HTTPException, status

from pulsemeter.core.errors import (
    LedgerNotFoundError,
    ModelNotAllowedError,
    PulseMeterError,
    QuotaExceededError,
)
from pulsemeter.services.pulse.ledger import PulseSummary


def pulse_headers(summary: PulseSummary) -> dict[str, str]:
    # Render Pulse balance headers for responses with consistent casing.
    return {
        "X-Pulse-Allocated": str(summary.allocated),
        "X-Pulse-Used": str(summary.used),
        "X-Pulse-Available": str(summary.available),
        "X-Pulse-Limit": str(summary.limit),
        "X-Pulse-Remaining": str(max(summary.limit - summary.used, 0)),
        "X-Pulse-Tier": summary.tier,
        "X-Pulse-Reset-Period": summary.reset_period,
    }


def build_pulse_exception(
    exc: PulseMeterError, *, summary: PulseSummary | None = None
) -> HTTPException:
    # Map metering failures onto stable HTTP error payloads for request handlers.
    headers = pulse_headers(summary) if summary is not None else None
    if isinstance(exc, QuotaExceededError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "code": "PULSE_QUOTA_EXCEEDED",
                "message": "Pulse limit exceeded",
                "limit": exc.limit,
                "used": min(exc.used, exc.limit),
                "requested": exc.requested,
                "remaining": max(exc.limit - exc.used, 0),
            },
            headers=headers,
        )
    if isinstance(exc, ModelNotAllowedError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": "PULSE_MODEL_NOT_ALLOWED",
                "message": f"Model {exc.model} is not available on the {exc.tier} tier",
                "model": exc.model,
                "tier": exc.tier,
            },
            headers=headers,
        )
    if isinstance(exc, LedgerNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": "PULSE_LEDGER_NOT_FOUND",
                "message": "Pulse ledger not found",
                "tenant_id": exc.tenant_id,
            },
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "PULSE_INTERNAL_ERROR", "message": "Pulse metering failed"},
    )
