from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulsemeter.domain.models import AuditEvent
from pulsemeter.persistence.db import get_sessionmaker


logger = logging.getLogger(__name__)

# Token counts are metering data, so match credential-shaped keys rather than "token".
_SENSITIVE_KEY_PATTERNS = [
    "api_key",
    "authorization",
    "access_token",
    "id_token",
    "refresh_token",
    "secret",
    "password",
    "signature",
]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner so metering outcomes are never masked.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        factory = session_factory or get_sessionmaker()
        async with factory() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                _log_failure(event_type, request_id, exc, best_effort=best_effort)
                if not best_effort:
                    raise
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(event)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        _log_failure(event_type, request_id, exc, best_effort=best_effort)
        if not best_effort:
            raise


def _log_failure(event_type: str, request_id: str | None, exc: Exception, *, best_effort: bool) -> None:
    level = logger.warning if best_effort else logger.error
    level(
        "audit_event_write_failed event_type=%s request_id=%s",
        event_type,
        request_id,
        exc_info=exc,
    )
