from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulsemeter.domain.models import AuditEvent, PulseLedger, PulseMemberUsage
from pulsemeter.persistence.repos.ledgers import new_ledger
from pulsemeter.services.pulse.notify import WebhookDeliveryResult


# Friday mid-month keeps day, week and month windows distinct.
FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def tenant_id(prefix: str = "t-pulse") -> str:
    # Generate unique tenant ids so assertions never see another test's rows.
    return f"{prefix}-{uuid4().hex}"


class FrozenClock:
    # Callable time provider that tests can move forward explicitly.
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class RecordingNotifier:
    # Capture quota notifications instead of posting webhooks.
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, event_type: str, payload: dict[str, Any]) -> WebhookDeliveryResult:
        self.events.append((event_type, payload))
        return WebhookDeliveryResult(sent=True, status_code=200, message="Delivered")

    def event_types(self) -> list[str]:
        return [event_type for event_type, _payload in self.events]


async def seed_ledger(
    session_factory: async_sessionmaker[AsyncSession],
    tenant: str,
    *,
    allocated: int = 10000,
    used: int = 0,
    limit: int | None = None,
    tier: str = "standard",
    reset_period: str = "monthly",
    allowed_models: Iterable[str] | None = None,
    last_reset_at: datetime = FIXED_NOW,
) -> None:
    # Insert a ledger directly so scenarios can start from any balance.
    async with session_factory() as session:
        ledger = new_ledger(
            tenant,
            allocated=allocated,
            tier=tier,
            reset_period=reset_period,
            now=last_reset_at,
        )
        ledger.used_pulses = used
        ledger.pulse_limit = allocated if limit is None else limit
        ledger.allowed_models = list(allowed_models or [])
        session.add(ledger)
        await session.commit()


async def load_ledger(
    session_factory: async_sessionmaker[AsyncSession], tenant: str
) -> PulseLedger | None:
    async with session_factory() as session:
        return await session.get(PulseLedger, tenant)


async def load_member(
    session_factory: async_sessionmaker[AsyncSession], tenant: str, actor_id: str
) -> PulseMemberUsage | None:
    async with session_factory() as session:
        return await session.get(PulseMemberUsage, (tenant, actor_id))


async def audit_event_types(
    session_factory: async_sessionmaker[AsyncSession], tenant: str | None
) -> list[str]:
    async with session_factory() as session:
        stmt = select(AuditEvent.event_type).order_by(AuditEvent.id.asc())
        if tenant is None:
            stmt = stmt.where(AuditEvent.tenant_id.is_(None))
        else:
            stmt = stmt.where(AuditEvent.tenant_id == tenant)
        result = await session.execute(stmt)
        return list(result.scalars().all())
