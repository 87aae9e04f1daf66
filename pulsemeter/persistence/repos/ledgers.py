from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsemeter.domain.models import PulseLedger, PulseMemberUsage


async def get_ledger(session: AsyncSession, tenant_id: str) -> PulseLedger | None:
    result = await session.execute(select(PulseLedger).where(PulseLedger.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def lock_ledger(session: AsyncSession, tenant_id: str) -> PulseLedger | None:
    # Re-read under a row lock and refresh any stale identity-map copy.
    stmt = (
        select(PulseLedger)
        .where(PulseLedger.tenant_id == tenant_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def new_ledger(
    tenant_id: str,
    *,
    allocated: int,
    tier: str,
    reset_period: str,
    now: datetime,
) -> PulseLedger:
    # New ledgers start with limit == allocation and an empty allow-list (tier applies).
    return PulseLedger(
        tenant_id=tenant_id,
        allocated_pulses=allocated,
        used_pulses=0,
        pulse_limit=allocated,
        previous_used_pulses=0,
        model_tier=tier,
        allowed_models=[],
        reset_period=reset_period,
        last_reset_at=now,
    )


async def list_ledger_ids(session: AsyncSession, *, reset_period: str | None = None) -> list[str]:
    stmt = select(PulseLedger.tenant_id).order_by(PulseLedger.tenant_id.asc())
    if reset_period is not None:
        stmt = stmt.where(PulseLedger.reset_period == reset_period)
    result = await session.execute(stmt)
    return [str(tenant_id) for tenant_id in result.scalars().all()]


async def get_or_create_member_usage(
    session: AsyncSession, tenant_id: str, actor_id: str
) -> PulseMemberUsage:
    # Member rows are only touched while the tenant ledger row is locked.
    result = await session.execute(
        select(PulseMemberUsage).where(
            PulseMemberUsage.tenant_id == tenant_id,
            PulseMemberUsage.actor_id == actor_id,
        )
    )
    member = result.scalar_one_or_none()
    if member is None:
        member = PulseMemberUsage(
            tenant_id=tenant_id,
            actor_id=actor_id,
            used_pulses=0,
            used_tokens=0,
            requests=0,
        )
        session.add(member)
    return member


async def list_member_usage(session: AsyncSession, tenant_id: str) -> list[PulseMemberUsage]:
    result = await session.execute(
        select(PulseMemberUsage)
        .where(PulseMemberUsage.tenant_id == tenant_id)
        .order_by(PulseMemberUsage.actor_id.asc())
    )
    return list(result.scalars().all())
