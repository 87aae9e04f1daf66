from __future__ import annotations

import asyncio
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Callable

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulsemeter.domain.models import PulseMemberUsage
from pulsemeter.persistence.repos.ledgers import list_ledger_ids, lock_ledger
from pulsemeter.services.audit import record_event
from pulsemeter.services.pulse.clock import ensure_utc, period_start, utc_now
from pulsemeter.services.pulse.tiers import parse_reset_period


logger = logging.getLogger(__name__)

LockProvider = Callable[[str], asyncio.Lock]


@dataclass
class ResetSummary:
    # Per-ledger outcome of one reset batch; failures are retried by the next run.
    period: str | None
    reset_at: datetime
    reset_tenant_ids: list[str] = field(default_factory=list)
    skipped_tenant_ids: list[str] = field(default_factory=list)
    failed_tenant_ids: list[str] = field(default_factory=list)

    @property
    def reset_count(self) -> int:
        return len(self.reset_tenant_ids)


async def _reset_ledger(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: str,
    *,
    now: datetime,
    due_only: bool,
) -> bool:
    # Each ledger resets in its own transaction so a failure never blocks the batch.
    async with session_factory() as session:
        async with session.begin():
            ledger = await lock_ledger(session, tenant_id)
            if ledger is None:
                return False
            if due_only and ensure_utc(ledger.last_reset_at) >= period_start(ledger.reset_period, now):
                return False
            if ensure_utc(ledger.last_reset_at) < period_start(ledger.reset_period, now):
                # A rerun inside the same window keeps the prior period snapshot.
                ledger.previous_used_pulses = int(ledger.used_pulses)
            ledger.used_pulses = 0
            ledger.last_reset_at = now
            ledger.soft_cap_notified_at = None
            await session.execute(
                update(PulseMemberUsage)
                .where(PulseMemberUsage.tenant_id == tenant_id)
                .values(used_pulses=0, used_tokens=0, requests=0)
            )
    return True


async def _run_batch(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_ids: list[str],
    summary: ResetSummary,
    *,
    due_only: bool,
    lock_provider: LockProvider | None,
) -> None:
    for tenant_id in tenant_ids:
        lock = lock_provider(tenant_id) if lock_provider is not None else nullcontext()
        try:
            async with lock:
                changed = await _reset_ledger(
                    session_factory, tenant_id, now=summary.reset_at, due_only=due_only
                )
        except SQLAlchemyError:
            logger.exception("pulse_reset_failed tenant=%s period=%s", tenant_id, summary.period)
            summary.failed_tenant_ids.append(tenant_id)
            continue
        if changed:
            summary.reset_tenant_ids.append(tenant_id)
        else:
            summary.skipped_tenant_ids.append(tenant_id)


async def reset_usage(
    session_factory: async_sessionmaker[AsyncSession],
    period: str,
    *,
    now: datetime | None = None,
    lock_provider: LockProvider | None = None,
) -> ResetSummary:
    """Zero `used` on every ledger with the given reset period.

    The prior value is kept in `previous_used_pulses`. Ledgers reset
    independently; re-running after a partial failure resumes per ledger.
    """
    resolved_period = parse_reset_period(period).value
    summary = ResetSummary(period=resolved_period, reset_at=now or utc_now())
    async with session_factory() as session:
        tenant_ids = await list_ledger_ids(session, reset_period=resolved_period)
    await _run_batch(session_factory, tenant_ids, summary, due_only=False, lock_provider=lock_provider)
    await _finish(session_factory, summary, event_type="pulse.usage_reset")
    return summary


async def reset_due_ledgers(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: datetime | None = None,
    lock_provider: LockProvider | None = None,
) -> ResetSummary:
    # Catch up on ledgers whose last reset predates their current period window.
    summary = ResetSummary(period=None, reset_at=now or utc_now())
    async with session_factory() as session:
        tenant_ids = await list_ledger_ids(session)
    await _run_batch(session_factory, tenant_ids, summary, due_only=True, lock_provider=lock_provider)
    if summary.reset_tenant_ids or summary.failed_tenant_ids:
        await _finish(session_factory, summary, event_type="pulse.usage_reset_catchup")
    return summary


async def _finish(
    session_factory: async_sessionmaker[AsyncSession],
    summary: ResetSummary,
    *,
    event_type: str,
) -> None:
    level = logging.WARNING if summary.failed_tenant_ids else logging.INFO
    logger.log(
        level,
        "pulse_reset_complete period=%s reset=%s skipped=%s failed=%s",
        summary.period or "due",
        summary.reset_count,
        len(summary.skipped_tenant_ids),
        len(summary.failed_tenant_ids),
    )
    await record_event(
        session_factory=session_factory,
        occurred_at=summary.reset_at,
        tenant_id=None,
        actor_type="system",
        actor_id="pulse_reset_scheduler",
        event_type=event_type,
        outcome="failure" if summary.failed_tenant_ids else "success",
        resource_type="pulse_ledger",
        metadata={
            "period": summary.period,
            "reset": summary.reset_count,
            "skipped": len(summary.skipped_tenant_ids),
            "failed_tenant_ids": summary.failed_tenant_ids,
        },
        best_effort=True,
    )
