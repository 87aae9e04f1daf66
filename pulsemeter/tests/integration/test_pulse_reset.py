from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from pulsemeter.services.pulse import reset as reset_module
from pulsemeter.services.pulse.clock import ensure_utc
from pulsemeter.services.pulse.reset import reset_due_ledgers, reset_usage
from pulsemeter.tests.utils.pulse import (
    FIXED_NOW,
    audit_event_types,
    load_ledger,
    load_member,
    seed_ledger,
    tenant_id,
)


@pytest.mark.asyncio
async def test_reset_zeroes_usage_and_keeps_previous(service, session_factory, clock) -> None:
    monthly = tenant_id("t-monthly")
    daily = tenant_id("t-daily")
    await seed_ledger(
        session_factory,
        monthly,
        allocated=100,
        used=60,
        limit=100,
        last_reset_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
    )
    await seed_ledger(session_factory, daily, allocated=100, used=10, reset_period="daily")
    await service.commit_usage(monthly, "alice", "gpt-3.5-turbo-16k", 4000, 2000, "chat")
    clock.advance(days=1)

    summary = await service.reset_usage("monthly")

    assert monthly in summary.reset_tenant_ids
    assert daily not in summary.reset_tenant_ids
    assert summary.failed_tenant_ids == []
    ledger = await load_ledger(session_factory, monthly)
    assert ledger.used_pulses == 0
    assert ledger.previous_used_pulses == 80
    assert ledger.soft_cap_notified_at is None
    assert ensure_utc(ledger.last_reset_at) == clock()
    member = await load_member(session_factory, monthly, "alice")
    assert (member.used_pulses, member.used_tokens, member.requests) == (0, 0, 0)

    untouched = await load_ledger(session_factory, daily)
    assert untouched.used_pulses == 10

    # Usage history survives the reset.
    monthly_usage = await service.get_workspace_monthly_usage(monthly)
    assert monthly_usage.total_pulses == 20


@pytest.mark.asyncio
async def test_reset_twice_leaves_usage_at_zero(session_factory) -> None:
    tenant = tenant_id()
    await seed_ledger(
        session_factory,
        tenant,
        allocated=100,
        used=45,
        reset_period="weekly",
        last_reset_at=datetime(2024, 3, 4, tzinfo=timezone.utc),
    )

    first = await reset_usage(session_factory, "weekly", now=FIXED_NOW)
    second = await reset_usage(session_factory, "weekly", now=FIXED_NOW)

    assert tenant in first.reset_tenant_ids
    assert tenant in second.reset_tenant_ids
    ledger = await load_ledger(session_factory, tenant)
    assert ledger.used_pulses == 0
    assert ledger.previous_used_pulses == 45
    assert await audit_event_types(session_factory, None) == ["pulse.usage_reset", "pulse.usage_reset"]


@pytest.mark.asyncio
async def test_reset_rejects_unknown_period(session_factory) -> None:
    with pytest.raises(ValueError):
        await reset_usage(session_factory, "yearly")


@pytest.mark.asyncio
async def test_reset_continues_past_failing_ledger(session_factory, monkeypatch) -> None:
    good = tenant_id("t-good")
    bad = tenant_id("t-bad")
    await seed_ledger(session_factory, good, used=30)
    await seed_ledger(session_factory, bad, used=40)
    real_reset = reset_module._reset_ledger

    async def flaky_reset(factory, tenant, **kwargs):
        if tenant == bad:
            raise SQLAlchemyError("simulated write failure")
        return await real_reset(factory, tenant, **kwargs)

    monkeypatch.setattr(reset_module, "_reset_ledger", flaky_reset)
    summary = await reset_usage(session_factory, "monthly", now=FIXED_NOW)

    assert summary.reset_tenant_ids == [good]
    assert summary.failed_tenant_ids == [bad]
    assert (await load_ledger(session_factory, good)).used_pulses == 0
    assert (await load_ledger(session_factory, bad)).used_pulses == 40

    # Re-running resumes the ledger that failed.
    monkeypatch.setattr(reset_module, "_reset_ledger", real_reset)
    retry = await reset_usage(session_factory, "monthly", now=FIXED_NOW)
    assert retry.failed_tenant_ids == []
    assert (await load_ledger(session_factory, bad)).used_pulses == 0


@pytest.mark.asyncio
async def test_reset_due_ledgers_only_touches_rolled_over_periods(session_factory) -> None:
    stale_month = tenant_id("t-month-stale")
    fresh_month = tenant_id("t-month-fresh")
    stale_week = tenant_id("t-week-stale")
    fresh_day = tenant_id("t-day-fresh")
    await seed_ledger(
        session_factory, stale_month, used=10, last_reset_at=datetime(2024, 2, 1, tzinfo=timezone.utc)
    )
    await seed_ledger(
        session_factory, fresh_month, used=20, last_reset_at=datetime(2024, 3, 1, tzinfo=timezone.utc)
    )
    await seed_ledger(
        session_factory,
        stale_week,
        used=30,
        reset_period="weekly",
        last_reset_at=datetime(2024, 3, 4, tzinfo=timezone.utc),
    )
    await seed_ledger(
        session_factory,
        fresh_day,
        used=40,
        reset_period="daily",
        last_reset_at=datetime(2024, 3, 15, tzinfo=timezone.utc),
    )

    summary = await reset_due_ledgers(session_factory, now=FIXED_NOW)

    assert sorted(summary.reset_tenant_ids) == sorted([stale_month, stale_week])
    assert sorted(summary.skipped_tenant_ids) == sorted([fresh_month, fresh_day])
    assert (await load_ledger(session_factory, stale_month)).previous_used_pulses == 10
    assert (await load_ledger(session_factory, fresh_month)).used_pulses == 20

    again = await reset_due_ledgers(session_factory, now=FIXED_NOW)
    assert again.reset_tenant_ids == []


@pytest.mark.asyncio
async def test_rerun_inside_period_keeps_previous_snapshot(service, session_factory, clock) -> None:
    tenant = tenant_id()
    await seed_ledger(
        session_factory,
        tenant,
        allocated=1000,
        used=45,
        reset_period="weekly",
        last_reset_at=datetime(2024, 3, 4, tzinfo=timezone.utc),
    )

    await service.reset_usage("weekly")
    await service.commit_usage(tenant, "alice", "gpt-3.5-turbo", 1000, 1000, "chat")
    clock.advance(hours=1)
    rerun = await service.reset_usage("weekly")

    assert tenant in rerun.reset_tenant_ids
    ledger = await load_ledger(session_factory, tenant)
    assert ledger.used_pulses == 0
    assert ledger.previous_used_pulses == 45
    assert ensure_utc(ledger.last_reset_at) == clock()

    # The next week's reset snapshots the new period again.
    clock.advance(days=7)
    await service.commit_usage(tenant, "alice", "gpt-3.5-turbo", 1000, 1000, "chat")
    await service.reset_usage("weekly")
    rolled = await load_ledger(session_factory, tenant)
    assert rolled.previous_used_pulses == 2
    assert rolled.used_pulses == 0
