from __future__ import annotations

from datetime import timezone

import pytest

from pulsemeter.workers.reset_worker import (
    WorkerSettings,
    reset_daily_usage,
    reset_monthly_usage,
    reset_overdue_usage,
    reset_pulse_usage,
    reset_weekly_usage,
)
from pulsemeter.tests.utils.pulse import load_ledger, seed_ledger, tenant_id


def test_worker_schedules_each_reset_period() -> None:
    jobs = {job.coroutine: job for job in WorkerSettings.cron_jobs}

    assert set(jobs) == {reset_daily_usage, reset_weekly_usage, reset_monthly_usage, reset_overdue_usage}
    assert (jobs[reset_daily_usage].hour, jobs[reset_daily_usage].minute) == (0, 0)
    assert jobs[reset_weekly_usage].weekday == 0
    assert jobs[reset_monthly_usage].day == 1
    assert jobs[reset_overdue_usage].hour is None
    assert WorkerSettings.timezone is timezone.utc
    assert WorkerSettings.functions == [reset_pulse_usage]
    assert WorkerSettings.queue_name == "pulse-reset"


@pytest.mark.asyncio
async def test_worker_job_resets_ledgers(session_factory) -> None:
    tenant = tenant_id()
    await seed_ledger(session_factory, tenant, used=75, reset_period="daily")
    ctx = {"session_factory": session_factory}

    result = await reset_daily_usage(ctx)

    assert result["period"] == "daily"
    assert result["reset"] == 1
    assert result["failed_tenant_ids"] == []
    assert (await load_ledger(session_factory, tenant)).used_pulses == 0

    overdue = await reset_overdue_usage(ctx)
    assert overdue["period"] is None
    assert overdue["reset"] == 0
