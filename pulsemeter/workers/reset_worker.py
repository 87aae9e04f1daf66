from __future__ import annotations

from datetime import timezone
import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulsemeter.core.config import get_settings
from pulsemeter.core.logging import configure_logging
from pulsemeter.persistence.db import dispose_engine, get_sessionmaker
from pulsemeter.services.pulse.reset import ResetSummary, reset_due_ledgers, reset_usage
from pulsemeter.services.pulse.tiers import ResetPeriod, parse_reset_period


logger = logging.getLogger(__name__)


def _session_factory(ctx: dict[str, Any]) -> async_sessionmaker[AsyncSession]:
    return ctx.get("session_factory") or get_sessionmaker()


def _summary_payload(summary: ResetSummary) -> dict[str, Any]:
    # Keep job results JSON-friendly for arq result storage.
    return {
        "period": summary.period,
        "reset_at": summary.reset_at.isoformat(),
        "reset": summary.reset_count,
        "skipped": len(summary.skipped_tenant_ids),
        "failed_tenant_ids": list(summary.failed_tenant_ids),
    }


async def reset_pulse_usage(ctx: dict[str, Any], period: str) -> dict[str, Any]:
    # Reset every ledger on the given schedule; also enqueued on demand by operators.
    resolved = parse_reset_period(period)
    summary = await reset_usage(_session_factory(ctx), resolved.value)
    return _summary_payload(summary)


async def reset_daily_usage(ctx: dict[str, Any]) -> dict[str, Any]:
    return await reset_pulse_usage(ctx, ResetPeriod.DAILY.value)


async def reset_weekly_usage(ctx: dict[str, Any]) -> dict[str, Any]:
    return await reset_pulse_usage(ctx, ResetPeriod.WEEKLY.value)


async def reset_monthly_usage(ctx: dict[str, Any]) -> dict[str, Any]:
    return await reset_pulse_usage(ctx, ResetPeriod.MONTHLY.value)


async def reset_overdue_usage(ctx: dict[str, Any]) -> dict[str, Any]:
    # Recover ledgers whose scheduled reset was missed while the worker was down.
    summary = await reset_due_ledgers(_session_factory(ctx))
    return _summary_payload(summary)


async def _startup(ctx: dict[str, Any]) -> None:
    configure_logging()
    ctx["session_factory"] = get_sessionmaker()
    logger.info("pulse_reset_worker_started queue=%s", get_settings().pulse_reset_queue_name)


async def _shutdown(ctx: dict[str, Any]) -> None:
    # Release pooled connections so worker restarts do not leak sessions.
    ctx.pop("session_factory", None)
    await dispose_engine()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.pulse_reset_queue_name
    timezone = timezone.utc
    functions = [reset_pulse_usage]
    cron_jobs = [
        cron(reset_daily_usage, hour=0, minute=0),
        cron(reset_weekly_usage, weekday=0, hour=0, minute=0),
        cron(reset_monthly_usage, day=1, hour=0, minute=0),
        cron(reset_overdue_usage, minute=max(0, min(59, int(settings.pulse_reset_catchup_minute)))),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
