from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsemeter.domain.models import PulseRollup, PulseRollupBreakdown, PulseUsageRecord
from pulsemeter.services.pulse.clock import ensure_utc, utc_now


PERIOD_DAY = "day"
PERIOD_MONTH = "month"

DIMENSION_ACTOR = "actor"
DIMENSION_MODEL = "model"

# Ad hoc windows read straight from usage records; they have no stored rollup.
PERIOD_RANGE = "range"


@dataclass(frozen=True)
class UsageTotals:
    # Nested counters shown per actor or per model on dashboards.
    tokens: int = 0
    pulses: int = 0
    requests: int = 0


@dataclass(frozen=True)
class WorkspaceUsage:
    tenant_id: str
    period_type: str
    period_key: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_pulses: int = 0
    total_requests: int = 0
    by_actor: dict[str, UsageTotals] = field(default_factory=dict)
    by_model: dict[str, UsageTotals] = field(default_factory=dict)
    remaining_pulses: int | None = None


@dataclass(frozen=True)
class ActorUsage:
    tenant_id: str
    actor_id: str
    period_key: str
    tokens: int = 0
    pulses: int = 0
    requests: int = 0


def day_key(moment: datetime, tz: tzinfo = timezone.utc) -> str:
    local = ensure_utc(moment).astimezone(tz)
    return f"{local.year:04d}{local.month:02d}{local.day:02d}"


def month_key(moment: datetime, tz: tzinfo = timezone.utc) -> str:
    local = ensure_utc(moment).astimezone(tz)
    return f"{local.year:04d}{local.month:02d}"


def period_bounds(period_type: str, period_key: str, tz: tzinfo = timezone.utc) -> tuple[datetime, datetime]:
    # Translate a rollup key back into a UTC [start, end) window for record queries.
    if period_type == PERIOD_DAY and len(period_key) == 8:
        start = datetime(int(period_key[:4]), int(period_key[4:6]), int(period_key[6:]), tzinfo=tz)
        end = start + timedelta(days=1)
    elif period_type == PERIOD_MONTH and len(period_key) == 6:
        year, month = int(period_key[:4]), int(period_key[4:])
        start = datetime(year, month, 1, tzinfo=tz)
        end = datetime(year + 1, 1, 1, tzinfo=tz) if month == 12 else datetime(year, month + 1, 1, tzinfo=tz)
    else:
        raise ValueError(f"Invalid rollup key {period_type}:{period_key}")
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


async def _get_or_create_rollup(
    session: AsyncSession, tenant_id: str, period_type: str, period_key: str
) -> PulseRollup:
    rollup = await session.get(PulseRollup, (tenant_id, period_type, period_key))
    if rollup is None:
        rollup = PulseRollup(
            tenant_id=tenant_id,
            period_type=period_type,
            period_key=period_key,
            total_input_tokens=0,
            total_output_tokens=0,
            total_tokens=0,
            total_pulses=0,
            total_requests=0,
        )
        session.add(rollup)
    return rollup


async def _get_or_create_breakdown(
    session: AsyncSession,
    tenant_id: str,
    period_type: str,
    period_key: str,
    dimension: str,
    key: str,
) -> PulseRollupBreakdown:
    row = await session.get(PulseRollupBreakdown, (tenant_id, period_type, period_key, dimension, key))
    if row is None:
        row = PulseRollupBreakdown(
            tenant_id=tenant_id,
            period_type=period_type,
            period_key=period_key,
            dimension=dimension,
            key=key,
            tokens=0,
            pulses=0,
            requests=0,
        )
        session.add(row)
    return row


async def apply_usage_to_rollups(
    session: AsyncSession, record: PulseUsageRecord, *, tz: tzinfo = timezone.utc
) -> None:
    # Must run inside the commit transaction that appended `record`; there is no dedupe key.
    tokens = record.input_tokens + record.output_tokens
    for period_type, period_key in (
        (PERIOD_DAY, day_key(record.occurred_at, tz)),
        (PERIOD_MONTH, month_key(record.occurred_at, tz)),
    ):
        rollup = await _get_or_create_rollup(session, record.tenant_id, period_type, period_key)
        rollup.total_input_tokens += record.input_tokens
        rollup.total_output_tokens += record.output_tokens
        rollup.total_tokens += tokens
        rollup.total_pulses += record.pulses_charged
        rollup.total_requests += 1
        for dimension, key in ((DIMENSION_ACTOR, record.actor_id), (DIMENSION_MODEL, record.model)):
            row = await _get_or_create_breakdown(
                session, record.tenant_id, period_type, period_key, dimension, key
            )
            row.tokens += tokens
            row.pulses += record.pulses_charged
            row.requests += 1


async def _breakdowns(
    session: AsyncSession, tenant_id: str, period_type: str, period_key: str
) -> list[PulseRollupBreakdown]:
    result = await session.execute(
        select(PulseRollupBreakdown)
        .where(
            PulseRollupBreakdown.tenant_id == tenant_id,
            PulseRollupBreakdown.period_type == period_type,
            PulseRollupBreakdown.period_key == period_key,
        )
        .order_by(PulseRollupBreakdown.dimension.asc(), PulseRollupBreakdown.key.asc())
    )
    return list(result.scalars().all())


async def get_workspace_usage(
    session: AsyncSession,
    tenant_id: str,
    period_type: str,
    period_key: str,
    *,
    allocated: int | None = None,
) -> WorkspaceUsage:
    rollup = await session.get(PulseRollup, (tenant_id, period_type, period_key))
    if rollup is None:
        # Missing rollups read as an empty period rather than an error.
        return WorkspaceUsage(
            tenant_id=tenant_id,
            period_type=period_type,
            period_key=period_key,
            remaining_pulses=allocated,
        )
    by_actor: dict[str, UsageTotals] = {}
    by_model: dict[str, UsageTotals] = {}
    for row in await _breakdowns(session, tenant_id, period_type, period_key):
        totals = UsageTotals(tokens=int(row.tokens), pulses=int(row.pulses), requests=int(row.requests))
        if row.dimension == DIMENSION_ACTOR:
            by_actor[row.key] = totals
        elif row.dimension == DIMENSION_MODEL:
            by_model[row.key] = totals
    return WorkspaceUsage(
        tenant_id=tenant_id,
        period_type=period_type,
        period_key=period_key,
        total_input_tokens=int(rollup.total_input_tokens),
        total_output_tokens=int(rollup.total_output_tokens),
        total_tokens=int(rollup.total_tokens),
        total_pulses=int(rollup.total_pulses),
        total_requests=int(rollup.total_requests),
        by_actor=by_actor,
        by_model=by_model,
        remaining_pulses=None if allocated is None else allocated - int(rollup.total_pulses),
    )


async def get_workspace_monthly_usage(
    session: AsyncSession,
    tenant_id: str,
    month: str | None = None,
    *,
    allocated: int | None = None,
    tz: tzinfo = timezone.utc,
) -> WorkspaceUsage:
    key = month or month_key(utc_now(), tz)
    return await get_workspace_usage(session, tenant_id, PERIOD_MONTH, key, allocated=allocated)


async def get_workspace_daily_usage(
    session: AsyncSession,
    tenant_id: str,
    day: str | None = None,
    *,
    tz: tzinfo = timezone.utc,
) -> WorkspaceUsage:
    key = day or day_key(utc_now(), tz)
    return await get_workspace_usage(session, tenant_id, PERIOD_DAY, key)


async def get_user_monthly_usage(
    session: AsyncSession,
    actor_id: str,
    tenant_id: str,
    month: str | None = None,
    *,
    tz: tzinfo = timezone.utc,
) -> ActorUsage:
    key = month or month_key(utc_now(), tz)
    row = await session.get(
        PulseRollupBreakdown, (tenant_id, PERIOD_MONTH, key, DIMENSION_ACTOR, actor_id)
    )
    if row is None:
        return ActorUsage(tenant_id=tenant_id, actor_id=actor_id, period_key=key)
    return ActorUsage(
        tenant_id=tenant_id,
        actor_id=actor_id,
        period_key=key,
        tokens=int(row.tokens),
        pulses=int(row.pulses),
        requests=int(row.requests),
    )


async def list_recent_usage_records(
    session: AsyncSession, tenant_id: str, limit: int = 50
) -> list[PulseUsageRecord]:
    result = await session.execute(
        select(PulseUsageRecord)
        .where(PulseUsageRecord.tenant_id == tenant_id)
        .order_by(PulseUsageRecord.occurred_at.desc(), PulseUsageRecord.id.desc())
        .limit(max(1, limit))
    )
    return list(result.scalars().all())


def _window_filter(
    tenant_id: str,
    start: datetime | None,
    end: datetime | None,
    *,
    actor_id: str | None = None,
) -> list[Any]:
    # Half-open [start, end) so adjacent windows never count a record twice.
    clauses: list[Any] = [PulseUsageRecord.tenant_id == tenant_id]
    if actor_id is not None:
        clauses.append(PulseUsageRecord.actor_id == actor_id)
    if start is not None:
        clauses.append(PulseUsageRecord.occurred_at >= ensure_utc(start))
    if end is not None:
        clauses.append(PulseUsageRecord.occurred_at < ensure_utc(end))
    return clauses


async def _sum_window(session: AsyncSession, window: list[Any]) -> tuple[int, int, int, int]:
    totals = (
        await session.execute(
            select(
                func.coalesce(func.sum(PulseUsageRecord.input_tokens), 0),
                func.coalesce(func.sum(PulseUsageRecord.output_tokens), 0),
                func.coalesce(func.sum(PulseUsageRecord.pulses_charged), 0),
                func.count(PulseUsageRecord.id),
            ).where(*window)
        )
    ).one()
    input_tokens, output_tokens, pulses, requests = (int(value or 0) for value in totals)
    return input_tokens, output_tokens, pulses, requests


async def _group_window(
    session: AsyncSession, window: list[Any]
) -> dict[tuple[str, str], UsageTotals]:
    grouped: dict[tuple[str, str], UsageTotals] = {}
    for dimension, column in (
        (DIMENSION_ACTOR, PulseUsageRecord.actor_id),
        (DIMENSION_MODEL, PulseUsageRecord.model),
    ):
        result = await session.execute(
            select(
                column,
                func.coalesce(func.sum(PulseUsageRecord.input_tokens + PulseUsageRecord.output_tokens), 0),
                func.coalesce(func.sum(PulseUsageRecord.pulses_charged), 0),
                func.count(PulseUsageRecord.id),
            )
            .where(*window)
            .group_by(column)
        )
        for key, tokens, pulses, requests in result.all():
            grouped[(dimension, str(key))] = UsageTotals(
                tokens=int(tokens or 0), pulses=int(pulses or 0), requests=int(requests or 0)
            )
    return grouped


def range_key(start: datetime | None, end: datetime | None) -> str:
    # Open bounds render as empty strings, e.g. "2024-03-01T00:00:00+00:00/".
    lower = ensure_utc(start).isoformat() if start is not None else ""
    upper = ensure_utc(end).isoformat() if end is not None else ""
    return f"{lower}/{upper}"


async def get_workspace_usage_between(
    session: AsyncSession,
    tenant_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> WorkspaceUsage:
    """Aggregate a tenant's usage records over an arbitrary window.

    Either bound may be omitted. An empty window reads as zero totals.
    """
    window = _window_filter(tenant_id, start, end)
    input_tokens, output_tokens, pulses, requests = await _sum_window(session, window)
    grouped = await _group_window(session, window) if requests else {}
    return WorkspaceUsage(
        tenant_id=tenant_id,
        period_type=PERIOD_RANGE,
        period_key=range_key(start, end),
        total_input_tokens=input_tokens,
        total_output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        total_pulses=pulses,
        total_requests=requests,
        by_actor={key: totals for (dimension, key), totals in grouped.items() if dimension == DIMENSION_ACTOR},
        by_model={key: totals for (dimension, key), totals in grouped.items() if dimension == DIMENSION_MODEL},
    )


async def get_actor_usage_between(
    session: AsyncSession,
    actor_id: str,
    tenant_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> ActorUsage:
    window = _window_filter(tenant_id, start, end, actor_id=actor_id)
    input_tokens, output_tokens, pulses, requests = await _sum_window(session, window)
    return ActorUsage(
        tenant_id=tenant_id,
        actor_id=actor_id,
        period_key=range_key(start, end),
        tokens=input_tokens + output_tokens,
        pulses=pulses,
        requests=requests,
    )


async def rebuild_rollup(
    session: AsyncSession,
    tenant_id: str,
    period_type: str,
    period_key: str,
    *,
    tz: tzinfo = timezone.utc,
) -> WorkspaceUsage:
    """Recompute one rollup and its breakdowns from the usage records.

    Callers hold the tenant ledger row lock so no commit lands mid-rebuild.
    """
    start, end = period_bounds(period_type, period_key, tz)
    window = _window_filter(tenant_id, start, end)
    input_tokens, output_tokens, pulses, requests = await _sum_window(session, window)

    rollup = await _get_or_create_rollup(session, tenant_id, period_type, period_key)
    rollup.total_input_tokens = input_tokens
    rollup.total_output_tokens = output_tokens
    rollup.total_tokens = input_tokens + output_tokens
    rollup.total_pulses = pulses
    rollup.total_requests = requests

    existing = {
        (row.dimension, row.key): row
        for row in await _breakdowns(session, tenant_id, period_type, period_key)
    }
    fresh = await _group_window(session, window)

    for scope, row in existing.items():
        if scope not in fresh:
            await session.delete(row)
    for (dimension, key), totals in fresh.items():
        row = existing.get((dimension, key))
        if row is None:
            row = await _get_or_create_breakdown(session, tenant_id, period_type, period_key, dimension, key)
        row.tokens = totals.tokens
        row.pulses = totals.pulses
        row.requests = totals.requests

    await session.flush()
    return await get_workspace_usage(session, tenant_id, period_type, period_key)
