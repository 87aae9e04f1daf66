from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from functools import partial
import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar
from uuid import uuid4
import weakref

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from pulsemeter.core.config import Settings, get_settings
from pulsemeter.core.errors import (
    DatabaseError,
    LedgerNotFoundError,
    ModelNotAllowedError,
    QuotaExceededError,
)
from pulsemeter.domain.models import PulseLedger, PulseMemberUsage, PulseUsageRecord
from pulsemeter.persistence.repos.ledgers import (
    get_ledger,
    get_or_create_member_usage,
    list_member_usage,
    lock_ledger,
    new_ledger,
)
from pulsemeter.services.audit import record_event
from pulsemeter.services.pulse import rollups
from pulsemeter.services.pulse.clock import ensure_utc, resolve_timezone, utc_now
from pulsemeter.services.pulse.notify import (
    EVENT_QUOTA_EXCEEDED,
    EVENT_SOFT_CAP_REACHED,
    PulseNotifier,
    send_pulse_webhook_event,
)
from pulsemeter.services.pulse.rates import PulseCharge, RateTable, load_rate_table, quote_pulses, rate_metadata
from pulsemeter.services.pulse.reset import ResetSummary, reset_due_ledgers, reset_usage
from pulsemeter.services.pulse.tiers import (
    effective_allowed_models,
    is_model_allowed,
    parse_reset_period,
    parse_tier,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AvailabilityResult:
    # Advisory snapshot; nothing is reserved for the caller.
    allowed: bool
    required_pulses: int
    available_pulses: int
    model_allowed: bool


@dataclass(frozen=True)
class CommitResult:
    record_id: str
    tenant_id: str
    actor_id: str
    model: str
    pulses_charged: int
    estimated: bool
    used: int
    limit: int
    available: int
    soft_cap_reached: bool


@dataclass(frozen=True)
class PulseSummary:
    tenant_id: str
    allocated: int
    used: int
    available: int
    limit: int
    tier: str
    allowed_models: list[str]
    usage_percentage: float
    reset_period: str
    last_reset_at: datetime


class PulseService:
    """Meter Pulse consumption against per-tenant ledgers.

    Every ledger write runs in one database transaction that re-reads the
    ledger row under `FOR UPDATE` while holding an in-process per-tenant lock.
    The ledger's `revision` column turns lost updates from stores without row
    locks into `StaleDataError`, after which the transaction is re-run from a
    fresh read.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        rate_table: RateTable | None = None,
        time_provider: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
        notifier: PulseNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._rate_table = rate_table or load_rate_table(self._settings)
        # Allow time injection for deterministic period tests.
        self._time_provider = time_provider or utc_now
        self._notifier = notifier or partial(send_pulse_webhook_event, settings=self._settings)
        self._tz = resolve_timezone(self._settings.pulse_rollup_timezone)
        # Locks drop out once no coroutine holds or awaits them.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def rate_table(self) -> RateTable:
        return self._rate_table

    async def check_availability(
        self,
        tenant_id: str,
        model: str,
        est_input_tokens: int,
        est_output_tokens: int,
    ) -> AvailabilityResult:
        # Read-only pre-check; racy against concurrent commits and creates the default ledger.
        charge = quote_pulses(model, est_input_tokens, est_output_tokens, rate_table=self._rate_table)
        ledger = await self._get_or_create_ledger(tenant_id)
        used = int(ledger.used_pulses)
        available = int(ledger.allocated_pulses) - used
        model_allowed = is_model_allowed(
            model, tier=ledger.model_tier, allowed_models=ledger.allowed_models
        )
        allowed = (
            model_allowed
            and charge.pulses <= available
            and used + charge.pulses <= int(ledger.pulse_limit)
        )
        return AvailabilityResult(
            allowed=allowed,
            required_pulses=charge.pulses,
            available_pulses=available,
            model_allowed=model_allowed,
        )

    async def commit_usage(
        self,
        tenant_id: str,
        actor_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        operation_type: str,
        *,
        request_id: str | None = None,
    ) -> CommitResult:
        """Charge a finished model invocation to the tenant ledger.

        The metered work already happened, so `QuotaExceededError` is a billing
        failure the caller must reconcile rather than a preventive block.
        """
        charge = quote_pulses(model, input_tokens, output_tokens, rate_table=self._rate_table)
        now = self._time_provider()
        try:
            result = await self._run_ledger_transaction(
                tenant_id,
                lambda session: self._apply_commit(
                    session,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    model=model,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    operation_type=operation_type,
                    charge=charge,
                    now=now,
                ),
            )
        except QuotaExceededError as exc:
            await self._handle_quota_exceeded(exc, actor_id=actor_id, model=model, request_id=request_id)
            raise
        except ModelNotAllowedError as exc:
            logger.warning(
                "pulse_model_denied tenant=%s actor=%s model=%s tier=%s",
                tenant_id,
                actor_id,
                model,
                exc.tier,
            )
            await self._audit(
                tenant_id=tenant_id,
                actor_type="user",
                actor_id=actor_id,
                event_type="pulse.model_denied",
                outcome="failure",
                request_id=request_id,
                metadata={"model": model, "tier": exc.tier, "operation_type": operation_type},
                error_code="PULSE_MODEL_NOT_ALLOWED",
            )
            raise

        logger.info(
            "pulse_usage_committed tenant=%s actor=%s model=%s pulses=%s used=%s limit=%s estimated=%s",
            tenant_id,
            actor_id,
            model,
            result.pulses_charged,
            result.used,
            result.limit,
            result.estimated,
        )
        if result.soft_cap_reached:
            await self._handle_soft_cap(result, request_id=request_id)
        return result

    async def allocate_credits(
        self,
        tenant_id: str,
        amount: int,
        tier: str | None = None,
        *,
        actor_id: str | None = None,
    ) -> PulseSummary:
        # Not idempotent; callers dedupe upstream payment events themselves.
        if amount <= 0:
            raise ValueError("Allocation amount must be positive")
        resolved_tier = parse_tier(tier).value if tier is not None else None
        now = self._time_provider()

        async def _allocate(session: AsyncSession) -> tuple[PulseSummary, bool]:
            ledger = await lock_ledger(session, tenant_id)
            created = ledger is None
            if ledger is None:
                ledger = new_ledger(
                    tenant_id,
                    allocated=amount,
                    tier=resolved_tier or parse_tier(self._settings.pulse_default_tier).value,
                    reset_period=parse_reset_period(self._settings.pulse_default_reset_period).value,
                    now=now,
                )
                session.add(ledger)
            else:
                ledger.allocated_pulses = int(ledger.allocated_pulses) + amount
                ledger.pulse_limit = int(ledger.pulse_limit) + amount
                if resolved_tier is not None:
                    ledger.model_tier = resolved_tier
                    ledger.allowed_models = []
                self._rearm_soft_cap(ledger)
            await session.flush()
            return self._summary(ledger), created

        summary, created = await self._run_ledger_transaction(tenant_id, _allocate)
        logger.info(
            "pulse_credits_allocated tenant=%s amount=%s allocated=%s limit=%s created=%s",
            tenant_id,
            amount,
            summary.allocated,
            summary.limit,
            created,
        )
        await self._audit(
            tenant_id=tenant_id,
            actor_type="admin" if actor_id else "system",
            actor_id=actor_id,
            event_type="pulse.credits_allocated",
            outcome="success",
            metadata={
                "amount": amount,
                "allocated": summary.allocated,
                "limit": summary.limit,
                "tier": summary.tier,
                "created": created,
            },
        )
        return summary

    async def set_tier_policy(
        self,
        tenant_id: str,
        tier: str,
        custom_allowed_models: Iterable[str] | None = None,
        *,
        actor_id: str | None = None,
    ) -> PulseSummary:
        resolved_tier = parse_tier(tier).value
        allowed = _normalize_models(custom_allowed_models)

        async def _set_policy(session: AsyncSession) -> PulseSummary:
            ledger = await self._require_locked_ledger(session, tenant_id)
            # Overwrite both fields together; credits are never touched here.
            ledger.model_tier = resolved_tier
            ledger.allowed_models = allowed
            await session.flush()
            return self._summary(ledger)

        summary = await self._run_ledger_transaction(tenant_id, _set_policy)
        logger.info(
            "pulse_tier_policy_updated tenant=%s tier=%s custom_models=%s",
            tenant_id,
            resolved_tier,
            len(allowed),
        )
        await self._audit(
            tenant_id=tenant_id,
            actor_type="admin" if actor_id else "system",
            actor_id=actor_id,
            event_type="pulse.tier_policy_updated",
            outcome="success",
            metadata={"tier": resolved_tier, "allowed_models": allowed},
        )
        return summary

    async def set_spending_limit(
        self,
        tenant_id: str,
        limit: int,
        *,
        actor_id: str | None = None,
    ) -> PulseSummary:
        if limit < 0:
            raise ValueError("Pulse limit must be non-negative")

        async def _set_limit(session: AsyncSession) -> PulseSummary:
            ledger = await self._require_locked_ledger(session, tenant_id)
            if limit < int(ledger.used_pulses):
                raise ValueError(
                    f"Pulse limit {limit} is below current usage {ledger.used_pulses} for tenant {tenant_id}"
                )
            ledger.pulse_limit = limit
            self._rearm_soft_cap(ledger)
            await session.flush()
            return self._summary(ledger)

        summary = await self._run_ledger_transaction(tenant_id, _set_limit)
        logger.info("pulse_limit_updated tenant=%s limit=%s used=%s", tenant_id, limit, summary.used)
        await self._audit(
            tenant_id=tenant_id,
            actor_type="admin" if actor_id else "system",
            actor_id=actor_id,
            event_type="pulse.limit_updated",
            outcome="success",
            metadata={"limit": limit, "used": summary.used, "allocated": summary.allocated},
        )
        return summary

    async def set_reset_period(
        self,
        tenant_id: str,
        period: str,
        *,
        actor_id: str | None = None,
    ) -> PulseSummary:
        resolved_period = parse_reset_period(period).value

        async def _set_period(session: AsyncSession) -> PulseSummary:
            ledger = await self._require_locked_ledger(session, tenant_id)
            ledger.reset_period = resolved_period
            await session.flush()
            return self._summary(ledger)

        summary = await self._run_ledger_transaction(tenant_id, _set_period)
        logger.info("pulse_reset_period_updated tenant=%s period=%s", tenant_id, resolved_period)
        await self._audit(
            tenant_id=tenant_id,
            actor_type="admin" if actor_id else "system",
            actor_id=actor_id,
            event_type="pulse.reset_period_updated",
            outcome="success",
            metadata={"reset_period": resolved_period},
        )
        return summary

    async def get_workspace_pulse_summary(self, tenant_id: str) -> PulseSummary:
        ledger = await self._get_or_create_ledger(tenant_id)
        return self._summary(ledger)

    async def get_user_monthly_usage(
        self, actor_id: str, tenant_id: str, month: str | None = None
    ) -> rollups.ActorUsage:
        key = month or rollups.month_key(self._time_provider(), self._tz)
        async with self._session_factory() as session:
            return await rollups.get_user_monthly_usage(session, actor_id, tenant_id, key, tz=self._tz)

    async def get_workspace_monthly_usage(
        self, tenant_id: str, month: str | None = None
    ) -> rollups.WorkspaceUsage:
        key = month or rollups.month_key(self._time_provider(), self._tz)
        async with self._session_factory() as session:
            ledger = await get_ledger(session, tenant_id)
            allocated = (
                int(ledger.allocated_pulses)
                if ledger is not None
                else int(self._settings.pulse_default_allocation)
            )
            return await rollups.get_workspace_monthly_usage(
                session, tenant_id, key, allocated=allocated, tz=self._tz
            )

    async def get_workspace_daily_usage(
        self, tenant_id: str, day: str | None = None
    ) -> rollups.WorkspaceUsage:
        key = day or rollups.day_key(self._time_provider(), self._tz)
        async with self._session_factory() as session:
            return await rollups.get_workspace_daily_usage(session, tenant_id, key, tz=self._tz)

    async def get_workspace_usage_between(
        self, tenant_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> rollups.WorkspaceUsage:
        async with self._session_factory() as session:
            return await rollups.get_workspace_usage_between(session, tenant_id, start, end)

    async def get_actor_usage_between(
        self,
        actor_id: str,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> rollups.ActorUsage:
        async with self._session_factory() as session:
            return await rollups.get_actor_usage_between(session, actor_id, tenant_id, start, end)

    async def list_recent_usage_records(
        self, tenant_id: str, limit: int | None = None
    ) -> list[PulseUsageRecord]:
        resolved_limit = limit if limit is not None else int(self._settings.pulse_recent_usage_limit)
        async with self._session_factory() as session:
            return await rollups.list_recent_usage_records(session, tenant_id, resolved_limit)

    async def list_member_usage(self, tenant_id: str) -> list[PulseMemberUsage]:
        async with self._session_factory() as session:
            return await list_member_usage(session, tenant_id)

    async def rebuild_rollup(
        self, tenant_id: str, period_type: str, period_key: str
    ) -> rollups.WorkspaceUsage:
        # Hold the tenant lock so commits cannot interleave with the recount.
        async def _rebuild(session: AsyncSession) -> rollups.WorkspaceUsage:
            # The row lock also keeps commits from other processes out of the recount.
            await lock_ledger(session, tenant_id)
            return await rollups.rebuild_rollup(session, tenant_id, period_type, period_key, tz=self._tz)

        usage = await self._run_ledger_transaction(tenant_id, _rebuild)
        logger.info(
            "pulse_rollup_rebuilt tenant=%s period_type=%s period_key=%s pulses=%s requests=%s",
            tenant_id,
            period_type,
            period_key,
            usage.total_pulses,
            usage.total_requests,
        )
        return usage

    async def reset_usage(self, period: str) -> ResetSummary:
        return await reset_usage(
            self._session_factory,
            period,
            now=self._time_provider(),
            lock_provider=self._tenant_lock,
        )

    async def reset_due_ledgers(self) -> ResetSummary:
        return await reset_due_ledgers(
            self._session_factory,
            now=self._time_provider(),
            lock_provider=self._tenant_lock,
        )

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    async def _run_ledger_transaction(
        self,
        tenant_id: str,
        operation: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        # Serialize writers per tenant and re-run the whole transaction after a write conflict.
        attempts = max(1, int(self._settings.pulse_commit_max_attempts))
        async with self._tenant_lock(tenant_id):
            for attempt in range(1, attempts + 1):
                try:
                    async with self._session_factory() as session:
                        async with session.begin():
                            return await operation(session)
                except (StaleDataError, IntegrityError) as exc:
                    if attempt >= attempts:
                        logger.error(
                            "pulse_ledger_conflict_exhausted tenant=%s attempts=%s", tenant_id, attempts
                        )
                        raise DatabaseError(
                            f"Pulse ledger write for tenant {tenant_id} kept conflicting"
                        ) from exc
                    logger.warning(
                        "pulse_ledger_conflict tenant=%s attempt=%s error=%s",
                        tenant_id,
                        attempt,
                        type(exc).__name__,
                    )
                except SQLAlchemyError as exc:
                    logger.exception("pulse_ledger_write_failed tenant=%s", tenant_id)
                    raise DatabaseError(f"Pulse ledger write failed for tenant {tenant_id}") from exc
        raise DatabaseError(f"Pulse ledger write for tenant {tenant_id} did not run")

    async def _apply_commit(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        actor_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        operation_type: str,
        charge: PulseCharge,
        now: datetime,
    ) -> CommitResult:
        ledger = await lock_ledger(session, tenant_id)
        if ledger is None:
            raise LedgerNotFoundError(tenant_id)
        if not is_model_allowed(model, tier=ledger.model_tier, allowed_models=ledger.allowed_models):
            raise ModelNotAllowedError(tenant_id, model, ledger.model_tier)

        used = int(ledger.used_pulses)
        limit = int(ledger.pulse_limit)
        if used + charge.pulses > limit:
            # Raising rolls the transaction back, so the ledger stays untouched.
            raise QuotaExceededError(tenant_id, used=used, limit=limit, requested=charge.pulses)

        new_used = used + charge.pulses
        ledger.used_pulses = new_used
        ledger.last_usage_at = now
        soft_cap_reached = False
        if ledger.soft_cap_notified_at is None and self._soft_cap_crossed(new_used, limit):
            ledger.soft_cap_notified_at = now
            soft_cap_reached = True

        member = await get_or_create_member_usage(session, tenant_id, actor_id)
        member.used_pulses = int(member.used_pulses or 0) + charge.pulses
        member.used_tokens = int(member.used_tokens or 0) + input_tokens + output_tokens
        member.requests = int(member.requests or 0) + 1
        member.last_usage_at = now

        record = PulseUsageRecord(
            id=uuid4().hex,
            tenant_id=tenant_id,
            actor_id=actor_id,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            pulses_charged=charge.pulses,
            operation_type=operation_type,
            estimated=charge.estimated,
            rate_json=rate_metadata(charge.rate) if charge.rate is not None else None,
            occurred_at=now,
        )
        session.add(record)
        await rollups.apply_usage_to_rollups(session, record, tz=self._tz)
        await session.flush()

        return CommitResult(
            record_id=record.id,
            tenant_id=tenant_id,
            actor_id=actor_id,
            model=model,
            pulses_charged=charge.pulses,
            estimated=charge.estimated,
            used=new_used,
            limit=limit,
            available=int(ledger.allocated_pulses) - new_used,
            soft_cap_reached=soft_cap_reached,
        )

    async def _require_locked_ledger(self, session: AsyncSession, tenant_id: str) -> PulseLedger:
        ledger = await lock_ledger(session, tenant_id)
        if ledger is None:
            raise LedgerNotFoundError(tenant_id)
        return ledger

    async def _get_or_create_ledger(self, tenant_id: str) -> PulseLedger:
        async with self._session_factory() as session:
            async with session.begin():
                ledger = await get_ledger(session, tenant_id)
        if ledger is not None:
            return ledger

        async with self._tenant_lock(tenant_id):
            async with self._session_factory() as session:
                async with session.begin():
                    ledger = await get_ledger(session, tenant_id)
                if ledger is not None:
                    return ledger
                ledger = new_ledger(
                    tenant_id,
                    allocated=int(self._settings.pulse_default_allocation),
                    tier=parse_tier(self._settings.pulse_default_tier).value,
                    reset_period=parse_reset_period(self._settings.pulse_default_reset_period).value,
                    now=self._time_provider(),
                )
                try:
                    async with session.begin():
                        session.add(ledger)
                except IntegrityError:
                    # Another process created the ledger first; use its row.
                    async with session.begin():
                        existing = await get_ledger(session, tenant_id)
                    if existing is None:
                        raise DatabaseError(f"Pulse ledger for tenant {tenant_id} could not be created")
                    return existing

        logger.info(
            "pulse_ledger_created tenant=%s allocated=%s tier=%s",
            tenant_id,
            ledger.allocated_pulses,
            ledger.model_tier,
        )
        await self._audit(
            tenant_id=tenant_id,
            actor_type="system",
            actor_id=None,
            event_type="pulse.ledger_created",
            outcome="success",
            metadata={
                "allocated": int(ledger.allocated_pulses),
                "tier": ledger.model_tier,
                "reset_period": ledger.reset_period,
            },
        )
        return ledger

    def _summary(self, ledger: PulseLedger) -> PulseSummary:
        allocated = int(ledger.allocated_pulses)
        used = int(ledger.used_pulses)
        usage_percentage = round(used / allocated * 100, 2) if allocated > 0 else 0.0
        return PulseSummary(
            tenant_id=ledger.tenant_id,
            allocated=allocated,
            used=used,
            available=allocated - used,
            limit=int(ledger.pulse_limit),
            tier=ledger.model_tier,
            allowed_models=effective_allowed_models(ledger.model_tier, ledger.allowed_models),
            usage_percentage=usage_percentage,
            reset_period=ledger.reset_period,
            last_reset_at=ensure_utc(ledger.last_reset_at),
        )

    def _soft_cap_crossed(self, used: int, limit: int) -> bool:
        # Guard against invalid ratios and empty limits.
        ratio = float(self._settings.pulse_soft_cap_ratio)
        if limit <= 0 or ratio <= 0:
            return False
        return used >= limit * ratio

    def _rearm_soft_cap(self, ledger: PulseLedger) -> None:
        # A raised limit may drop usage back under the soft cap; notify again on the next crossing.
        if ledger.soft_cap_notified_at is not None and not self._soft_cap_crossed(
            int(ledger.used_pulses), int(ledger.pulse_limit)
        ):
            ledger.soft_cap_notified_at = None

    async def _handle_quota_exceeded(
        self,
        exc: QuotaExceededError,
        *,
        actor_id: str,
        model: str,
        request_id: str | None,
    ) -> None:
        logger.warning(
            "pulse_quota_exceeded tenant=%s actor=%s model=%s used=%s limit=%s requested=%s",
            exc.tenant_id,
            actor_id,
            model,
            exc.used,
            exc.limit,
            exc.requested,
        )
        metadata = {
            "model": model,
            "used": exc.used,
            "limit": exc.limit,
            "requested": exc.requested,
        }
        await self._audit(
            tenant_id=exc.tenant_id,
            actor_type="user",
            actor_id=actor_id,
            event_type="pulse.quota_exceeded",
            outcome="failure",
            request_id=request_id,
            metadata=metadata,
            error_code="PULSE_QUOTA_EXCEEDED",
        )
        await self._safe_notify(
            EVENT_QUOTA_EXCEEDED,
            {
                "event_type": EVENT_QUOTA_EXCEEDED,
                "tenant_id": exc.tenant_id,
                "actor_id": actor_id,
                **metadata,
                "timestamp": self._time_provider().isoformat(),
            },
        )

    async def _handle_soft_cap(self, result: CommitResult, *, request_id: str | None) -> None:
        ratio = float(self._settings.pulse_soft_cap_ratio)
        logger.info(
            "pulse_soft_cap_reached tenant=%s used=%s limit=%s ratio=%s",
            result.tenant_id,
            result.used,
            result.limit,
            ratio,
        )
        metadata = {"used": result.used, "limit": result.limit, "soft_cap_ratio": ratio}
        await self._audit(
            tenant_id=result.tenant_id,
            actor_type="system",
            actor_id=None,
            event_type="pulse.soft_cap_reached",
            outcome="success",
            request_id=request_id,
            metadata=metadata,
        )
        await self._safe_notify(
            EVENT_SOFT_CAP_REACHED,
            {
                "event_type": EVENT_SOFT_CAP_REACHED,
                "tenant_id": result.tenant_id,
                **metadata,
                "timestamp": self._time_provider().isoformat(),
            },
        )

    async def _safe_notify(self, event_type: str, payload: dict[str, Any]) -> None:
        # Notification failures are logged and never change the metering outcome.
        try:
            await self._notifier(event_type, payload)
        except Exception as exc:  # noqa: BLE001 - webhook failures are non-fatal
            logger.warning("pulse_notify_failed event_type=%s", event_type, exc_info=exc)
            await self._audit(
                tenant_id=payload.get("tenant_id"),
                actor_type="system",
                actor_id="billing_webhook",
                event_type="billing.webhook.failure",
                outcome="failure",
                metadata={"event_type": event_type},
            )

    async def _audit(
        self,
        *,
        tenant_id: str | None,
        actor_type: str,
        actor_id: str | None,
        event_type: str,
        outcome: str,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        await record_event(
            session_factory=self._session_factory,
            occurred_at=self._time_provider(),
            tenant_id=tenant_id,
            actor_type=actor_type,
            actor_id=actor_id,
            event_type=event_type,
            outcome=outcome,
            resource_type="pulse_ledger",
            resource_id=tenant_id,
            request_id=request_id,
            metadata=metadata,
            error_code=error_code,
            best_effort=True,
        )


def _normalize_models(models: Iterable[str] | None) -> list[str]:
    # Keep caller order while dropping blanks and duplicates.
    if not models:
        return []
    cleaned = (str(model).strip() for model in models)
    return list(dict.fromkeys(model for model in cleaned if model))
