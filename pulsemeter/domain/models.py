from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping plain JSON for the SQLite test database.
JsonDocument = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
AutoBigInteger = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class PulseLedger(Base):
    __tablename__ = "pulse_ledgers"
    __table_args__ = (
        # Backstop the 0 <= used <= limit invariant at the storage layer.
        CheckConstraint(
            "used_pulses >= 0 AND used_pulses <= pulse_limit",
            name="ck_pulse_ledgers_used_within_limit",
        ),
        CheckConstraint("allocated_pulses >= 0", name="ck_pulse_ledgers_allocated_non_negative"),
        Index("ix_pulse_ledgers_reset_period", "reset_period"),
    )

    # One ledger per tenant; rows are archived, never deleted.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    allocated_pulses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_pulses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pulse_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Snapshot of used_pulses taken by the most recent reset.
    previous_used_pulses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    model_tier: Mapped[str] = mapped_column(String, nullable=False)
    # Empty list means "follow the tier"; a non-empty list overrides it.
    allowed_models: Mapped[list[str]] = mapped_column(JsonDocument, nullable=False, default=list)
    reset_period: Mapped[str] = mapped_column(String, nullable=False)
    last_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_usage_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set once per period when usage crosses the soft-cap ratio.
    soft_cap_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Optimistic version counter; concurrent writers on the same revision conflict.
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": revision}


class PulseUsageRecord(Base):
    __tablename__ = "pulse_usage_records"
    __table_args__ = (
        Index("ix_pulse_usage_records_tenant_occurred_at", "tenant_id", "occurred_at"),
    )

    # Append-only audit trail of committed consumption.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    actor_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    pulses_charged: Mapped[int] = mapped_column(Integer, nullable=False)
    operation_type: Mapped[str] = mapped_column(String, nullable=False)
    # True when the fallback price was used because the model had no rate entry.
    estimated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rate_json: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PulseMemberUsage(Base):
    __tablename__ = "pulse_member_usage"

    # Per-actor sub-counter for the current ledger period.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    actor_id: Mapped[str] = mapped_column(String, primary_key=True)
    used_pulses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_usage_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PulseRollup(Base):
    __tablename__ = "pulse_rollups"

    # Incremental totals per tenant and calendar bucket (day=YYYYMMDD, month=YYYYMM).
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    period_type: Mapped[str] = mapped_column(String, primary_key=True)
    period_key: Mapped[str] = mapped_column(String, primary_key=True)
    total_input_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_output_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_pulses: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PulseRollupBreakdown(Base):
    __tablename__ = "pulse_rollup_breakdowns"

    # Nested counters of a rollup split by actor or by model.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    period_type: Mapped[str] = mapped_column(String, primary_key=True)
    period_key: Mapped[str] = mapped_column(String, primary_key=True)
    dimension: Mapped[str] = mapped_column(String, primary_key=True)
    key: Mapped[str] = mapped_column(String, primary_key=True)
    tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pulses: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(AutoBigInteger, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Allow null tenant_id for scheduler-wide system events.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Keep metadata sanitized for investigation queries.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
