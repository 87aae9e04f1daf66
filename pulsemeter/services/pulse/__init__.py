from __future__ import annotations

# Re-export Pulse metering services for centralized imports.

from pulsemeter.services.pulse.rates import (
    DEFAULT_RATE_ENTRIES,
    PulseCharge,
    RateEntry,
    RateTable,
    calculate_pulses,
    load_rate_table,
    quote_pulses,
)
from pulsemeter.services.pulse.tiers import (
    MODEL_TIERS,
    ResetPeriod,
    Tier,
    effective_allowed_models,
    is_model_allowed,
    models_for_tier,
)
from pulsemeter.services.pulse.rollups import (
    ActorUsage,
    UsageTotals,
    WorkspaceUsage,
    day_key,
    month_key,
)
from pulsemeter.services.pulse.reset import ResetSummary, reset_due_ledgers, reset_usage
from pulsemeter.services.pulse.ledger import AvailabilityResult, CommitResult, PulseService, PulseSummary
from pulsemeter.services.pulse.responses import build_pulse_exception, pulse_headers

__all__ = [
    "DEFAULT_RATE_ENTRIES",
    "PulseCharge",
    "RateEntry",
    "RateTable",
    "calculate_pulses",
    "load_rate_table",
    "quote_pulses",
    "MODEL_TIERS",
    "ResetPeriod",
    "Tier",
    "effective_allowed_models",
    "is_model_allowed",
    "models_for_tier",
    "ActorUsage",
    "UsageTotals",
    "WorkspaceUsage",
    "day_key",
    "month_key",
    "ResetSummary",
    "reset_due_ledgers",
    "reset_usage",
    "AvailabilityResult",
    "CommitResult",
    "PulseService",
    "PulseSummary",
    "build_pulse_exception",
    "pulse_headers",
]
