from __future__ import annotations

from enum import Enum
from typing import Iterable, Sequence


class Tier(str, Enum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"


class ResetPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# Each tier's own models; access is cumulative from basic upwards.
MODEL_TIERS: dict[Tier, tuple[str, ...]] = {
    Tier.PREMIUM: ("gpt-4", "gpt-4-turbo", "claude-3-opus"),
    Tier.STANDARD: ("claude-3-sonnet", "claude-2.1", "gpt-3.5-turbo-16k"),
    Tier.BASIC: ("gpt-3.5-turbo", "claude-3-haiku", "claude-instant"),
}

_TIER_ORDER: tuple[Tier, ...] = (Tier.BASIC, Tier.STANDARD, Tier.PREMIUM)


def parse_tier(value: Tier | str) -> Tier:
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown model tier: {value!r}") from exc


def parse_reset_period(value: ResetPeriod | str) -> ResetPeriod:
    if isinstance(value, ResetPeriod):
        return value
    try:
        return ResetPeriod(str(value).strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown reset period: {value!r}") from exc


def models_for_tier(tier: Tier | str) -> tuple[str, ...]:
    """Return every model the tier may invoke, highest tier's own models first."""
    resolved = parse_tier(tier)
    included = _TIER_ORDER[: _TIER_ORDER.index(resolved) + 1]
    models: list[str] = []
    for level in reversed(included):
        models.extend(MODEL_TIERS[level])
    return tuple(models)


def effective_allowed_models(tier: Tier | str, allowed_models: Iterable[str] | None) -> list[str]:
    # An explicit allow-list replaces tier resolution entirely.
    explicit = [model for model in (allowed_models or []) if model]
    if explicit:
        return explicit
    return list(models_for_tier(tier))


def is_model_allowed(
    model: str,
    *,
    tier: Tier | str,
    allowed_models: Sequence[str] | None = None,
) -> bool:
    return model in effective_allowed_models(tier, allowed_models)
