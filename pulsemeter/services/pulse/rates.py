from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal, InvalidOperation
import json
import logging
from typing import Any, Iterable, Iterator, Mapping

from pulsemeter.core.config import Settings, get_settings
from pulsemeter.core.errors import RateNotFoundError


logger = logging.getLogger(__name__)

_THOUSAND = Decimal("1000")
# Unknown models are billed one Pulse per this many combined tokens.
FALLBACK_TOKENS_PER_PULSE = 100


@dataclass(frozen=True)
class RateEntry:
    # Pulses charged per 1,000 tokens for each direction.
    model: str
    input_rate: Decimal
    output_rate: Decimal


@dataclass(frozen=True)
class PulseCharge:
    # Priced commit plus the rate snapshot persisted beside the usage record.
    pulses: int
    rate: RateEntry | None
    estimated: bool


DEFAULT_RATE_ENTRIES: tuple[RateEntry, ...] = (
    RateEntry("gpt-4-turbo", Decimal("10"), Decimal("30")),
    RateEntry("gpt-4", Decimal("30"), Decimal("60")),
    RateEntry("gpt-3.5-turbo", Decimal("0.5"), Decimal("1.5")),
    RateEntry("gpt-3.5-turbo-16k", Decimal("3"), Decimal("4")),
    RateEntry("claude-3-opus", Decimal("15"), Decimal("75")),
    RateEntry("claude-3-sonnet", Decimal("3"), Decimal("15")),
    RateEntry("claude-3-haiku", Decimal("0.25"), Decimal("1.25")),
    RateEntry("claude-2.1", Decimal("8"), Decimal("24")),
    RateEntry("claude-instant", Decimal("0.8"), Decimal("2.4")),
)


class RateTable:
    """Immutable lookup of model name to Pulse rates."""

    def __init__(self, entries: Iterable[RateEntry] = DEFAULT_RATE_ENTRIES) -> None:
        self._rates: dict[str, RateEntry] = {entry.model: entry for entry in entries}

    def __contains__(self, model: object) -> bool:
        return model in self._rates

    def __len__(self) -> int:
        return len(self._rates)

    def __iter__(self) -> Iterator[RateEntry]:
        return iter(self._rates.values())

    def get(self, model: str) -> RateEntry | None:
        return self._rates.get(model)

    def require(self, model: str) -> RateEntry:
        rate = self._rates.get(model)
        if rate is None:
            raise RateNotFoundError(model)
        return rate

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> RateTable:
        # Return a new table; overrides replace or extend entries by model name.
        merged = dict(self._rates)
        for model, rates in overrides.items():
            merged[model] = RateEntry(
                model=model,
                input_rate=_to_rate(rates.get("input", 0), model=model),
                output_rate=_to_rate(rates.get("output", 0), model=model),
            )
        return RateTable(merged.values())


def _to_rate(value: Any, *, model: str) -> Decimal:
    try:
        rate = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid Pulse rate for model {model}: {value!r}") from exc
    if rate < 0 or not rate.is_finite():
        raise ValueError(f"Invalid Pulse rate for model {model}: {value!r}")
    return rate


def load_rate_table(settings: Settings | None = None) -> RateTable:
    # Merge configured overrides over the built-in rate entries.
    resolved = settings or get_settings()
    raw = (resolved.pulse_rate_overrides_json or "").strip() or "{}"
    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("pulse_rate_overrides_json must be a JSON object") from exc
    if not isinstance(overrides, dict):
        raise ValueError("pulse_rate_overrides_json must be a JSON object")
    return RateTable().with_overrides(overrides)


def _ceil_pulses(value: Decimal) -> int:
    # Always round up so partial Pulses are never undercharged.
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def fallback_pulses(input_tokens: int, output_tokens: int) -> int:
    total = input_tokens + output_tokens
    return -(-total // FALLBACK_TOKENS_PER_PULSE)


def quote_pulses(
    model: str,
    input_tokens: int,
    output_tokens: int,
    *,
    rate_table: RateTable | None = None,
) -> PulseCharge:
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("Token counts must be non-negative")
    table = rate_table or RateTable()
    try:
        rate = table.require(model)
    except RateNotFoundError:
        logger.info("pulse_rate_missing model=%s", model)
        return PulseCharge(
            pulses=fallback_pulses(input_tokens, output_tokens),
            rate=None,
            estimated=True,
        )
    amount = (Decimal(input_tokens) / _THOUSAND) * rate.input_rate + (
        Decimal(output_tokens) / _THOUSAND
    ) * rate.output_rate
    return PulseCharge(pulses=_ceil_pulses(amount), rate=rate, estimated=False)


def calculate_pulses(
    model: str,
    input_tokens: int,
    output_tokens: int,
    *,
    rate_table: RateTable | None = None,
) -> int:
    """Convert token counts into the Pulse charge for one model invocation."""
    return quote_pulses(model, input_tokens, output_tokens, rate_table=rate_table).pulses


def rate_metadata(rate: RateEntry) -> dict[str, Any]:
    # Serialize the rate snapshot stored alongside usage records.
    return {
        "model": rate.model,
        "input_rate": str(rate.input_rate),
        "output_rate": str(rate.output_rate),
        "unit": "per_1k_tokens",
    }
