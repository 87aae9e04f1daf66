from __future__ import annotations

from decimal import Decimal

import pytest

from pulsemeter.core.config import Settings
from pulsemeter.core.errors import RateNotFoundError
from pulsemeter.services.pulse.rates import (
    DEFAULT_RATE_ENTRIES,
    RateEntry,
    RateTable,
    calculate_pulses,
    fallback_pulses,
    load_rate_table,
    quote_pulses,
    rate_metadata,
)


def test_calculate_pulses_applies_per_thousand_rates() -> None:
    table = RateTable([RateEntry("model-x", Decimal("10"), Decimal("30"))])
    assert calculate_pulses("model-x", 1000, 1000, rate_table=table) == 40


def test_calculate_pulses_rounds_partial_pulses_up() -> None:
    # 1 input token of gpt-3.5-turbo costs 0.0005 Pulses and must still bill one.
    assert calculate_pulses("gpt-3.5-turbo", 1, 0) == 1
    assert calculate_pulses("claude-3-haiku", 1000, 1000) == 2
    assert calculate_pulses("gpt-4", 0, 0) == 0


def test_unknown_model_uses_fallback_price() -> None:
    charge = quote_pulses("mystery-model", 150, 0)
    assert charge.pulses == 2
    assert charge.estimated is True
    assert charge.rate is None
    assert fallback_pulses(100, 0) == 1
    assert fallback_pulses(0, 0) == 0


def test_negative_token_counts_are_rejected() -> None:
    with pytest.raises(ValueError):
        calculate_pulses("gpt-4", -1, 10)


def test_rate_table_require_raises_for_missing_model() -> None:
    table = RateTable()
    assert len(table) == len(DEFAULT_RATE_ENTRIES)
    assert "gpt-4" in table
    assert table.get("missing") is None
    with pytest.raises(RateNotFoundError):
        table.require("missing")


def test_quote_includes_rate_snapshot() -> None:
    charge = quote_pulses("claude-3-sonnet", 5000, 3000)
    assert charge.pulses == 60
    assert charge.estimated is False
    assert rate_metadata(charge.rate) == {
        "model": "claude-3-sonnet",
        "input_rate": "3",
        "output_rate": "15",
        "unit": "per_1k_tokens",
    }


def test_load_rate_table_merges_overrides() -> None:
    settings = Settings(
        _env_file=None,
        pulse_rate_overrides_json='{"model-x": {"input": "1.5", "output": "2"}, "gpt-4": {"input": 1, "output": 1}}',
    )
    table = load_rate_table(settings)
    assert table.require("model-x").input_rate == Decimal("1.5")
    assert calculate_pulses("gpt-4", 1000, 1000, rate_table=table) == 2
    assert "claude-3-opus" in table


@pytest.mark.parametrize("raw", ["not-json", "[1, 2]", '{"model-x": {"input": "-1"}}'])
def test_load_rate_table_rejects_invalid_overrides(raw: str) -> None:
    with pytest.raises(ValueError):
        load_rate_table(Settings(_env_file=None, pulse_rate_overrides_json=raw))
