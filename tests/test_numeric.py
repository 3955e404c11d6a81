"""Unit tests for guarded arithmetic and deterministic hashing helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import UUID

from governance.numeric import (
    as_utc,
    clamp,
    deterministic_uuid,
    mean,
    percentile_rank,
    pip_size,
    round_half_up,
    safe_ratio,
    stable_hash,
    utc_iso,
)


def test_clamp_bounds_both_sides() -> None:
    assert clamp(5.0, 0.0, 1.0) == 1.0
    assert clamp(-1.0, 0.0, 1.0) == 0.0
    assert clamp(0.4, 0.0, 1.0) == 0.4


def test_safe_ratio_falls_back_on_degenerate_denominator() -> None:
    assert safe_ratio(6.0, 3.0) == 2.0
    assert safe_ratio(1.0, 0.0) == 1.0
    assert safe_ratio(1.0, 0.0, default=0.0) == 0.0
    assert safe_ratio(1.0, float("nan")) == 1.0
    assert safe_ratio(1.0, float("inf"), default=-1.0) == -1.0


def test_mean_of_empty_sequence_uses_default() -> None:
    assert mean([]) == 0.0
    assert mean([], default=1.0) == 1.0
    assert mean([1.0, 2.0, 3.0]) == 2.0


def test_round_half_up_rounds_halves_toward_positive_infinity() -> None:
    assert round_half_up(2.5) == 3
    assert round_half_up(2.4) == 2
    assert round_half_up(-2.5) == -2


def test_percentile_rank_needs_more_than_min_count_values() -> None:
    assert percentile_rank([float(value) for value in range(1, 11)], 1.0) == 50
    assert percentile_rank([float(value) for value in range(1, 21)], 15.0) == 75


def test_pip_size_by_quote_currency() -> None:
    assert pip_size("USD_JPY") == 0.01
    assert pip_size("eur_jpy") == 0.01
    assert pip_size("EUR_USD") == 0.0001


def test_deterministic_uuid_is_stable_per_tokens() -> None:
    ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
    first = deterministic_uuid("decision", "p-1", ts)
    assert isinstance(first, UUID)
    assert first == deterministic_uuid("decision", "p-1", ts)
    assert first != deterministic_uuid("decision", "p-2", ts)
    assert first != deterministic_uuid("reversion", "p-1", ts)


def test_stable_hash_normalizes_timezones() -> None:
    utc_ts = datetime(2026, 1, 1, 12, tzinfo=timezone.utc)
    offset_ts = utc_ts.astimezone(timezone(timedelta(hours=2)))
    assert stable_hash(["x", utc_ts]) == stable_hash(["x", offset_ts])
    assert len(stable_hash(["x"])) == 64


def test_utc_iso_uses_z_suffix() -> None:
    ts = datetime(2026, 1, 1, 14, tzinfo=timezone(timedelta(hours=2)))
    assert utc_iso(ts) == "2026-01-01T12:00:00Z"


def test_as_utc_assumes_naive_is_utc() -> None:
    assert as_utc(datetime(2026, 1, 1, 12)) == datetime(2026, 1, 1, 12, tzinfo=timezone.utc)
    converted = as_utc(datetime(2026, 1, 1, 14, tzinfo=timezone(timedelta(hours=2))))
    assert converted.tzinfo is timezone.utc
    assert converted.hour == 12
