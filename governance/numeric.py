"""Guarded arithmetic and deterministic hashing helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from hashlib import sha256
import math
from typing import Any, Iterable, Sequence
from uuid import NAMESPACE_URL, UUID, uuid5


def clamp(value: float, low: float, high: float) -> float:
    """Bound value to the closed interval [low, high]."""
    return max(low, min(high, value))


def is_finite(value: float) -> bool:
    return not (math.isnan(value) or math.isinf(value))


def safe_ratio(numerator: float, denominator: float, default: float = 1.0) -> float:
    """Divide, falling back to a neutral default for zero or non-finite results."""
    if denominator == 0 or not is_finite(denominator):
        return default
    result = numerator / denominator
    return result if is_finite(result) else default


def mean(values: Sequence[float], default: float = 0.0) -> float:
    if not values:
        return default
    return sum(values) / len(values)


def round_half_up(value: float) -> int:
    """Round halves toward positive infinity, matching dashboard conventions."""
    return int(math.floor(value + 0.5))


def percentile_rank(values: Sequence[float], current: float, min_count: int = 10) -> int:
    """Percentage of values at or below current; 50 when the sample is too small."""
    if len(values) <= min_count:
        return 50
    below = sum(1 for value in values if value <= current)
    return round_half_up(below / len(values) * 100)


def pip_size(pair: str) -> float:
    return 0.01 if "JPY" in pair.upper() else 0.0001


def normalize_token(value: Any) -> str:
    """Serialize primitive values deterministically for hashing."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return repr(round(value, 10))
    if isinstance(value, datetime):
        return utc_iso(value)
    return str(value)


def stable_hash(tokens: Iterable[Any]) -> str:
    """Compute a stable SHA256 hash over canonical token serialization."""
    preimage = "|".join(normalize_token(token) for token in tokens)
    return sha256(preimage.encode("utf-8")).hexdigest()


def deterministic_uuid(namespace: str, *tokens: object) -> UUID:
    """Build UUIDv5 from canonical hash tokens."""
    token_hash = stable_hash((namespace, *tokens))
    return uuid5(NAMESPACE_URL, f"governance::{namespace}::{token_hash}")


def as_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken as UTC; aware ones are converted."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def utc_iso(ts: datetime) -> str:
    """Normalize timestamp to UTC RFC3339 string."""
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
