from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")

FieldPath = tuple[str, ...]

_LEADING_NUMBER_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Fallback(Generic[T]):
    value: T
    reason: str


ScoreResult = Ok[T] | Fallback[T]


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = _LEADING_NUMBER_RE.match(value)
        if not match:
            return None
        number = float(match.group(1))
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def declared_scale(payload: Mapping[str, Any], default: int = 10) -> int:
    """The score scale a response says it used; only 5 and 10 are recognised."""
    raw = payload.get("score_scale", payload.get("scale"))
    if isinstance(raw, str):
        raw = raw.strip().split("-")[-1]
    number = _to_number(raw)
    if number in (5.0, 10.0):
        return int(number)
    return default


def normalize_score(value: Any, *, default: int, scale: int = 10) -> int:
    """Bring a model score onto 1..10.

    On a declared 1..5 scale, ``v*2 - 1`` maps 1..5 onto 1..9. Anything that
    is not a number, or falls outside the declared range, becomes ``default``.
    """
    number = _to_number(value)
    if number is None:
        return default
    if scale == 5:
        if not 1.0 <= number <= 5.0:
            return default
        return _round_half_up(number * 2 - 1)
    if not 1.0 <= number <= 10.0:
        return default
    return _round_half_up(number)


def normalize_sentiment(value: Any, default: float = 0.0) -> float:
    number = _to_number(value)
    if number is None:
        return default
    return max(-1.0, min(1.0, number))


def normalize_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
    return default


def normalize_choice(value: Any, allowed: Iterable[str], default: str) -> str:
    """Case-insensitive match of ``value`` against a closed set, returning the canonical spelling."""
    if not isinstance(value, str):
        return default
    wanted = value.strip().lower().replace(" ", "_").replace("-", "_")
    for option in allowed:
        if option.lower().replace(" ", "_").replace("-", "_") == wanted:
            return option
    return default


def normalize_text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, list):
        joined = "; ".join(str(item).strip() for item in value if str(item).strip())
        return joined or default
    return default


def normalize_string_list(value: Any, limit: int = 5) -> list[str]:
    if isinstance(value, str):
        items = [value]
    elif isinstance(value, list):
        items = value
    else:
        return []
    cleaned = [str(item).strip() for item in items if item is not None and str(item).strip()]
    return cleaned[:limit]


def lookup(payload: Any, path: FieldPath) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def resolve_field(payload: Mapping[str, Any], paths: Iterable[FieldPath]) -> Any:
    """First non-empty value among ``paths``; the order of ``paths`` is the precedence."""
    for path in paths:
        value = lookup(payload, path)
        if value is not None and value != "" and value != []:
            return value
    return None
