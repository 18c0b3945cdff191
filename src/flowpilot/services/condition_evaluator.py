"""Evaluates the expressions of flow ``condition`` nodes.

Expressions are written by flow authors in the editor. The language is
small. Two forms are understood:

* structured comparisons ``<field> <operator> <value>``, where ``field`` may
  use dot notation (``contact.profile.tier``) and ``operator`` is one of
  ``contains``/``includes``, ``equals``/``==``/``=``, ``greaterThan``/``>``,
  ``lessThan``/``<``, ``startsWith`` and ``endsWith``;
* named predicates: ``true``/``false``, ``hasTag:<tag>``, ``channel:<name>``,
  ``windowOpen``/``windowClosed``, ``sentiment:<value>`` and
  ``timeOfDay:<morning|afternoon|evening|night>``.

Anything else is looked up as a context key and coerced to a boolean.
Evaluation never raises.
"""

from __future__ import annotations

import json
import math
import re
from datetime import timezone as dt_timezone, tzinfo
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo

from flowpilot import constants
from flowpilot.capabilities.base import Clock, SystemClock

_FIELD = r"^(\w[\w.]*)\s+"
_STRUCTURED_PATTERNS = [
    re.compile(_FIELD + r"(contains|includes)\s+(.+)$", re.IGNORECASE),
    re.compile(_FIELD + r"(equals|==|=)\s+(.+)$", re.IGNORECASE),
    re.compile(_FIELD + r"(greaterThan|>)\s+(.+)$", re.IGNORECASE),
    re.compile(_FIELD + r"(lessThan|<)\s+(.+)$", re.IGNORECASE),
    re.compile(_FIELD + r"(startsWith)\s+(.+)$", re.IGNORECASE),
    re.compile(_FIELD + r"(endsWith)\s+(.+)$", re.IGNORECASE),
]

# Half-open hour ranges; night wraps past midnight.
_DAY_PERIODS = {
    "morning": (6, 12),
    "afternoon": (12, 17),
    "evening": (17, 22),
    "night": (22, 6),
}

_MISSING = object()
# Decimal literals only: no digit separators, no nan, no inf abbreviations.
_NUMBER = re.compile(r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|Infinity)")


class ConditionEvaluator:
    """Evaluates condition expressions against a run context."""

    def __init__(self, clock: Optional[Clock] = None, timezone: Optional[str] = None) -> None:
        self.clock = clock or SystemClock()
        self.timezone = _resolve_timezone(timezone or constants.BUSINESS_TIMEZONE)

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> bool:
        expression = (expression or "").strip()
        for pattern in _STRUCTURED_PATTERNS:
            match = pattern.match(expression)
            if match:
                field, operator, value = match.groups()
                return self._compare(field, operator.lower(), value.strip(), context)
        return self._evaluate_simple(expression, context)

    def _compare(self, field: str, operator: str, value: str, context: Mapping[str, Any]) -> bool:
        resolved = resolve_field(field, context)
        text = _stringify(resolved).lower()
        expected = value.lower()

        if operator in ("contains", "includes"):
            return expected in text
        if operator in ("equals", "==", "="):
            return text == expected
        if operator in ("greaterthan", ">"):
            return _to_number(resolved) > _to_number(value)
        if operator in ("lessthan", "<"):
            return _to_number(resolved) < _to_number(value)
        if operator == "startswith":
            return text.startswith(expected)
        if operator == "endswith":
            return text.endswith(expected)
        return False

    def _evaluate_simple(self, expression: str, context: Mapping[str, Any]) -> bool:
        lower = expression.lower()

        if lower in ("true", "1"):
            return True
        if lower in ("false", "0"):
            return False

        if lower.startswith("hastag:"):
            tag = lower[len("hastag:"):].strip()
            tags = context.get("tags") or []
            if isinstance(tags, str):
                tags = [tags]
            return any(str(item).lower() == tag for item in tags)

        if lower.startswith("channel:"):
            channel = lower[len("channel:"):].strip()
            return _stringify(context.get("channel")).lower() == channel

        if lower == "windowopen":
            return context.get("windowOpen") is True
        if lower == "windowclosed":
            return context.get("windowOpen") is False

        if lower.startswith("sentiment:"):
            sentiment = lower[len("sentiment:"):].strip()
            return _stringify(context.get("sentiment")).lower() == sentiment

        if lower.startswith("timeofday:"):
            period = _DAY_PERIODS.get(lower[len("timeofday:"):].strip())
            if period is not None:
                return self._in_period(*period)

        if expression in context:
            return bool(context[expression])
        return False

    def _in_period(self, start: int, end: int) -> bool:
        hour = self.clock.now().astimezone(self.timezone).hour
        if start < end:
            return start <= hour < end
        return hour >= start or hour < end


def resolve_field(path: str, context: Mapping[str, Any]) -> Any:
    """Follow a dotted path through nested mappings; missing segments yield None."""
    value: Any = context
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part, _MISSING)
        if value is _MISSING:
            return None
    return value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(_stringify(item) for item in value)
    if isinstance(value, Mapping):
        return json.dumps(value, default=str)
    return str(value)


def _to_number(value: Any) -> float:
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not _NUMBER.fullmatch(text):
        return math.nan
    return float(text)


def _resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return dt_timezone.utc
    return ZoneInfo(name)
