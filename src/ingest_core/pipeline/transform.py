from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..errors import ExpressionError
from ..models import FilterRule, TransformationConfig
from .expressions import evaluate

log = logging.getLogger(__name__)


def to_number(value: Any) -> Optional[float | int]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value).strip()
        return int(text) if text.lstrip("+-").isdigit() else float(text)
    except (TypeError, ValueError):
        return None


def to_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch milliseconds above year ~2286 in seconds
        secs = value / 1000.0 if abs(value) > 1e10 else float(value)
        try:
            return datetime.fromtimestamp(secs, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    except (TypeError, ValueError):
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "UPPERCASE": lambda v: str(v).upper(),
    "LOWERCASE": lambda v: str(v).lower(),
    "TRIM": lambda v: str(v).strip(),
    "TO_NUMBER": to_number,
    "NUMERIC": to_number,
    "TO_DATE": to_date,
    "DATE": to_date,
}


def apply_transform(value: Any, name: str) -> Any:
    fn = TRANSFORMS.get(name.upper())
    if fn is None:
        log.debug("Unknown transform %s; value passed through", name)
        return value
    return fn(value)


def matches_filter(record: Dict[str, Any], rule: FilterRule) -> bool:
    value = record.get(rule.field)
    op = rule.operator
    try:
        if op == "EQUALS":
            return value == rule.value
        if op == "NOT_EQUALS":
            return value != rule.value
        if op == "GREATER_THAN":
            return value is not None and value > rule.value
        if op == "LESS_THAN":
            return value is not None and value < rule.value
        if op == "CONTAINS":
            return value is not None and str(rule.value) in str(value)
    except TypeError:
        return False
    raise ValueError(f"Unknown filter operator: {op}")


def transform_record(record: Dict[str, Any], config: TransformationConfig) -> Optional[Dict[str, Any]]:
    """Mappings, then filters, then calculated fields.

    Returns None when a filter rejects the record.
    """
    out = dict(record)
    if not config.enabled:
        return out

    for m in config.mappings:
        value = record.get(m.source)
        if value is not None:
            out[m.target] = apply_transform(value, m.transform) if m.transform else value
        elif m.default_value is not None:
            out[m.target] = m.default_value

    for f in config.filters:
        if not matches_filter(out, f):
            return None

    for calc in config.calculations:
        if any(out.get(dep) is None for dep in calc.dependencies):
            out[calc.name] = None
            continue
        try:
            out[calc.name] = evaluate(calc.expression, out)
        except ExpressionError as e:
            log.debug("Calculation %s failed: %s", calc.name, e)
            out[calc.name] = None
    return out
