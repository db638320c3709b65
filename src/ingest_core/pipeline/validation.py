from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import ExpressionError
from ..models import DataSchema, ValidationConfig, ValidationRule
from .expressions import evaluate

log = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@lru_cache(maxsize=256)
def _regex(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def _split_field(rule: str) -> Tuple[str, str]:
    name, sep, rest = rule.partition(":")
    if not sep:
        raise ValueError(f"Rule {rule!r} must be of the form 'field:...'")
    return name.strip(), rest


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def check_rule(record: Dict[str, Any], rule: ValidationRule, *, field_name: Optional[str] = None) -> Optional[str]:
    """Return an error message when ``record`` violates ``rule``, else None.

    Rule strings: REGEX ``field:pattern``, RANGE ``field:min:max`` (either bound
    may be empty), ENUM ``field:a,b,c``, CUSTOM a boolean expression. A rule
    attached to a schema field may omit the ``field:`` prefix.
    """
    default_msg = rule.error_message or f"{rule.type} rule failed: {rule.rule}"
    try:
        if rule.type == "CUSTOM":
            return None if evaluate(rule.rule, record) else default_msg

        if field_name is not None:
            name, spec = field_name, rule.rule
            if spec.startswith(f"{field_name}:"):
                spec = spec[len(field_name) + 1:]
        else:
            name, spec = _split_field(rule.rule)
        value = record.get(name)
        if value is None:
            # absence is the required-field check's concern
            return None

        if rule.type == "REGEX":
            return None if _regex(spec).search(str(value)) else default_msg
        if rule.type == "RANGE":
            lo_s, _, hi_s = spec.partition(":")
            num = _to_float(value)
            if num is None:
                return default_msg
            if lo_s.strip() and num < float(lo_s):
                return default_msg
            if hi_s.strip() and num > float(hi_s):
                return default_msg
            return None
        if rule.type == "ENUM":
            allowed = {v.strip() for v in spec.split(",")}
            return None if str(value) in allowed else default_msg
    except (ExpressionError, ValueError, re.error) as e:
        log.debug("Validation rule %s errored: %s", rule.rule, e)
        return default_msg
    return f"Unknown rule type: {rule.type}"


def validate_record(record: Dict[str, Any], config: ValidationConfig, schema: Optional[DataSchema]) -> ValidationResult:
    if not config.enabled:
        return ValidationResult(valid=True)
    errors: List[str] = []
    for rule in config.custom_rules:
        err = check_rule(record, rule)
        if err:
            errors.append(err)
    if schema is not None:
        for f in schema.fields:
            if f.required and record.get(f.name) is None:
                errors.append(f"Required field missing: {f.name}")
                continue
            for rule in f.validation:
                err = check_rule(record, rule, field_name=f.name)
                if err:
                    errors.append(err)
    return ValidationResult(valid=not errors, errors=errors)


def rule_violations(record: Dict[str, Any], rules: Iterable[ValidationRule], field_name: str) -> List[str]:
    return [e for e in (check_rule(record, r, field_name=field_name) for r in rules) if e]
