from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models import DataSchema, QualityConfig, QualityIssue, QualityMetrics, SchemaField
from .transform import to_date, to_number
from .validation import rule_violations

log = logging.getLogger(__name__)

Row = Dict[str, Any]

FUTURE_SKEW = timedelta(minutes=5)


@dataclass
class QualityContext:
    schema: Optional[DataSchema]
    tenant_id: Optional[str]
    now: datetime
    config: QualityConfig
    extra_issues: List[QualityIssue] = field(default_factory=list)


ScoreResult = Tuple[float, List[QualityIssue]]
QualityScorer = Callable[[Row, QualityContext], ScoreResult]


def _present(value: Any) -> bool:
    return value is not None and value != ""


def completeness(record: Row, ctx: QualityContext) -> ScoreResult:
    names = list(record.keys())
    if ctx.schema is not None:
        names = list(dict.fromkeys(ctx.schema.field_names() + names))
    if not names:
        return 0.0, []
    issues: List[QualityIssue] = []
    filled = 0
    for name in names:
        if record.get(name) is not None:
            filled += 1
            continue
        sf = ctx.schema.get(name) if ctx.schema is not None else None
        issues.append(
            QualityIssue(
                type="MISSING",
                field=name,
                severity="HIGH" if sf is not None and sf.required else "LOW",
                message=f"Field {name} has no value",
            )
        )
    return filled / len(names), issues


def conforms(value: Any, sf: SchemaField) -> bool:
    t = sf.type
    if t == "STRING":
        return isinstance(value, str)
    if t == "NUMBER":
        if isinstance(value, bool):
            return False
        return isinstance(value, (int, float)) or (isinstance(value, str) and to_number(value) is not None)
    if t == "DATE":
        return isinstance(value, (datetime, date)) or to_date(value) is not None
    if t == "BOOLEAN":
        return isinstance(value, bool) or str(value).lower() in ("true", "false")
    if t == "JSON":
        if isinstance(value, (dict, list)):
            return True
        try:
            json.loads(value)
            return True
        except (TypeError, ValueError):
            return False
    if t == "BINARY":
        return isinstance(value, (bytes, bytearray, str))
    return True


def accuracy(record: Row, ctx: QualityContext) -> ScoreResult:
    """Share of populated schema fields that match their declared type and rules."""
    if ctx.schema is None:
        return 1.0, []
    checked = 0
    passed = 0
    issues: List[QualityIssue] = []
    for sf in ctx.schema.fields:
        value = record.get(sf.name)
        if value is None:
            continue
        checked += 1
        problems: List[str] = []
        if not conforms(value, sf):
            problems.append(f"expected {sf.type}")
        problems.extend(rule_violations(record, sf.validation, sf.name))
        if problems:
            issues.append(
                QualityIssue(type="INVALID", field=sf.name, severity="MEDIUM", message="; ".join(problems), value=value)
            )
        else:
            passed += 1
    return (passed / checked if checked else 1.0), issues


def consistency(record: Row, ctx: QualityContext) -> ScoreResult:
    checks = 0
    passed = 0
    issues: List[QualityIssue] = []
    schema = ctx.schema
    tenant_field = schema.tenant_field if schema is not None else "tenant_id"
    tenant_value = record.get(tenant_field)
    if ctx.tenant_id is not None and tenant_value is not None:
        checks += 1
        if str(tenant_value) == str(ctx.tenant_id):
            passed += 1
        else:
            issues.append(
                QualityIssue(
                    type="INCONSISTENT",
                    field=tenant_field,
                    severity="CRITICAL",
                    message=f"Record tenant {tenant_value} differs from job tenant {ctx.tenant_id}",
                    value=tenant_value,
                )
            )
    ts_field = schema.timestamp_field if schema is not None else "timestamp"
    if record.get(ts_field) is not None:
        checks += 1
        ts = to_date(record.get(ts_field))
        if ts is not None and ts <= ctx.now + FUTURE_SKEW:
            passed += 1
        else:
            issues.append(
                QualityIssue(
                    type="INCONSISTENT",
                    field=ts_field,
                    severity="MEDIUM",
                    message="Timestamp is unparseable or in the future",
                    value=record.get(ts_field),
                )
            )
    if schema is not None and schema.primary_key:
        checks += 1
        if _present(record.get(schema.primary_key)):
            passed += 1
        else:
            issues.append(
                QualityIssue(
                    type="INCONSISTENT",
                    field=schema.primary_key,
                    severity="HIGH",
                    message="Primary key is empty",
                )
            )
    return (passed / checks if checks else 1.0), issues


def timeliness(record: Row, ctx: QualityContext) -> ScoreResult:
    ts_field = ctx.schema.timestamp_field if ctx.schema is not None else "timestamp"
    ts = to_date(record.get(ts_field)) if record.get(ts_field) is not None else None
    if ts is None:
        return 1.0, []
    max_age = float(ctx.config.max_age_seconds)
    age = (ctx.now - ts).total_seconds()
    if age <= 0 or max_age <= 0:
        return 1.0, []
    score = max(0.0, 1.0 - age / max_age)
    issues: List[QualityIssue] = []
    if age > max_age:
        issues.append(
            QualityIssue(type="LATE", field=ts_field, severity="LOW", message=f"Record is {int(age)}s old", value=ts.isoformat())
        )
    return score, issues


@dataclass(frozen=True)
class QualityVerdict:
    metrics: QualityMetrics
    action: str = "ACCEPT"  # ACCEPT | QUARANTINE | FAIL
    reason: Optional[str] = None


class QualityAssessor:
    """Runs the four scorers and applies per-dimension threshold rules."""

    def __init__(
        self,
        *,
        accuracy_scorer: QualityScorer = accuracy,
        consistency_scorer: QualityScorer = consistency,
    ) -> None:
        self.accuracy_scorer = accuracy_scorer
        self.consistency_scorer = consistency_scorer

    def score(self, record: Row, ctx: QualityContext) -> QualityVerdict:
        if not ctx.config.enabled:
            return QualityVerdict(metrics=QualityMetrics(issues=tuple(ctx.extra_issues)))
        comp, i1 = completeness(record, ctx)
        acc, i2 = self.accuracy_scorer(record, ctx)
        cons, i3 = self.consistency_scorer(record, ctx)
        tml, i4 = timeliness(record, ctx)
        metrics = QualityMetrics(
            completeness=round(comp, 4),
            accuracy=round(acc, 4),
            consistency=round(cons, 4),
            timeliness=round(tml, 4),
            overall=round((comp + acc + cons + tml) / 4.0, 4),
            issues=tuple(ctx.extra_issues + i1 + i2 + i3 + i4),
        )
        action = "ACCEPT"
        reason = None
        for dim, value in (
            ("completeness", comp),
            ("accuracy", acc),
            ("consistency", cons),
            ("timeliness", tml),
        ):
            rule = getattr(ctx.config, dim)
            if rule.threshold <= 0 or value >= rule.threshold:
                continue
            msg = f"{dim} {value:.2f} below threshold {rule.threshold:.2f}"
            if rule.action == "FAIL":
                return QualityVerdict(metrics=metrics, action="FAIL", reason=msg)
            if rule.action == "QUARANTINE":
                action, reason = "QUARANTINE", msg
            else:
                log.warning("Quality warning: %s", msg)
        return QualityVerdict(metrics=metrics, action=action, reason=reason)
