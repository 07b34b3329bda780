"""Rule Evaluator — static threshold rules over readings and rolling state.

evaluate() is a pure function: (latest reading, aggregate snapshot, equipment
profile, rules) → candidate firings. Whether a firing opens, refreshes or
escalates an alert is decided by the alert sink.

The same comparison code drives the health score shown on the read path;
the score adds soft bands under the max thresholds that do not alert.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Iterable, Mapping

import yaml

from core.errors import RuleConfigError
from models.alert import AlertSeverity
from services.reading import Reading
from services.registry import EquipmentProfile, Thresholds
from services.rolling_state import AggregateSnapshot

logger = logging.getLogger("telemetry.rules")


class Comparison(str, enum.Enum):
    EXCEEDS_MAX = "exceeds_max"
    EXCEEDS_MAX_SOFT = "exceeds_max_soft"   # plus lower-severity band under max
    OUT_OF_BAND = "out_of_band"


class Basis(str, enum.Enum):
    LATEST = "latest"   # instantaneous value
    MEAN = "mean"       # rolling-window mean


SEVERITY_RANK = {
    AlertSeverity.info: 0,
    AlertSeverity.warning: 1,
    AlertSeverity.critical: 2,
}

_THRESHOLD_FIELDS = {f.name for f in fields(Thresholds)}

DEFAULT_WARNING_MESSAGE = "{metric_label} ({value}) is approaching maximum threshold ({threshold})"


@dataclass(frozen=True)
class AlertRule:
    rule_id: str
    metric: str
    comparison: Comparison
    threshold: str
    severity: AlertSeverity
    title: str
    message: str
    min_threshold: str | None = None
    warning_ratio: float | None = None
    warning_severity: AlertSeverity | None = None
    warning_message: str = DEFAULT_WARNING_MESSAGE
    basis: Basis = Basis.LATEST


@dataclass(frozen=True)
class RuleFiring:
    rule_id: str
    metric: str
    severity: AlertSeverity
    value: float
    threshold: float
    title: str
    message: str
    soft: bool = False


DEFAULT_RULES: tuple[AlertRule, ...] = (
    AlertRule(
        rule_id="temperature_high",
        metric="temperature",
        comparison=Comparison.EXCEEDS_MAX,
        threshold="max_temperature",
        severity=AlertSeverity.critical,
        title="High Temperature Alert",
        message="Temperature ({value}°C) exceeds maximum threshold ({threshold}°C)",
    ),
    AlertRule(
        rule_id="vibration_high",
        metric="vibration",
        comparison=Comparison.EXCEEDS_MAX,
        threshold="max_vibration",
        severity=AlertSeverity.warning,
        title="High Vibration Alert",
        message="Vibration ({value}) exceeds maximum threshold ({threshold})",
    ),
    AlertRule(
        rule_id="pressure_range",
        metric="pressure",
        comparison=Comparison.OUT_OF_BAND,
        threshold="max_pressure",
        min_threshold="min_pressure",
        severity=AlertSeverity.warning,
        basis=Basis.LATEST,
        title="Pressure Out of Range",
        message="Pressure ({value}) is outside normal range ({min_threshold}-{threshold})",
    ),
)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _fmt(value: float | None) -> str:
    return "" if value is None else f"{value:g}"


def metric_value(
    rule: AlertRule, reading: Reading | None, aggregate: AggregateSnapshot | None,
) -> float | None:
    if rule.basis == Basis.MEAN:
        return aggregate.mean.get(rule.metric) if aggregate else None
    if reading is not None and rule.metric in reading.metrics:
        return reading.metrics[rule.metric]
    return aggregate.latest.get(rule.metric) if aggregate else None


def classify(
    rule: AlertRule, value: float, thresholds: Thresholds,
) -> tuple[AlertSeverity, bool] | None:
    """Return (severity, soft) when *value* breaks *rule*, else None."""
    upper = thresholds.get(rule.threshold)
    if upper is None:
        return None

    if rule.comparison == Comparison.OUT_OF_BAND:
        lower = thresholds.get(rule.min_threshold) if rule.min_threshold else None
        if value > upper or (lower is not None and value < lower):
            return rule.severity, False
        return None

    if value > upper:
        return rule.severity, False
    if (
        rule.comparison == Comparison.EXCEEDS_MAX_SOFT
        and rule.warning_ratio is not None
        and value > upper * rule.warning_ratio
    ):
        return rule.warning_severity or rule.severity, True
    return None


def evaluate(
    reading: Reading | None,
    aggregate: AggregateSnapshot | None,
    profile: EquipmentProfile,
    rules: Iterable[AlertRule] = DEFAULT_RULES,
) -> frozenset[RuleFiring]:
    firings: set[RuleFiring] = set()
    for rule in rules:
        value = metric_value(rule, reading, aggregate)
        # absence is not evidence of a problem
        if value is None:
            continue
        result = classify(rule, value, profile.thresholds)
        if result is None:
            continue
        severity, soft = result
        upper = profile.thresholds.get(rule.threshold)
        lower = profile.thresholds.get(rule.min_threshold) if rule.min_threshold else None
        template = rule.warning_message if soft else rule.message
        params = {
            "metric": rule.metric,
            "metric_label": rule.metric.capitalize(),
            "value": _fmt(value),
            "threshold": _fmt(upper),
            "min_threshold": _fmt(lower),
        }
        firings.add(RuleFiring(
            rule_id=rule.rule_id,
            metric=rule.metric,
            severity=severity,
            value=value,
            threshold=upper,
            title=rule.title,
            message=template.format(**params),
            soft=soft,
        ))
    return frozenset(firings)


# ---------------------------------------------------------------------------
# Health score (read path)
# ---------------------------------------------------------------------------

# Two-tier bands for scoring only; alerting stays on the hard thresholds.
HEALTH_RULES: tuple[AlertRule, ...] = (
    replace(
        DEFAULT_RULES[0],
        comparison=Comparison.EXCEEDS_MAX_SOFT,
        warning_ratio=0.9,
        warning_severity=AlertSeverity.warning,
    ),
    replace(
        DEFAULT_RULES[1],
        comparison=Comparison.EXCEEDS_MAX_SOFT,
        warning_ratio=0.8,
        warning_severity=AlertSeverity.info,
    ),
    DEFAULT_RULES[2],
)

# rule_id → (penalty when over max / out of band, penalty in the soft band)
HEALTH_PENALTIES = {
    "temperature_high": (20, 10),
    "vibration_high": (25, 10),
    "pressure_range": (15, 0),
}


def health_score(
    values: Mapping[str, float],
    profile: EquipmentProfile,
    rules: Iterable[AlertRule] = HEALTH_RULES,
) -> int:
    """0..100 score from the latest metric values; 50 when nothing is known."""
    if not values:
        return 50
    score = 100
    for rule in rules:
        penalty = HEALTH_PENALTIES.get(rule.rule_id)
        value = values.get(rule.metric)
        if penalty is None or value is None:
            continue
        result = classify(rule, value, profile.thresholds)
        if result is not None:
            score -= penalty[1] if result[1] else penalty[0]
    return max(0, min(100, score))


def recommendations(score: int, days_since_maintenance: int | None = None) -> list[dict]:
    recs: list[dict] = []
    if score < 30:
        recs.append({
            "priority": "high",
            "action": "Schedule immediate inspection",
            "reason": "Equipment health score is critically low",
        })
    elif score < 60:
        recs.append({
            "priority": "medium",
            "action": "Schedule preventive maintenance",
            "reason": "Equipment health score indicates potential issues",
        })
    if days_since_maintenance is not None and days_since_maintenance > 90:
        recs.append({
            "priority": "medium",
            "action": "Schedule routine maintenance",
            "reason": f"{days_since_maintenance} days since last maintenance",
        })
    return recs


# ---------------------------------------------------------------------------
# Rule configuration
# ---------------------------------------------------------------------------

def _enum(cls, raw, rule_id: str, key: str):
    try:
        return cls(raw)
    except ValueError:
        raise RuleConfigError(f"rule {rule_id}: invalid {key} {raw!r}")


def _rule_from_dict(data: dict) -> AlertRule:
    rule_id = data.get("id") or data.get("rule_id")
    if not rule_id:
        raise RuleConfigError(f"rule without id: {data!r}")
    for key in ("metric", "comparison", "threshold", "severity", "title", "message"):
        if not data.get(key):
            raise RuleConfigError(f"rule {rule_id}: missing '{key}'")

    comparison = _enum(Comparison, data["comparison"], rule_id, "comparison")
    threshold = data["threshold"]
    min_threshold = data.get("min_threshold")
    for name in (threshold, min_threshold):
        if name is not None and name not in _THRESHOLD_FIELDS:
            raise RuleConfigError(f"rule {rule_id}: unknown threshold field {name!r}")
    if comparison == Comparison.OUT_OF_BAND and not min_threshold:
        raise RuleConfigError(f"rule {rule_id}: out_of_band needs min_threshold")

    ratio = data.get("warning_ratio")
    if ratio is not None:
        try:
            ratio = float(ratio)
        except (TypeError, ValueError):
            raise RuleConfigError(f"rule {rule_id}: warning_ratio is not numeric")
    if comparison == Comparison.EXCEEDS_MAX_SOFT:
        if ratio is None or not 0 < ratio < 1:
            raise RuleConfigError(f"rule {rule_id}: warning_ratio must be in (0, 1)")
    warning_severity = data.get("warning_severity")

    return AlertRule(
        rule_id=str(rule_id),
        metric=data["metric"],
        comparison=comparison,
        threshold=threshold,
        min_threshold=min_threshold,
        severity=_enum(AlertSeverity, data["severity"], rule_id, "severity"),
        warning_ratio=ratio,
        warning_severity=(
            _enum(AlertSeverity, warning_severity, rule_id, "warning_severity")
            if warning_severity else None
        ),
        warning_message=data.get("warning_message") or DEFAULT_WARNING_MESSAGE,
        basis=_enum(Basis, data.get("basis", "latest"), rule_id, "basis"),
        title=data["title"],
        message=data["message"],
    )


def load_rules(path: str | Path | None) -> tuple[AlertRule, ...]:
    """Load rules from a YAML file, or the built-in set when *path* is empty."""
    if not path:
        logger.info("Using %d built-in alert rules", len(DEFAULT_RULES))
        return DEFAULT_RULES
    p = Path(path)
    if not p.exists():
        raise RuleConfigError(f"rules file not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise RuleConfigError(f"rules file {p} is not valid YAML: {exc}")
    if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
        raise RuleConfigError(f"rules file {p} must contain a 'rules' list")

    parsed: list[AlertRule] = []
    for item in data["rules"]:
        if not isinstance(item, dict):
            raise RuleConfigError(f"rules file {p}: rule entries must be mappings")
        if item.get("enabled", True):
            parsed.append(_rule_from_dict(item))
    rules = tuple(parsed)
    ids = [r.rule_id for r in rules]
    duplicates = {i for i in ids if ids.count(i) > 1}
    if duplicates:
        raise RuleConfigError(f"duplicate rule ids: {', '.join(sorted(duplicates))}")
    logger.info("Loaded %d alert rules from %s", len(rules), p.name)
    return rules
