"""
Alert rule model.

A persisted rule row carries a string ``rule_type`` plus a handful of optional
numeric columns whose meaning depends on that type. ``rule_from_record``
turns the row into an ``AlertRule`` whose ``condition`` is exactly one of the
condition classes below, so the evaluator matches on the condition class and
never on the raw tag.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from shared.utils import ensure_utc, to_float

from alerts_engine.errors import RuleConfigError
from alerts_engine.models import Severity

RULE_TYPES = (
    "threshold_above",
    "threshold_below",
    "rate_of_change",
    "offline_window",
    "composite",
)
RULE_SEVERITIES = (Severity.WARNING, Severity.CRITICAL)


@dataclass(frozen=True)
class ThresholdAbove:
    threshold: float


@dataclass(frozen=True)
class ThresholdBelow:
    threshold: float


@dataclass(frozen=True)
class RateOfChange:
    threshold: float
    window_sec: int


@dataclass(frozen=True)
class OfflineWindow:
    grace_sec: int


@dataclass(frozen=True)
class Composite:
    """Declared rule type with no defined combination semantics; never fires."""

    raw: Optional[dict] = None


RuleCondition = Union[ThresholdAbove, ThresholdBelow, RateOfChange, OfflineWindow, Composite]


@dataclass(frozen=True)
class AlertRule:
    id: str
    org_id: str
    metric: str
    rule_type: str
    condition: RuleCondition
    severity: Severity
    site_id: Optional[str] = None
    device_id: Optional[str] = None
    enabled: bool = True
    snooze_default_sec: Optional[int] = None
    name: Optional[str] = None
    description: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_threshold_based(self) -> bool:
        return isinstance(self.condition, (ThresholdAbove, ThresholdBelow))

    @property
    def display_name(self) -> str:
        return self.name or f"{self.metric} {self.rule_type}"


def _positive_int(value: Any, field_name: str, rule_id: str) -> int:
    number = to_float(value)
    if number is None or number <= 0:
        raise RuleConfigError(rule_id, f"{field_name} must be a positive number")
    return int(number)


def _required_float(value: Any, field_name: str, rule_id: str) -> float:
    number = to_float(value)
    if number is None:
        raise RuleConfigError(rule_id, f"{field_name} is required")
    return number


def _positive_float(value: Any, field_name: str, rule_id: str) -> float:
    number = to_float(value)
    if number is None or number <= 0:
        raise RuleConfigError(rule_id, f"{field_name} must be a positive number")
    return number


def build_condition(
    rule_type: str,
    record,
    rule_id: str,
    default_offline_grace_sec: int,
) -> RuleCondition:
    if rule_type == "threshold_above":
        return ThresholdAbove(_required_float(record.get("threshold"), "threshold", rule_id))
    if rule_type == "threshold_below":
        return ThresholdBelow(_required_float(record.get("threshold"), "threshold", rule_id))
    if rule_type == "rate_of_change":
        return RateOfChange(
            threshold=_positive_float(record.get("threshold"), "threshold", rule_id),
            window_sec=_positive_int(record.get("roc_window_sec"), "roc_window_sec", rule_id),
        )
    if rule_type == "offline_window":
        grace = record.get("offline_grace_sec")
        if grace is None:
            return OfflineWindow(default_offline_grace_sec)
        return OfflineWindow(_positive_int(grace, "offline_grace_sec", rule_id))
    if rule_type == "composite":
        raw = record.get("conditions")
        return Composite(raw if isinstance(raw, dict) else None)
    raise RuleConfigError(rule_id, f"unknown rule_type {rule_type!r}")


def rule_from_record(record, default_offline_grace_sec: int = 600) -> AlertRule:
    """Build an AlertRule from an alert_rules row.

    Raises RuleConfigError when the row lacks a field its rule_type needs.
    """
    rule_id = str(record["id"])
    rule_type = str(record.get("rule_type") or "").lower()
    try:
        severity = Severity(str(record.get("severity") or "warning").lower())
    except ValueError as exc:
        raise RuleConfigError(rule_id, f"unknown severity {record.get('severity')!r}") from exc
    if severity not in RULE_SEVERITIES:
        raise RuleConfigError(rule_id, f"severity {severity.value!r} is not allowed on rules")

    condition = build_condition(rule_type, record, rule_id, default_offline_grace_sec)

    snooze = record.get("snooze_default_sec")
    return AlertRule(
        id=rule_id,
        org_id=str(record["org_id"]),
        metric=record["metric"],
        rule_type=rule_type,
        condition=condition,
        severity=severity,
        site_id=None if record.get("site_id") is None else str(record["site_id"]),
        device_id=None if record.get("device_id") is None else str(record["device_id"]),
        enabled=bool(record.get("enabled", True)),
        snooze_default_sec=int(snooze) if snooze is not None else None,
        name=record.get("name"),
        description=record.get("description"),
        updated_at=ensure_utc(record.get("updated_at")),
    )
