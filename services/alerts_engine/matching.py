"""
Per-rule-type breach decisions.

Every function here is pure: it receives the already-fetched inputs for one
(rule, device) pair and returns a Decision. The evaluator turns a Decision
into store writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from alerts_engine.models import DeviceSnapshot, ScheduleContext, Severity, WindowBounds
from alerts_engine.rules import (
    AlertRule,
    Composite,
    OfflineWindow,
    RateOfChange,
    ThresholdAbove,
    ThresholdBelow,
)

LOAD_SHEDDING_MODIFIER = "load-shedding window"


class Outcome(str, Enum):
    BREACH = "breach"
    OK = "ok"
    SKIP = "skip"  # undecidable: no upsert, no clear
    MUTED = "muted"  # breach suppressed by a device-level mute


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    value: Optional[float] = None
    detail: str = ""

    @property
    def breached(self) -> bool:
        return self.outcome == Outcome.BREACH


SKIP = Decision(Outcome.SKIP)


def match_threshold(condition: ThresholdAbove | ThresholdBelow, value: Optional[float]) -> Decision:
    if value is None:
        return SKIP
    if isinstance(condition, ThresholdAbove):
        over = value > condition.threshold
        detail = f"value {value:.2f} above threshold {condition.threshold:g}"
    else:
        over = value < condition.threshold
        detail = f"value {value:.2f} below threshold {condition.threshold:g}"
    return Decision(Outcome.BREACH if over else Outcome.OK, value=value, detail=detail)


def match_rate_of_change(condition: RateOfChange, bounds: Optional[WindowBounds]) -> Decision:
    if bounds is None or not bounds.decidable:
        return SKIP
    elapsed_sec = (bounds.last.ts - bounds.first.ts).total_seconds()
    if elapsed_sec <= 0:
        return SKIP
    delta = bounds.last.value - bounds.first.value
    exceeded = abs(delta) >= condition.threshold
    detail = f"{delta:+.2f} over {elapsed_sec / 60:.1f}m (threshold {condition.threshold:g})"
    return Decision(Outcome.BREACH if exceeded else Outcome.OK, value=delta, detail=detail)


def match_offline(
    condition: OfflineWindow,
    snapshot: Optional[DeviceSnapshot],
    now: datetime,
) -> Decision:
    if snapshot is None or snapshot.last_seen_at is None:
        return SKIP
    age_sec = (now - snapshot.last_seen_at).total_seconds()
    detail = (
        f"offline for {age_sec / 60:.1f} minutes "
        f"(grace {round(condition.grace_sec / 60)}m)"
    )
    if age_sec < condition.grace_sec:
        return Decision(Outcome.OK, value=age_sec, detail=detail)
    if snapshot.is_muted(now):
        return Decision(Outcome.MUTED, value=age_sec, detail=detail)
    return Decision(Outcome.BREACH, value=age_sec, detail=detail)


def match_rule(
    rule: AlertRule,
    now: datetime,
    value: Optional[float] = None,
    bounds: Optional[WindowBounds] = None,
    snapshot: Optional[DeviceSnapshot] = None,
) -> Decision:
    condition = rule.condition
    if isinstance(condition, (ThresholdAbove, ThresholdBelow)):
        return match_threshold(condition, value)
    if isinstance(condition, RateOfChange):
        return match_rate_of_change(condition, bounds)
    if isinstance(condition, OfflineWindow):
        return match_offline(condition, snapshot, now)
    if isinstance(condition, Composite):
        # No combination semantics are defined for composite rules.
        return SKIP
    raise TypeError(f"unhandled rule condition {type(condition).__name__}")


def resolve_severity(rule: AlertRule, context: ScheduleContext) -> tuple[Severity, str]:
    """Rule severity after schedule adjustment, plus a message modifier.

    Load shedding downgrades critical to warning for threshold rules only.
    """
    if context.is_load_shedding and rule.is_threshold_based and rule.severity == Severity.CRITICAL:
        return Severity.WARNING, LOAD_SHEDDING_MODIFIER
    return rule.severity, ""


DEFAULT_TITLES = {
    "rate_of_change": "Rapid change",
    "offline_window": "Device offline",
}


def format_rule_message(rule: AlertRule, decision: Decision, modifier: str = "") -> str:
    title = rule.name or DEFAULT_TITLES.get(rule.rule_type) or rule.display_name
    message = f"{title}: {decision.detail}" if decision.detail else title
    if modifier:
        message = f"{message} ({modifier})"
    return message
