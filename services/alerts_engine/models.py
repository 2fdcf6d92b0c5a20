"""Records the engine reads and writes."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from shared.utils import ensure_utc, to_float


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    CLEARED = "cleared"


class AlertType(str, Enum):
    OFFLINE = "offline"
    HIGH_TEMP = "high_temp"
    RULE = "rule"


@dataclass
class Alert:
    id: str
    site_id: Optional[str]
    device_id: Optional[str]
    type: AlertType
    severity: Severity
    message: str
    status: AlertStatus
    first_seen_at: datetime
    last_seen_at: datetime
    rule_id: Optional[str] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    muted_until: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE

    @classmethod
    def from_record(cls, row) -> "Alert":
        return cls(
            id=str(row["id"]),
            site_id=_opt_str(row.get("site_id")),
            device_id=_opt_str(row.get("device_id")),
            type=AlertType(row["type"]),
            severity=Severity(row["severity"]),
            message=row["message"],
            status=AlertStatus(row["status"]),
            first_seen_at=ensure_utc(row["first_seen_at"]),
            last_seen_at=ensure_utc(row["last_seen_at"]),
            rule_id=_opt_str(row.get("rule_id")),
            acknowledged_by=_opt_str(row.get("acknowledged_by")),
            acknowledged_at=ensure_utc(row.get("acknowledged_at")),
            muted_until=ensure_utc(row.get("muted_until")),
        )


@dataclass
class DeviceSnapshot:
    """Last-seen view of one device plus its raw snapshot blob."""

    id: str
    site_id: Optional[str]
    org_id: Optional[str]
    last_seen_at: Optional[datetime]
    muted_until: Optional[datetime] = None
    data: dict = field(default_factory=dict)

    def is_muted(self, now: datetime) -> bool:
        return self.muted_until is not None and self.muted_until > now

    @classmethod
    def from_record(cls, row) -> "DeviceSnapshot":
        data = row.get("data")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                data = {}
        return cls(
            id=str(row["id"]),
            site_id=_opt_str(row.get("site_id")),
            org_id=_opt_str(row.get("org_id")),
            last_seen_at=ensure_utc(row.get("last_seen_at")),
            muted_until=ensure_utc(row.get("muted_until")),
            data=data if isinstance(data, dict) else {},
        )


@dataclass(frozen=True)
class TelemetrySample:
    device_id: str
    metric: str
    value: float
    ts: datetime


@dataclass(frozen=True)
class WindowBounds:
    """Earliest and latest sample of a metric within a window.

    Both ends are None when the window holds fewer than two samples.
    """

    first: Optional[TelemetrySample]
    last: Optional[TelemetrySample]
    sample_count: int = 0

    @property
    def decidable(self) -> bool:
        return self.first is not None and self.last is not None and self.sample_count >= 2


@dataclass(frozen=True)
class ScheduleContext:
    is_load_shedding: bool = False
    is_tou_peak: bool = False


@dataclass
class ActiveAlertCounts:
    """Active alert totals; only the warning and critical tiers are counted."""

    warning: int = 0
    critical: int = 0

    @property
    def total(self) -> int:
        return self.warning + self.critical

    def __add__(self, other: "ActiveAlertCounts") -> "ActiveAlertCounts":
        return ActiveAlertCounts(
            warning=self.warning + other.warning,
            critical=self.critical + other.critical,
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "warning": self.warning,
            "critical": self.critical,
            "total": self.total,
        }


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def sample_from_record(row) -> Optional[TelemetrySample]:
    value = to_float(row.get("value"))
    if value is None:
        return None
    return TelemetrySample(
        device_id=str(row["device_id"]),
        metric=row["metric"],
        value=value,
        ts=ensure_utc(row["ts"]),
    )
