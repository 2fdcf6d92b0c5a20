"""
Fallback checks that run when no rule covers the same condition:
stale devices (``offline``) and hot supply water (``high_temp``).
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable

from shared.logging import log_event

from alerts_engine.alerts_repo import clear_alert_if_exists, upsert_active_alert
from alerts_engine.metric_resolver import MetricResolver
from alerts_engine.models import Alert, AlertType, DeviceSnapshot, Severity

logger = logging.getLogger(__name__)

HIGH_TEMP_METRIC = "supply_temp"

Notifier = Callable[[Alert], Awaitable[None]]


@dataclass
class OfflineMetrics:
    offlineCount: int = 0
    clearedCount: int = 0
    mutedCount: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class HighTempMetrics:
    evaluatedCount: int = 0
    overThresholdCount: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


async def evaluate_offline_alerts(
    conn,
    snapshots: Iterable[DeviceSnapshot],
    now: datetime,
    offline_minutes: int,
    critical_minutes: int,
    notify: Notifier,
) -> OfflineMetrics:
    metrics = OfflineMetrics()
    for snap in snapshots:
        if snap.last_seen_at is None:
            continue
        minutes_offline = (now - snap.last_seen_at).total_seconds() / 60
        if minutes_offline < offline_minutes:
            metrics.clearedCount += 1
            await clear_alert_if_exists(conn, snap.id, AlertType.OFFLINE, now)
            continue

        metrics.offlineCount += 1
        if snap.is_muted(now):
            metrics.mutedCount += 1
            log_event(logger, "offline muted device", device_id=snap.id, muted_until=snap.muted_until)
            continue

        if minutes_offline >= critical_minutes:
            severity = Severity.CRITICAL
            message = f"Device offline for more than {critical_minutes} minutes"
        else:
            severity = Severity.WARNING
            message = f"Device offline for more than {offline_minutes} minutes"
        result = await upsert_active_alert(
            conn,
            site_id=snap.site_id,
            device_id=snap.id,
            alert_type=AlertType.OFFLINE,
            severity=severity,
            message=message,
            now=now,
        )
        if result.is_new:
            await notify(result.alert)

    log_event(logger, "offline check complete", **metrics.as_dict())
    return metrics


async def evaluate_high_temp_alerts(
    conn,
    snapshots: Iterable[DeviceSnapshot],
    resolver: MetricResolver,
    now: datetime,
    threshold: float,
    notify: Notifier,
) -> HighTempMetrics:
    metrics = HighTempMetrics()
    for snap in snapshots:
        temp = resolver.value_for(snap.id, HIGH_TEMP_METRIC)
        if temp is None:
            continue
        metrics.evaluatedCount += 1
        if temp <= threshold:
            await clear_alert_if_exists(conn, snap.id, AlertType.HIGH_TEMP, now)
            continue
        metrics.overThresholdCount += 1
        result = await upsert_active_alert(
            conn,
            site_id=snap.site_id,
            device_id=snap.id,
            alert_type=AlertType.HIGH_TEMP,
            severity=Severity.CRITICAL,
            message=f"Supply temperature high: {temp:.1f}C (limit {threshold:g}C)",
            now=now,
        )
        if result.is_new:
            await notify(result.alert)

    log_event(logger, "high temp check complete", **metrics.as_dict())
    return metrics
