"""
Alert evaluation cycle.

One call to AlertsEvaluator.run_once() loads the enabled rules and the device
snapshot, decides every (rule, device) pair, opens/refreshes/clears alerts,
runs the built-in fallback checks and reports status. The evaluator object
owns the in-progress guard; a call that arrives while a cycle is running is
rejected, never queued.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from shared.config import bool_env, float_env, int_env, optional_env
from shared.logging import log_event, log_exception, trace_id_var
from shared.metrics import (
    alerts_engine_active_alerts,
    alerts_engine_alerts_cleared_total,
    alerts_engine_alerts_created_total,
    alerts_engine_cycle_duration_seconds,
    alerts_engine_cycles_total,
    alerts_engine_evaluation_errors_total,
    alerts_engine_notifications_total,
    alerts_engine_rules_evaluated_total,
    alerts_engine_rules_loaded,
)
from shared.utils import ensure_utc, format_timestamp, utc_now

from alerts_engine.alerts_repo import (
    clear_alert_if_exists,
    get_active_alert_counts_for_org,
    get_active_rule_alert_keys,
    upsert_active_alert,
)
from alerts_engine.builtin_checks import (
    HIGH_TEMP_METRIC,
    HighTempMetrics,
    OfflineMetrics,
    evaluate_high_temp_alerts,
    evaluate_offline_alerts,
)
from alerts_engine.matching import Outcome, format_rule_message, match_rule, resolve_severity
from alerts_engine.metric_resolver import MetricResolver
from alerts_engine.models import ActiveAlertCounts, Alert, AlertType, DeviceSnapshot, Severity
from alerts_engine.notifications import PushSettings, send_alert_notification
from alerts_engine.rules import AlertRule, OfflineWindow, RateOfChange
from alerts_engine.rules_repo import get_all_enabled_rules
from alerts_engine.schedules import ScheduleContextCache, get_schedule_context_for_site
from alerts_engine.status import ENGINE_STATUS_KEY, WORKER_STATUS_KEY, mark_heartbeat, upsert_status
from alerts_engine.telemetry_repo import (
    get_device_last_seen,
    get_latest_telemetry_for_metrics,
    get_telemetry_window_bounds,
)

logger = logging.getLogger(__name__)

MIN_RULE_REFRESH_SEC = 60


@dataclass(frozen=True)
class EngineSettings:
    offline_minutes: int = 10
    offline_critical_minutes: int = 60
    high_temp_threshold: float = 60.0
    builtin_checks_enabled: bool = True
    rule_refresh_sec: int = 300
    schedule_tz: str = "UTC"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            offline_minutes=int_env("ALERT_OFFLINE_MINUTES", 10),
            offline_critical_minutes=int_env("ALERT_OFFLINE_CRITICAL_MINUTES", 60),
            high_temp_threshold=float_env("ALERT_HIGH_TEMP_THRESHOLD", 60.0),
            builtin_checks_enabled=bool_env("ALERT_BUILTIN_CHECKS_ENABLED", True),
            rule_refresh_sec=max(MIN_RULE_REFRESH_SEC, int_env("ALERT_RULE_REFRESH_MINUTES", 5) * 60),
            schedule_tz=optional_env("SITE_SCHEDULE_TZ", "UTC") or "UTC",
        )

    @property
    def default_offline_grace_sec(self) -> int:
        return self.offline_minutes * 60


@dataclass
class RuleMetrics:
    evaluated: int = 0
    triggered: int = 0
    cleared: int = 0
    skipped: int = 0
    muted: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class CycleResult:
    success: bool
    skipped: bool = False
    now: Optional[datetime] = None
    rules_loaded: int = 0
    rules: RuleMetrics = field(default_factory=RuleMetrics)
    offline: OfflineMetrics = field(default_factory=OfflineMetrics)
    high_temp: HighTempMetrics = field(default_factory=HighTempMetrics)
    active_counts: ActiveAlertCounts = field(default_factory=ActiveAlertCounts)
    active_counts_by_org: dict[str, ActiveAlertCounts] = field(default_factory=dict)
    duration_ms: int = 0
    error: Optional[str] = None


def schedule_zone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


@dataclass
class Target:
    device_id: str
    site_id: Optional[str]


def resolve_rule_targets(
    rule: AlertRule,
    snapshots: dict[str, DeviceSnapshot],
    devices_by_site: dict[str, list[str]],
    devices_by_org: dict[str, list[str]],
) -> list[Target]:
    """device_id narrows to one device, else site_id to a site, else the whole org."""
    if rule.device_id:
        snap = snapshots.get(rule.device_id)
        site_id = (snap.site_id if snap else None) or rule.site_id
        return [Target(rule.device_id, site_id)]
    if rule.site_id:
        return [Target(device_id, rule.site_id) for device_id in devices_by_site.get(rule.site_id, [])]
    return [
        Target(device_id, snapshots[device_id].site_id)
        for device_id in devices_by_org.get(rule.org_id, [])
    ]


class AlertsEvaluator:
    def __init__(
        self,
        pool,
        settings: Optional[EngineSettings] = None,
        push_settings: Optional[PushSettings] = None,
    ):
        self._pool = pool
        self.settings = settings or EngineSettings.from_env()
        self.push_settings = push_settings or PushSettings.from_env()
        self._schedule_tz = schedule_zone(self.settings.schedule_tz)
        self._running = False
        self._rules: list[AlertRule] = []
        self._rules_loaded_at: Optional[float] = None
        self.last_result: Optional[CycleResult] = None
        self.counters = {
            "cycles": 0,
            "failed_cycles": 0,
            "alerts_created": 0,
            "alerts_cleared": 0,
            "evaluation_errors": 0,
            "last_run_at": None,
        }

    @property
    def running(self) -> bool:
        return self._running

    @property
    def rules(self) -> list[AlertRule]:
        return list(self._rules)

    async def run_once(self, now: Optional[datetime] = None, force_rules: bool = False) -> CycleResult:
        """Run one evaluation cycle. Never raises for data or delivery errors."""
        if self._running:
            log_event(logger, "cycle skipped: already running", level="WARNING")
            alerts_engine_cycles_total.labels(result="skipped").inc()
            return CycleResult(success=True, skipped=True)

        self._running = True
        started = time.monotonic()
        trace_token = trace_id_var.set(str(uuid.uuid4()))
        cycle_at: Optional[datetime] = None
        try:
            cycle_at = ensure_utc(now) or utc_now()
            log_event(logger, "cycle start", at=format_timestamp(cycle_at))
            async with self._pool.acquire() as conn:
                result = await self._run_cycle(conn, cycle_at, force_rules, started)
            alerts_engine_cycles_total.labels(result="ok").inc()
            self.counters["cycles"] += 1
            self.counters["last_run_at"] = format_timestamp(cycle_at)
            self.last_result = result
            return result
        except Exception as exc:
            log_exception(logger, "cycle failed", exc, {"at": format_timestamp(cycle_at)}, exc_info=True)
            alerts_engine_cycles_total.labels(result="failed").inc()
            alerts_engine_evaluation_errors_total.labels(scope="cycle").inc()
            self.counters["failed_cycles"] += 1
            result = CycleResult(success=False, now=cycle_at, error=str(exc) or type(exc).__name__)
            self.last_result = result
            return result
        finally:
            self._running = False
            alerts_engine_cycle_duration_seconds.observe(time.monotonic() - started)
            trace_id_var.reset(trace_token)

    async def _load_rules(self, conn, force: bool) -> list[AlertRule]:
        fresh = (
            self._rules_loaded_at is not None
            and time.monotonic() - self._rules_loaded_at < self.settings.rule_refresh_sec
        )
        if fresh and not force:
            return self._rules
        rules = await get_all_enabled_rules(conn, self.settings.default_offline_grace_sec)
        self._rules = rules
        self._rules_loaded_at = time.monotonic()
        alerts_engine_rules_loaded.set(len(rules))
        log_event(logger, "loaded alert rules", rules=len(rules))
        return rules

    async def _run_cycle(self, conn, now: datetime, force_rules: bool, started: float) -> CycleResult:
        rules = await self._load_rules(conn, force_rules)
        snapshots = await get_device_last_seen(conn)

        has_offline_rule = any(isinstance(r.condition, OfflineWindow) for r in rules)
        has_high_temp_rule = any(r.is_threshold_based and r.metric == HIGH_TEMP_METRIC for r in rules)
        run_offline_check = self.settings.builtin_checks_enabled and not has_offline_rule
        run_high_temp_check = self.settings.builtin_checks_enabled and not has_high_temp_rule

        metrics_needed = {r.metric for r in rules if r.is_threshold_based}
        if run_high_temp_check:
            metrics_needed.add(HIGH_TEMP_METRIC)
        device_ids = [s.id for s in snapshots]
        device_ids += [r.device_id for r in rules if r.device_id and r.device_id not in device_ids]
        samples = await get_latest_telemetry_for_metrics(conn, device_ids, sorted(metrics_needed))
        resolver = MetricResolver(samples, snapshots)

        rule_metrics = RuleMetrics()
        if rules:
            rule_metrics = await self._evaluate_rules(conn, rules, snapshots, resolver, now)

        offline_metrics = OfflineMetrics()
        if run_offline_check:
            offline_metrics = await evaluate_offline_alerts(
                conn,
                snapshots,
                now,
                self.settings.offline_minutes,
                self.settings.offline_critical_minutes,
                notify=lambda alert: self._notify(conn, alert),
            )
        high_temp_metrics = HighTempMetrics()
        if run_high_temp_check:
            high_temp_metrics = await evaluate_high_temp_alerts(
                conn,
                snapshots,
                resolver,
                now,
                self.settings.high_temp_threshold,
                notify=lambda alert: self._notify(conn, alert),
            )
        duration_ms = int((time.monotonic() - started) * 1000)

        org_ids = sorted({r.org_id for r in rules if r.org_id} | {s.org_id for s in snapshots if s.org_id})
        by_org = {}
        for org_id in org_ids:
            by_org[org_id] = await get_active_alert_counts_for_org(conn, org_id)
        active_counts = await get_active_alert_counts_for_org(conn, None)
        alerts_engine_active_alerts.labels(severity=Severity.WARNING.value).set(active_counts.warning)
        alerts_engine_active_alerts.labels(severity=Severity.CRITICAL.value).set(active_counts.critical)

        result = CycleResult(
            success=True,
            now=now,
            rules_loaded=len(rules),
            rules=rule_metrics,
            offline=offline_metrics,
            high_temp=high_temp_metrics,
            active_counts=active_counts,
            active_counts_by_org=by_org,
            duration_ms=duration_ms,
        )
        log_event(
            logger,
            "cycle complete",
            at=format_timestamp(now),
            rules=rule_metrics.as_dict(),
            offline=offline_metrics.as_dict(),
            high_temp=high_temp_metrics.as_dict(),
            active_alerts=active_counts.as_dict(),
            duration_ms=duration_ms,
        )
        await self._report_status(conn, result)
        return result

    async def _evaluate_rules(
        self,
        conn,
        rules: list[AlertRule],
        snapshots: list[DeviceSnapshot],
        resolver: MetricResolver,
        now: datetime,
    ) -> RuleMetrics:
        """Evaluate every (rule, device) pair.

        The active rule-alert keys are read once up front, so an OK outcome only
        clears alerts that were already active when the cycle started.
        """
        metrics = RuleMetrics()
        by_id = {s.id: s for s in snapshots}
        by_site: dict[str, list[str]] = defaultdict(list)
        by_org: dict[str, list[str]] = defaultdict(list)
        for snap in snapshots:
            if snap.site_id:
                by_site[snap.site_id].append(snap.id)
            if snap.org_id:
                by_org[snap.org_id].append(snap.id)

        active_keys = await get_active_rule_alert_keys(conn)
        schedules = ScheduleContextCache(
            lambda site_id: get_schedule_context_for_site(conn, site_id, now, self._schedule_tz)
        )

        for rule in rules:
            for target in resolve_rule_targets(rule, by_id, by_site, by_org):
                metrics.evaluated += 1
                alerts_engine_rules_evaluated_total.labels(rule_type=rule.rule_type).inc()
                try:
                    await self._evaluate_pair(
                        conn, rule, target, by_id.get(target.device_id),
                        resolver, schedules, active_keys, metrics, now,
                    )
                except Exception as exc:
                    metrics.errors += 1
                    self.counters["evaluation_errors"] += 1
                    alerts_engine_evaluation_errors_total.labels(scope="pair").inc()
                    log_exception(
                        logger,
                        "rule evaluation failed",
                        exc,
                        {"rule_id": rule.id, "device_id": target.device_id},
                    )
        return metrics

    async def _evaluate_pair(
        self,
        conn,
        rule: AlertRule,
        target: Target,
        snapshot: Optional[DeviceSnapshot],
        resolver: MetricResolver,
        schedules: ScheduleContextCache,
        active_keys: set[tuple[str, str]],
        metrics: RuleMetrics,
        now: datetime,
    ) -> None:
        value = None
        bounds = None
        if rule.is_threshold_based:
            value = resolver.value_for(target.device_id, rule.metric)
        elif isinstance(rule.condition, RateOfChange):
            bounds = await get_telemetry_window_bounds(
                conn, target.device_id, rule.metric, rule.condition.window_sec, now
            )
        decision = match_rule(rule, now, value=value, bounds=bounds, snapshot=snapshot)

        if decision.outcome == Outcome.SKIP:
            metrics.skipped += 1
            return
        if decision.outcome == Outcome.MUTED:
            metrics.muted += 1
            log_event(
                logger,
                "offline muted device",
                rule_id=rule.id,
                device_id=target.device_id,
                muted_until=snapshot.muted_until if snapshot else None,
            )
            return
        if decision.outcome == Outcome.OK:
            if (target.device_id, rule.id) not in active_keys:
                return
            cleared = await clear_alert_if_exists(conn, target.device_id, AlertType.RULE, now, rule_id=rule.id)
            if cleared:
                metrics.cleared += 1
                self.counters["alerts_cleared"] += 1
                alerts_engine_alerts_cleared_total.labels(alert_type=AlertType.RULE.value).inc()
                log_event(logger, "alert cleared", rule_id=rule.id, device_id=target.device_id)
            return

        context = await schedules.get(target.site_id)
        severity, modifier = resolve_severity(rule, context)
        result = await upsert_active_alert(
            conn,
            site_id=target.site_id,
            device_id=target.device_id,
            alert_type=AlertType.RULE,
            severity=severity,
            message=format_rule_message(rule, decision, modifier),
            now=now,
            rule_id=rule.id,
        )
        metrics.triggered += 1
        if result.is_new:
            await self._notify(conn, result.alert)

    async def _notify(self, conn, alert: Alert) -> None:
        self.counters["alerts_created"] += 1
        alerts_engine_alerts_created_total.labels(alert_type=alert.type.value).inc()
        log_event(
            logger,
            "alert created",
            alert_id=alert.id,
            alert_type=alert.type.value,
            device_id=alert.device_id,
            rule_id=alert.rule_id,
            severity=alert.severity.value,
        )
        try:
            dispatch = await send_alert_notification(conn, alert, settings=self.push_settings)
        except Exception as exc:
            alerts_engine_notifications_total.labels(result="failed").inc()
            log_exception(logger, "notification dispatch failed", exc, {"alert_id": alert.id})
            return
        if dispatch.skipped:
            outcome = "skipped"
        elif dispatch.errors and not dispatch.sent:
            outcome = "failed"
        else:
            outcome = "sent"
        alerts_engine_notifications_total.labels(result=outcome).inc()

    async def _report_status(self, conn, result: CycleResult) -> None:
        last_run_at = format_timestamp(result.now)
        try:
            await upsert_status(
                conn,
                WORKER_STATUS_KEY,
                {
                    "last_run_at": last_run_at,
                    "offline": result.offline.as_dict(),
                    "high_temp": result.high_temp.as_dict(),
                    "rules": result.rules.as_dict(),
                },
            )
            await upsert_status(
                conn,
                ENGINE_STATUS_KEY,
                {
                    "lastRunAt": last_run_at,
                    "lastDurationMs": result.duration_ms,
                    "rulesLoaded": result.rules_loaded,
                    "evaluated": result.rules.evaluated,
                    "triggered": result.rules.triggered,
                    "activeAlertsTotal": result.active_counts.total,
                    "activeCounts": result.active_counts.as_dict(),
                    "activeCountsByOrg": {
                        org_id: counts.as_dict() for org_id, counts in result.active_counts_by_org.items()
                    },
                },
            )
        except Exception as exc:
            log_exception(logger, "failed to persist status", exc)

        try:
            await mark_heartbeat(conn, result.now)
        except Exception as exc:
            log_exception(logger, "failed to record heartbeat timestamp", exc)
