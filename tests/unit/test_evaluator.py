from contextlib import asynccontextmanager
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from alerts_engine import evaluator
from alerts_engine.alerts_repo import UpsertResult
from alerts_engine.builtin_checks import HighTempMetrics, OfflineMetrics
from alerts_engine.models import (
    ActiveAlertCounts,
    Alert,
    AlertStatus,
    AlertType,
    DeviceSnapshot,
    ScheduleContext,
    Severity,
    TelemetrySample,
    WindowBounds,
)
from alerts_engine.notifications import DispatchResult, PushSettings
from alerts_engine.rules import rule_from_record
from factories import NOW, fake_rule_row, fake_snapshot_row
from shared.utils import format_timestamp

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

NO_PUSH = PushSettings(disabled=False, access_token="", enabled_roles=("owner",))


class FakeConn:
    pass


class FakePool:
    def __init__(self):
        self.conn = FakeConn()
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield self.conn


def _alert_from(kwargs, alert_id="alert-1"):
    return Alert(
        id=alert_id,
        site_id=kwargs["site_id"],
        device_id=kwargs["device_id"],
        type=AlertType(kwargs["alert_type"]),
        severity=Severity(kwargs["severity"]),
        message=kwargs["message"],
        status=AlertStatus.ACTIVE,
        first_seen_at=kwargs["now"],
        last_seen_at=kwargs["now"],
        rule_id=kwargs.get("rule_id"),
    )


async def _upsert_new(conn, **kwargs):
    return UpsertResult(alert=_alert_from(kwargs), is_new=True)


async def _upsert_existing(conn, **kwargs):
    return UpsertResult(alert=_alert_from(kwargs), is_new=False)


def _rule(overrides=None):
    return rule_from_record(fake_rule_row(overrides))


def _snapshot(overrides=None):
    return DeviceSnapshot.from_record(fake_snapshot_row(overrides))


def _sample(value, device_id="device-1", metric="supply_temp"):
    return TelemetrySample(device_id, metric, value, NOW)


@pytest.fixture
def store(monkeypatch):
    s = SimpleNamespace(
        rules=AsyncMock(return_value=[]),
        snapshots=AsyncMock(return_value=[_snapshot()]),
        latest=AsyncMock(return_value=[]),
        bounds=AsyncMock(return_value=WindowBounds(None, None, 0)),
        active_keys=AsyncMock(return_value=set()),
        schedule=AsyncMock(return_value=ScheduleContext()),
        upsert=AsyncMock(side_effect=_upsert_new),
        clear=AsyncMock(return_value=True),
        counts=AsyncMock(return_value=ActiveAlertCounts()),
        upsert_status=AsyncMock(),
        heartbeat=AsyncMock(),
        notify=AsyncMock(return_value=DispatchResult(skipped_reason="severity_not_eligible")),
    )
    for name, mock in (
        ("get_all_enabled_rules", s.rules),
        ("get_device_last_seen", s.snapshots),
        ("get_latest_telemetry_for_metrics", s.latest),
        ("get_telemetry_window_bounds", s.bounds),
        ("get_active_rule_alert_keys", s.active_keys),
        ("get_schedule_context_for_site", s.schedule),
        ("upsert_active_alert", s.upsert),
        ("clear_alert_if_exists", s.clear),
        ("get_active_alert_counts_for_org", s.counts),
        ("upsert_status", s.upsert_status),
        ("mark_heartbeat", s.heartbeat),
        ("send_alert_notification", s.notify),
    ):
        monkeypatch.setattr(evaluator, name, mock)
    return s


@pytest.fixture
def engine():
    settings = evaluator.EngineSettings(builtin_checks_enabled=False)
    return evaluator.AlertsEvaluator(FakePool(), settings, push_settings=NO_PUSH)


async def test_threshold_above_breach_upserts_once(store, engine):
    store.rules.return_value = [_rule()]
    store.latest.return_value = [_sample(60)]

    result = await engine.run_once(NOW)

    assert result.success is True
    store.upsert.assert_awaited_once()
    kwargs = store.upsert.await_args.kwargs
    assert kwargs["alert_type"] == AlertType.RULE
    assert kwargs["rule_id"] == "rule-1"
    assert kwargs["device_id"] == "device-1"
    assert kwargs["severity"] == Severity.WARNING
    assert kwargs["site_id"] == "site-1"
    assert kwargs["now"] == NOW
    assert result.rules.triggered == 1
    store.notify.assert_awaited_once()


async def test_latest_telemetry_batched_for_threshold_metrics(store, engine):
    store.rules.return_value = [
        _rule(),
        _rule({"id": "rule-2", "metric": "cop", "rule_type": "threshold_below", "threshold": 2}),
        _rule({"id": "rule-3", "rule_type": "offline_window", "offline_grace_sec": 300}),
    ]
    await engine.run_once(NOW)
    store.latest.assert_awaited_once()
    _, device_ids, metrics = store.latest.await_args.args
    assert device_ids == ["device-1"]
    assert metrics == ["cop", "supply_temp"]


async def test_load_shedding_downgrades_critical_threshold(store, engine):
    store.rules.return_value = [_rule({"severity": "critical"})]
    store.latest.return_value = [_sample(70)]
    store.schedule.return_value = ScheduleContext(is_load_shedding=True)

    await engine.run_once(NOW)

    kwargs = store.upsert.await_args.kwargs
    assert kwargs["severity"] == Severity.WARNING
    assert kwargs["message"].endswith("(load-shedding window)")
    assert store.schedule.await_args.args[1:3] == ("site-1", NOW)


async def test_offline_window_breach_keeps_declared_severity(store, engine):
    store.rules.return_value = [
        _rule({"rule_type": "offline_window", "offline_grace_sec": 300, "severity": "critical"})
    ]
    store.snapshots.return_value = [_snapshot({"last_seen_at": NOW - timedelta(minutes=20)})]
    store.schedule.return_value = ScheduleContext(is_load_shedding=True)

    await engine.run_once(NOW)

    store.upsert.assert_awaited_once()
    kwargs = store.upsert.await_args.kwargs
    assert kwargs["severity"] == Severity.CRITICAL
    assert "offline for 20.0 minutes (grace 5m)" in kwargs["message"]


async def test_offline_window_muted_device_counts_as_muted(store, engine):
    store.rules.return_value = [_rule({"rule_type": "offline_window", "offline_grace_sec": 300})]
    store.snapshots.return_value = [
        _snapshot({
            "last_seen_at": NOW - timedelta(minutes=20),
            "muted_until": NOW + timedelta(hours=1),
        })
    ]

    result = await engine.run_once(NOW)

    store.upsert.assert_not_awaited()
    store.clear.assert_not_awaited()
    assert result.rules.muted == 1
    assert result.rules.skipped == 0


async def test_rate_of_change_with_one_sample_neither_upserts_nor_clears(store, engine):
    store.rules.return_value = [_rule({"rule_type": "rate_of_change", "threshold": 5, "roc_window_sec": 900})]
    store.bounds.return_value = WindowBounds(None, None, 1)
    store.active_keys.return_value = {("device-1", "rule-1")}

    result = await engine.run_once(NOW)

    store.upsert.assert_not_awaited()
    store.clear.assert_not_awaited()
    assert result.rules.skipped == 1
    assert store.bounds.await_args.args[1:] == ("device-1", "supply_temp", 900, NOW)


async def test_rate_of_change_breach(store, engine):
    store.rules.return_value = [_rule({"rule_type": "rate_of_change", "threshold": 5, "roc_window_sec": 900})]
    store.bounds.return_value = WindowBounds(
        first=TelemetrySample("device-1", "supply_temp", 44.0, NOW - timedelta(minutes=10)),
        last=TelemetrySample("device-1", "supply_temp", 51.0, NOW),
        sample_count=6,
    )

    await engine.run_once(NOW)

    kwargs = store.upsert.await_args.kwargs
    assert kwargs["message"] == "Rapid change: +7.00 over 10.0m (threshold 5)"


async def test_recovered_pair_with_active_alert_is_cleared(store, engine):
    store.rules.return_value = [_rule()]
    store.latest.return_value = [_sample(50)]
    store.active_keys.return_value = {("device-1", "rule-1")}

    result = await engine.run_once(NOW)

    store.upsert.assert_not_awaited()
    store.clear.assert_awaited_once()
    assert store.clear.await_args.args[1:4] == ("device-1", AlertType.RULE, NOW)
    assert store.clear.await_args.kwargs == {"rule_id": "rule-1"}
    assert result.rules.cleared == 1


async def test_recovered_pair_without_active_alert_not_cleared(store, engine):
    store.rules.return_value = [_rule()]
    store.latest.return_value = [_sample(50)]

    await engine.run_once(NOW)

    store.clear.assert_not_awaited()


async def test_missing_metric_value_is_skipped(store, engine):
    store.rules.return_value = [_rule()]
    store.active_keys.return_value = {("device-1", "rule-1")}

    result = await engine.run_once(NOW)

    store.upsert.assert_not_awaited()
    store.clear.assert_not_awaited()
    assert result.rules.skipped == 1


async def test_snapshot_blob_used_when_no_structured_sample(store, engine):
    store.rules.return_value = [_rule()]
    store.snapshots.return_value = [_snapshot({"data": {"raw": {"sensor": {"supply_temperature_c": 58}}}})]

    await engine.run_once(NOW)

    store.upsert.assert_awaited_once()


async def test_refresh_of_active_alert_does_not_notify(store, engine):
    store.rules.return_value = [_rule()]
    store.latest.return_value = [_sample(60)]
    store.upsert.side_effect = _upsert_existing

    result = await engine.run_once(NOW)

    assert result.rules.triggered == 1
    store.notify.assert_not_awaited()


async def test_composite_rule_never_alerts(store, engine):
    store.rules.return_value = [_rule({"rule_type": "composite"})]
    store.latest.return_value = [_sample(1000)]

    result = await engine.run_once(NOW)

    store.upsert.assert_not_awaited()
    assert result.rules.skipped == 1


async def test_site_scoped_rule_targets_site_devices(store, engine):
    store.rules.return_value = [_rule({"device_id": None, "site_id": "site-1"})]
    store.snapshots.return_value = [
        _snapshot(),
        _snapshot({"id": "device-2"}),
        _snapshot({"id": "device-3", "site_id": "site-2"}),
    ]
    store.latest.return_value = [_sample(60), _sample(61, "device-2"), _sample(62, "device-3")]

    await engine.run_once(NOW)

    devices = sorted(c.kwargs["device_id"] for c in store.upsert.await_args_list)
    assert devices == ["device-1", "device-2"]


async def test_org_wide_rule_targets_only_org_devices(store, engine):
    store.rules.return_value = [_rule({"device_id": None, "site_id": None})]
    store.snapshots.return_value = [
        _snapshot(),
        _snapshot({"id": "device-2", "site_id": "site-9", "org_id": "org-2"}),
    ]
    store.latest.return_value = [_sample(60), _sample(61, "device-2")]

    result = await engine.run_once(NOW)

    assert [c.kwargs["device_id"] for c in store.upsert.await_args_list] == ["device-1"]
    assert result.rules.evaluated == 1


async def test_status_payload_and_heartbeat(store, engine):
    store.rules.return_value = [_rule(), _rule({"id": "rule-2", "threshold": 80})]
    store.latest.return_value = [_sample(60)]

    async def counts(conn, org_id=None):
        return ActiveAlertCounts(warning=2, critical=1)

    store.counts.side_effect = counts

    result = await engine.run_once(NOW)

    keys = [c.args[1] for c in store.upsert_status.await_args_list]
    assert keys == ["alerts_worker", "alerts_engine"]
    payload = store.upsert_status.await_args_list[1].args[2]
    assert payload["rulesLoaded"] == 2
    assert payload["activeAlertsTotal"] == 3
    assert payload["activeCounts"] == {"warning": 2, "critical": 1, "total": 3}
    assert payload["lastRunAt"] == format_timestamp(NOW)
    assert payload["evaluated"] == 2
    assert payload["triggered"] == 1
    assert payload["activeCountsByOrg"] == {"org-1": {"warning": 2, "critical": 1, "total": 3}}
    worker_payload = store.upsert_status.await_args_list[0].args[2]
    assert worker_payload["rules"]["triggered"] == 1
    assert set(worker_payload) == {"last_run_at", "offline", "high_temp", "rules"}
    store.heartbeat.assert_awaited_once_with(engine._pool.conn, NOW)
    assert result.active_counts.total == 3


async def test_rule_cache_reused_until_forced(store, engine):
    store.rules.return_value = [_rule()]

    await engine.run_once(NOW)
    await engine.run_once(NOW + timedelta(minutes=1))
    assert store.rules.await_count == 1

    await engine.run_once(NOW + timedelta(minutes=2), force_rules=True)
    assert store.rules.await_count == 2


async def test_builtin_checks_run_without_covering_rules(store, monkeypatch):
    offline = AsyncMock(return_value=OfflineMetrics(offlineCount=1))
    high_temp = AsyncMock(return_value=HighTempMetrics(evaluatedCount=1))
    monkeypatch.setattr(evaluator, "evaluate_offline_alerts", offline)
    monkeypatch.setattr(evaluator, "evaluate_high_temp_alerts", high_temp)
    engine = evaluator.AlertsEvaluator(FakePool(), evaluator.EngineSettings(), push_settings=NO_PUSH)

    result = await engine.run_once(NOW)

    offline.assert_awaited_once()
    high_temp.assert_awaited_once()
    assert result.offline.offlineCount == 1
    assert store.latest.await_args.args[2] == ["supply_temp"]


async def test_builtin_checks_yield_to_rules(store, monkeypatch):
    offline = AsyncMock(return_value=OfflineMetrics())
    high_temp = AsyncMock(return_value=HighTempMetrics())
    monkeypatch.setattr(evaluator, "evaluate_offline_alerts", offline)
    monkeypatch.setattr(evaluator, "evaluate_high_temp_alerts", high_temp)
    store.rules.return_value = [
        _rule(),
        _rule({"id": "rule-2", "rule_type": "offline_window", "offline_grace_sec": 600}),
    ]
    engine = evaluator.AlertsEvaluator(FakePool(), evaluator.EngineSettings(), push_settings=NO_PUSH)

    await engine.run_once(NOW)

    offline.assert_not_awaited()
    high_temp.assert_not_awaited()


async def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("ALERT_OFFLINE_MINUTES", "15")
    monkeypatch.setenv("ALERT_RULE_REFRESH_MINUTES", "0")
    monkeypatch.setenv("ALERT_BUILTIN_CHECKS_ENABLED", "false")
    settings = evaluator.EngineSettings.from_env()
    assert settings.default_offline_grace_sec == 900
    assert settings.rule_refresh_sec == 60
    assert settings.builtin_checks_enabled is False
