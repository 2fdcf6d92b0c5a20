"""
Prometheus metrics for the alerts engine.

The health server exposes them through prometheus_client.generate_latest().
"""

from prometheus_client import Counter, Gauge, Histogram

alerts_engine_cycles_total = Counter(
    "greenbro_alerts_engine_cycles_total",
    "Evaluation cycles by outcome",
    ["result"],  # ok | failed | skipped
)

alerts_engine_rules_evaluated_total = Counter(
    "greenbro_alerts_engine_rules_evaluated_total",
    "Total (rule, device) evaluations",
    ["rule_type"],
)

alerts_engine_alerts_created_total = Counter(
    "greenbro_alerts_engine_alerts_created_total",
    "Alerts opened by the engine",
    ["alert_type"],
)

alerts_engine_alerts_cleared_total = Counter(
    "greenbro_alerts_engine_alerts_cleared_total",
    "Active alerts cleared by the engine",
    ["alert_type"],
)

alerts_engine_evaluation_errors_total = Counter(
    "greenbro_alerts_engine_evaluation_errors_total",
    "Errors raised while evaluating a cycle or a single (rule, device) pair",
    ["scope"],  # cycle | pair
)

alerts_engine_notifications_total = Counter(
    "greenbro_alerts_engine_notifications_total",
    "Notification dispatch attempts for new alerts",
    ["result"],  # sent | skipped | failed
)

alerts_engine_active_alerts = Gauge(
    "greenbro_alerts_engine_active_alerts",
    "Active alerts after the last cycle",
    ["severity"],
)

alerts_engine_rules_loaded = Gauge(
    "greenbro_alerts_engine_rules_loaded",
    "Enabled rules loaded in the last cycle",
)

alerts_engine_cycle_duration_seconds = Histogram(
    "greenbro_alerts_engine_cycle_duration_seconds",
    "Duration of an evaluation cycle in seconds",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)
