import logging

from shared.logging import log_event

from alerts_engine.errors import RuleConfigError
from alerts_engine.rules import AlertRule, rule_from_record

logger = logging.getLogger(__name__)


async def fetch_enabled_rule_rows(conn) -> list[dict]:
    rows = await conn.fetch(
        """
        SELECT id, org_id, site_id, device_id, metric, rule_type, threshold,
               roc_window_sec, offline_grace_sec, enabled, severity,
               snooze_default_sec, name, description, updated_at
        FROM alert_rules
        WHERE enabled = true
        """
    )
    return [dict(r) for r in rows]


async def get_all_enabled_rules(conn, default_offline_grace_sec: int = 600) -> list[AlertRule]:
    """Load every enabled rule across all organisations.

    Rows that fail validation are logged and left out.
    """
    rules: list[AlertRule] = []
    for row in await fetch_enabled_rule_rows(conn):
        try:
            rules.append(rule_from_record(row, default_offline_grace_sec))
        except RuleConfigError as exc:
            log_event(
                logger,
                "invalid alert rule skipped",
                level="WARNING",
                rule_id=exc.rule_id,
                reason=exc.reason,
            )
    return rules
