"""
Alert lifecycle store.

An alert row is ``active`` until cleared; a cleared row is terminal and a
later breach inserts a new row. At most one active row exists per
(device_id, type, rule_id), rule_id being NULL for the built-in types, so
for built-in types the key is just (device_id, type). The evaluator is the
only writer of status/severity/message/last_seen_at; the acknowledge and
mute operations touch only acknowledged_* and muted_until.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from shared.utils import utc_now

from alerts_engine.models import ActiveAlertCounts, Alert, AlertType, Severity

ALERT_COLUMNS = """
    id, site_id, device_id, rule_id, type, severity, message, status,
    first_seen_at, last_seen_at, acknowledged_by, acknowledged_at, muted_until
"""


class UpsertResult(NamedTuple):
    alert: Alert
    is_new: bool


def _type_value(alert_type: AlertType | str) -> str:
    return AlertType(alert_type).value


def _rows_affected(status: str) -> int:
    """Parse asyncpg's command tag, e.g. 'UPDATE 1'."""
    if not status:
        return 0
    parts = status.split()
    try:
        return int(parts[-1])
    except (ValueError, IndexError):
        return 0


async def find_active_alert(
    conn,
    device_id: str,
    alert_type: AlertType | str,
    rule_id: Optional[str] = None,
) -> Optional[Alert]:
    row = await conn.fetchrow(
        f"""
        SELECT {ALERT_COLUMNS}
        FROM alerts
        WHERE device_id = $1
          AND type = $2
          AND status = 'active'
          AND rule_id IS NOT DISTINCT FROM $3::uuid
        ORDER BY first_seen_at DESC
        LIMIT 1
        """,
        device_id,
        _type_value(alert_type),
        rule_id,
    )
    return Alert.from_record(row) if row else None


async def get_alert(conn, alert_id: str) -> Optional[Alert]:
    row = await conn.fetchrow(f"SELECT {ALERT_COLUMNS} FROM alerts WHERE id = $1", alert_id)
    return Alert.from_record(row) if row else None


async def insert_alert(
    conn,
    site_id: Optional[str],
    device_id: str,
    alert_type: AlertType | str,
    severity: Severity | str,
    message: str,
    now: datetime,
    rule_id: Optional[str] = None,
) -> Alert:
    row = await conn.fetchrow(
        f"""
        INSERT INTO alerts (
            site_id, device_id, rule_id, type, severity, message, status,
            first_seen_at, last_seen_at, acknowledged_by, acknowledged_at, muted_until
        )
        VALUES ($1, $2, $3::uuid, $4, $5, $6, 'active', $7, $7, NULL, NULL, NULL)
        RETURNING {ALERT_COLUMNS}
        """,
        site_id,
        device_id,
        rule_id,
        _type_value(alert_type),
        Severity(severity).value,
        message,
        now,
    )
    return Alert.from_record(row)


async def update_alert(
    conn,
    alert_id: str,
    severity: Severity | str,
    message: str,
    now: datetime,
) -> Alert:
    row = await conn.fetchrow(
        f"""
        UPDATE alerts
        SET severity = $2,
            message = $3,
            last_seen_at = $4
        WHERE id = $1
        RETURNING {ALERT_COLUMNS}
        """,
        alert_id,
        Severity(severity).value,
        message,
        now,
    )
    return Alert.from_record(row)


async def upsert_active_alert(
    conn,
    *,
    site_id: Optional[str],
    device_id: str,
    alert_type: AlertType | str,
    severity: Severity | str,
    message: str,
    now: datetime,
    rule_id: Optional[str] = None,
) -> UpsertResult:
    """
    Refresh the active alert for (device, type, rule) or open a new one.

    is_new is True only when a row was inserted; callers notify on that alone.
    """
    existing = await find_active_alert(conn, device_id, alert_type, rule_id)
    if existing is not None:
        alert = await update_alert(conn, existing.id, severity, message, now)
        return UpsertResult(alert=alert, is_new=False)
    alert = await insert_alert(
        conn,
        site_id=site_id,
        device_id=device_id,
        alert_type=alert_type,
        severity=severity,
        message=message,
        now=now,
        rule_id=rule_id,
    )
    return UpsertResult(alert=alert, is_new=True)


async def clear_alert_if_exists(
    conn,
    device_id: str,
    alert_type: AlertType | str,
    now: datetime,
    rule_id: Optional[str] = None,
) -> bool:
    """Mark the matching active row cleared. Returns False when none was active."""
    result = await conn.execute(
        """
        UPDATE alerts
        SET status = 'cleared',
            last_seen_at = $3
        WHERE device_id = $1
          AND type = $2
          AND status = 'active'
          AND rule_id IS NOT DISTINCT FROM $4::uuid
        """,
        device_id,
        _type_value(alert_type),
        now,
        rule_id,
    )
    return _rows_affected(result) > 0


async def acknowledge_alert(
    conn,
    alert_id: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> Optional[Alert]:
    row = await conn.fetchrow(
        f"""
        UPDATE alerts
        SET acknowledged_by = $2,
            acknowledged_at = $3
        WHERE id = $1
        RETURNING {ALERT_COLUMNS}
        """,
        alert_id,
        user_id,
        now or utc_now(),
    )
    return Alert.from_record(row) if row else None


async def mute_alert(
    conn,
    alert_id: str,
    minutes: int,
    now: Optional[datetime] = None,
) -> Optional[Alert]:
    if minutes <= 0:
        raise ValueError("minutes must be positive")
    muted_until = (now or utc_now()) + timedelta(minutes=minutes)
    row = await conn.fetchrow(
        f"""
        UPDATE alerts
        SET muted_until = $2
        WHERE id = $1
        RETURNING {ALERT_COLUMNS}
        """,
        alert_id,
        muted_until,
    )
    return Alert.from_record(row) if row else None


async def get_active_alert_counts_for_org(conn, org_id: Optional[str] = None) -> ActiveAlertCounts:
    """Active warning/critical counts for one organisation, or the whole fleet."""
    org_filter = "AND s.organisation_id = $1" if org_id else ""
    args = [org_id] if org_id else []
    rows = await conn.fetch(
        f"""
        SELECT a.severity, COUNT(*)::int AS count
        FROM alerts a
        LEFT JOIN devices d ON d.id = a.device_id
        LEFT JOIN sites s ON s.id = COALESCE(a.site_id, d.site_id)
        WHERE a.status = 'active'
          {org_filter}
        GROUP BY a.severity
        """,
        *args,
    )
    counts = ActiveAlertCounts()
    for row in rows:
        if row["severity"] == Severity.WARNING.value:
            counts.warning += int(row["count"])
        elif row["severity"] == Severity.CRITICAL.value:
            counts.critical += int(row["count"])
    return counts


async def get_active_rule_alert_keys(conn) -> set[tuple[str, str]]:
    rows = await conn.fetch(
        """
        SELECT device_id, rule_id
        FROM alerts
        WHERE status = 'active'
          AND type = 'rule'
          AND rule_id IS NOT NULL
        """
    )
    return {(str(r["device_id"]), str(r["rule_id"])) for r in rows}

