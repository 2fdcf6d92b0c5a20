"""Device and telemetry reads used by an evaluation cycle."""

from datetime import datetime, timedelta

from alerts_engine.models import DeviceSnapshot, TelemetrySample, WindowBounds, sample_from_record


async def get_device_last_seen(conn, device_ids: list[str] | None = None) -> list[DeviceSnapshot]:
    """
    One row per device with a snapshot: site, organisation, last_seen_at,
    the device-level offline mute and the raw snapshot blob.

    The offline mute is the latest muted_until over the device's offline
    alerts, whether built-in ('offline') or raised by an offline_window rule.
    """
    filter_clause = ""
    args: list = []
    if device_ids:
        filter_clause = "WHERE d.id = ANY($1::uuid[])"
        args.append(device_ids)
    rows = await conn.fetch(
        f"""
        SELECT d.id,
               d.site_id,
               s.organisation_id AS org_id,
               snap.last_seen_at,
               snap.data,
               mutes.muted_until
        FROM devices d
        JOIN device_snapshots snap ON snap.device_id = d.id
        LEFT JOIN sites s ON s.id = d.site_id
        LEFT JOIN LATERAL (
            SELECT MAX(a.muted_until) AS muted_until
            FROM alerts a
            LEFT JOIN alert_rules ar ON ar.id = a.rule_id
            WHERE a.device_id = d.id
              AND (a.type = 'offline' OR ar.rule_type = 'offline_window')
        ) mutes ON true
        {filter_clause}
        """,
        *args,
    )
    return [DeviceSnapshot.from_record(r) for r in rows]


async def get_latest_telemetry_for_metrics(
    conn,
    device_ids: list[str],
    metrics: list[str],
) -> list[TelemetrySample]:
    """Latest sample per (device, metric). A missing pair has no row at all."""
    if not device_ids or not metrics:
        return []
    rows = await conn.fetch(
        """
        SELECT DISTINCT ON (device_id, metric)
               device_id, metric, value, ts
        FROM telemetry_points
        WHERE device_id = ANY($1::uuid[])
          AND metric = ANY($2::text[])
        ORDER BY device_id, metric, ts DESC
        """,
        device_ids,
        metrics,
    )
    samples = []
    for row in rows:
        sample = sample_from_record(row)
        if sample is not None:
            samples.append(sample)
    return samples


async def get_telemetry_window_bounds(
    conn,
    device_id: str,
    metric: str,
    window_sec: int,
    now: datetime,
) -> WindowBounds:
    """Earliest and latest samples in [now - window_sec, now]."""
    since = now - timedelta(seconds=window_sec)
    row = await conn.fetchrow(
        """
        WITH win AS (
            SELECT ts, value
            FROM telemetry_points
            WHERE device_id = $1
              AND metric = $2
              AND ts >= $3
              AND ts <= $4
              AND value IS NOT NULL
        )
        SELECT (SELECT COUNT(*) FROM win) AS sample_count,
               f.ts AS first_ts, f.value AS first_value,
               l.ts AS last_ts, l.value AS last_value
        FROM (SELECT ts, value FROM win ORDER BY ts ASC LIMIT 1) f
        CROSS JOIN (SELECT ts, value FROM win ORDER BY ts DESC LIMIT 1) l
        """,
        device_id,
        metric,
        since,
        now,
    )
    if row is None or (row["sample_count"] or 0) < 2:
        return WindowBounds(first=None, last=None, sample_count=int(row["sample_count"] or 0) if row else 0)
    first = sample_from_record(
        {"device_id": device_id, "metric": metric, "value": row["first_value"], "ts": row["first_ts"]}
    )
    last = sample_from_record(
        {"device_id": device_id, "metric": metric, "value": row["last_value"], "ts": row["last_ts"]}
    )
    return WindowBounds(first=first, last=last, sample_count=int(row["sample_count"]))
