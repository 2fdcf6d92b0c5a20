import json
from datetime import datetime

STATUS_ROW_KEY = "global"
ENGINE_STATUS_KEY = "alerts_engine"
WORKER_STATUS_KEY = "alerts_worker"


async def upsert_status(conn, key: str, payload: dict) -> None:
    """Replace the JSON payload stored under key in system_status."""
    await conn.execute(
        """
        INSERT INTO system_status (key, payload, updated_at)
        VALUES ($1, $2::jsonb, now())
        ON CONFLICT (key)
        DO UPDATE SET payload = EXCLUDED.payload,
                      updated_at = now()
        """,
        key,
        json.dumps(payload, default=str),
    )


async def mark_heartbeat(conn, now: datetime) -> None:
    """Record the evaluator heartbeat on the global status row."""
    await conn.execute(
        """
        INSERT INTO system_status (key, payload, alerts_worker_last_heartbeat_at, updated_at)
        VALUES ($1, '{}'::jsonb, $2, now())
        ON CONFLICT (key)
        DO UPDATE SET alerts_worker_last_heartbeat_at = EXCLUDED.alerts_worker_last_heartbeat_at,
                      updated_at = now()
        """,
        STATUS_ROW_KEY,
        now,
    )
