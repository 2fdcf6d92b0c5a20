"""Named leases in worker_locks so only one process runs a worker at a time."""

from datetime import datetime, timedelta, timezone

MIN_TTL_SEC = 1


def lock_expiry(ttl_sec: int, now: datetime | None = None) -> datetime:
    ttl = max(MIN_TTL_SEC, int(ttl_sec or 0))
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=ttl)


async def acquire_worker_lock(conn, name: str, owner_id: str, ttl_sec: int) -> bool:
    """Take the lock if free, expired, or already ours."""
    owner = await conn.fetchval(
        """
        INSERT INTO worker_locks (name, owner_id, locked_at, expires_at)
        VALUES ($1, $2, now(), $3)
        ON CONFLICT (name)
        DO UPDATE SET owner_id = EXCLUDED.owner_id,
                      locked_at = now(),
                      expires_at = EXCLUDED.expires_at
        WHERE worker_locks.expires_at < now()
           OR worker_locks.owner_id = EXCLUDED.owner_id
        RETURNING owner_id
        """,
        name,
        owner_id,
        lock_expiry(ttl_sec),
    )
    return owner is not None and str(owner) == owner_id


async def renew_worker_lock(conn, name: str, owner_id: str, ttl_sec: int) -> bool:
    renewed = await conn.fetchval(
        """
        UPDATE worker_locks
        SET locked_at = now(),
            expires_at = $3
        WHERE name = $1
          AND owner_id = $2
        RETURNING name
        """,
        name,
        owner_id,
        lock_expiry(ttl_sec),
    )
    return renewed is not None


async def release_worker_lock(conn, name: str, owner_id: str) -> None:
    await conn.execute(
        "DELETE FROM worker_locks WHERE name = $1 AND owner_id = $2",
        name,
        owner_id,
    )
