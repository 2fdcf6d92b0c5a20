import asyncio
import contextlib
import logging
import signal
import uuid

import asyncpg
from aiohttp import web
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from shared.config import int_env, optional_env, require_env
from shared.logging import configure_logging, log_event, log_exception

from alerts_engine.errors import WorkerLockLost
from alerts_engine.evaluator import AlertsEvaluator, EngineSettings
from alerts_engine.worker_locks import acquire_worker_lock, release_worker_lock, renew_worker_lock

logger = logging.getLogger("alerts_engine")

WORKER_NAME = "alertsWorker"
MIN_INTERVAL_SEC = 15
MIN_RENEW_INTERVAL_SEC = 5


async def _init_db_connection(conn: asyncpg.Connection) -> None:
    # Avoid passing statement_timeout as a startup parameter (PgBouncer rejects it).
    await conn.execute("SET statement_timeout TO 30000")


async def create_pool() -> asyncpg.Pool:
    min_size = int_env("PG_POOL_MIN", 1)
    max_size = int_env("PG_POOL_MAX", 4)
    dsn = optional_env("DATABASE_URL")
    if dsn:
        return await asyncpg.create_pool(
            dsn=dsn,
            min_size=min_size,
            max_size=max_size,
            command_timeout=30,
            init=_init_db_connection,
        )
    return await asyncpg.create_pool(
        host=optional_env("PG_HOST", "localhost"),
        port=int_env("PG_PORT", 5432),
        database=optional_env("PG_DB", "greenbro"),
        user=optional_env("PG_USER", "greenbro"),
        password=require_env("PG_PASS"),
        min_size=min_size,
        max_size=max_size,
        command_timeout=30,
        init=_init_db_connection,
    )


def build_health_app(evaluator: AlertsEvaluator) -> web.Application:
    async def health_handler(_request):
        last = evaluator.last_result
        return web.json_response(
            {
                "status": "healthy",
                "service": "alerts_engine",
                "running": evaluator.running,
                "counters": {k: v for k, v in evaluator.counters.items() if k != "last_run_at"},
                "last_run_at": evaluator.counters["last_run_at"],
                "last_success": last.success if last else None,
            }
        )

    async def metrics_handler(_request):
        return web.Response(body=generate_latest(), content_type=CONTENT_TYPE_LATEST.split(";")[0])

    app = web.Application()
    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app


async def start_health_server(evaluator: AlertsEvaluator, port: int) -> web.AppRunner:
    runner = web.AppRunner(build_health_app(evaluator))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log_event(logger, "health server started", service_port=port)
    return runner


async def wait_or_stop(stop: asyncio.Event, timeout: float) -> None:
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=timeout)


async def renew_loop(pool, owner_id: str, ttl_sec: int, stop: asyncio.Event) -> None:
    """Keep the worker lock alive; raises WorkerLockLost when it cannot."""
    interval = max(MIN_RENEW_INTERVAL_SEC, ttl_sec // 2)
    while not stop.is_set():
        await wait_or_stop(stop, interval)
        if stop.is_set():
            return
        async with pool.acquire() as conn:
            renewed = await renew_worker_lock(conn, WORKER_NAME, owner_id, ttl_sec)
        if not renewed:
            log_event(logger, "lost worker lock; stopping alerts worker", level="ERROR", ttl_sec=ttl_sec)
            raise WorkerLockLost(WORKER_NAME)


async def cycle_loop(evaluator: AlertsEvaluator, interval: int, cooldown: int, stop: asyncio.Event) -> None:
    while not stop.is_set():
        result = await evaluator.run_once()
        delay = interval if result.success else interval + cooldown
        log_event(
            logger,
            "scheduling next cycle",
            in_sec=delay,
            last_duration_ms=result.duration_ms,
            last_success=result.success,
        )
        await wait_or_stop(stop, delay)


async def main() -> None:
    interval = max(MIN_INTERVAL_SEC, int_env("ALERT_WORKER_INTERVAL_SEC", 60))
    cooldown = int_env("ALERT_FAILURE_COOLDOWN_SEC", 5)
    ttl_sec = int_env("WORKER_LOCK_TTL_SEC", 60)
    if ttl_sec <= 0:
        ttl_sec = 60
    owner_id = str(uuid.uuid4())
    settings = EngineSettings.from_env()

    log_event(
        logger,
        "starting alerts worker",
        owner_id=owner_id,
        interval_sec=interval,
        offline_warn_minutes=settings.offline_minutes,
        offline_critical_minutes=settings.offline_critical_minutes,
        high_temp_threshold=settings.high_temp_threshold,
        lock_ttl_sec=ttl_sec,
        rule_refresh_sec=settings.rule_refresh_sec,
    )

    pool = await create_pool()
    async with pool.acquire() as conn:
        acquired = await acquire_worker_lock(conn, WORKER_NAME, owner_id, ttl_sec)
    if not acquired:
        log_event(logger, "worker lock already held; exiting alerts worker", level="WARNING", owner_id=owner_id)
        await pool.close()
        return

    evaluator = AlertsEvaluator(pool, settings)
    runner = await start_health_server(evaluator, int_env("HEALTH_PORT", 8080))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    renew_task = asyncio.create_task(renew_loop(pool, owner_id, ttl_sec, stop))
    cycle_task = asyncio.create_task(cycle_loop(evaluator, interval, cooldown, stop))
    try:
        done, _ = await asyncio.wait({renew_task, cycle_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.exception() is not None:
                log_exception(logger, "alerts worker stopped", task.exception())
    finally:
        stop.set()
        for task in (renew_task, cycle_task):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        try:
            async with pool.acquire() as conn:
                await release_worker_lock(conn, WORKER_NAME, owner_id)
        except Exception as exc:
            log_exception(logger, "failed to release worker lock", exc)
        await runner.cleanup()
        await pool.close()


def run() -> None:
    configure_logging("alerts_engine")
    asyncio.run(main())


if __name__ == "__main__":
    run()
