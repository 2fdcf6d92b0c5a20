"""
Site schedule context: is a site inside a load-shedding or time-of-use peak
window right now.

Schedule rows store a weekday (0 = Sunday) and a half-open local time range
[start_time_local, end_time_local). Local time is wall-clock time in the
configured schedule zone.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timezone, tzinfo
from typing import Awaitable, Callable, Iterable, Optional

from alerts_engine.models import ScheduleContext

logger = logging.getLogger(__name__)

LOAD_SHEDDING = "load_shedding"
TOU_PEAK = "tou_peak"


def schema_day_of_week(local_now: datetime) -> int:
    return (local_now.weekday() + 1) % 7  # 0=Sunday


def _as_time(value) -> Optional[time]:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        try:
            return time.fromisoformat(value)
        except ValueError:
            return None
    return None


def active_kinds(rows: Iterable[dict], local_now: datetime) -> set[str]:
    day = schema_day_of_week(local_now)
    clock = local_now.time().replace(microsecond=0, tzinfo=None)
    kinds = set()
    for row in rows:
        if int(row["day_of_week"]) != day:
            continue
        start = _as_time(row.get("start_time_local"))
        end = _as_time(row.get("end_time_local"))
        if start is None or end is None:
            continue
        if start <= clock < end:
            kinds.add(row["kind"])
    return kinds


def schedule_context_from_rows(rows: Iterable[dict], local_now: datetime) -> ScheduleContext:
    kinds = active_kinds(rows, local_now)
    return ScheduleContext(
        is_load_shedding=LOAD_SHEDDING in kinds,
        is_tou_peak=TOU_PEAK in kinds,
    )


async def fetch_site_schedules(conn, site_id: str) -> list[dict]:
    rows = await conn.fetch(
        """
        SELECT id, site_id, day_of_week, start_time_local, end_time_local, kind
        FROM site_schedules
        WHERE site_id = $1
        ORDER BY day_of_week ASC, start_time_local ASC
        """,
        site_id,
    )
    return [dict(r) for r in rows]


async def get_schedule_context_for_site(
    conn,
    site_id: str,
    now: datetime,
    tz: tzinfo | None = None,
) -> ScheduleContext:
    local_now = now.astimezone(tz or timezone.utc)
    rows = await fetch_site_schedules(conn, site_id)
    return schedule_context_from_rows(rows, local_now)


class ScheduleContextCache:
    """Per-cycle memo so devices sharing a site trigger one lookup."""

    def __init__(self, loader: Callable[[str], Awaitable[ScheduleContext]]):
        self._loader = loader
        self._contexts: dict[str, ScheduleContext] = {}

    async def get(self, site_id: Optional[str]) -> ScheduleContext:
        if not site_id:
            return ScheduleContext()
        cached = self._contexts.get(site_id)
        if cached is not None:
            return cached
        context = await self._loader(site_id)
        self._contexts[site_id] = context
        return context

    def __len__(self) -> int:
        return len(self._contexts)
