from __future__ import annotations
import asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from zoneinfo import ZoneInfo
import structlog

from ..config import settings
from ..db import get_conn, migrate
from ..pipeline.prices import refresh_prices
from ..utils import days_ago_utc_iso
from .storage import archive_stale_signal_tasks

_log = structlog.get_logger()
_scheduler: AsyncIOScheduler | None = None

def get_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone=ZoneInfo(settings.local_tz))
    return _scheduler

def schedule_jobs(sched: AsyncIOScheduler | None = None, start: bool = True):
    sched = sched or get_scheduler()
    tz = ZoneInfo(settings.local_tz)
    sched.add_job(
        run_price_refresh,
        IntervalTrigger(minutes=max(1, settings.price_refresh_minutes), timezone=tz),
        id="price_refresh",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    # Nightly 00:15
    sched.add_job(run_task_cleanup, CronTrigger(hour=0, minute=15, timezone=tz), id="task_cleanup", replace_existing=True)
    if start:
        sched.start()
        _log.info("scheduler_started", price_refresh_minutes=settings.price_refresh_minutes)
    return sched

def run_price_refresh_sync() -> dict:
    conn = get_conn(settings.db_path)
    try:
        migrate(conn)
        return refresh_prices(conn)
    finally:
        conn.close()

async def run_price_refresh():
    # yfinance is blocking; keep it off the event loop
    try:
        await asyncio.to_thread(run_price_refresh_sync)
    except Exception as exc:
        _log.error("price_refresh_failed", error=str(exc))

async def run_task_cleanup():
    conn = get_conn(settings.db_path)
    try:
        migrate(conn)
        archived = archive_stale_signal_tasks(conn, days_ago_utc_iso(settings.task_stale_days))
        _log.info("task_cleanup_done", archived=archived)
    finally:
        conn.close()
