from __future__ import annotations
import asyncio
from datetime import date

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from lifeledger.config import Settings, load_settings
from lifeledger.db import make_engine, ensure_schema
from lifeledger.llm.factory import get_gateway
from lifeledger.reporters.report import build_weekly_report, window_for
from lifeledger.services.audit import JobOutcome, run_job
from lifeledger.services.biography import regenerate_biography
from lifeledger.services.resonance import run_resonance
from lifeledger.services.sweeper import run_sweep
from lifeledger.log import logger


async def job_sweep(settings: Settings | None = None) -> JobOutcome:
    """Consolidation sweep, audited as consolidation_sweep."""
    s = settings or load_settings()
    eng, session_factory = make_engine(s.db_path)
    await ensure_schema(eng)
    try:
        return await run_job(
            session_factory, "consolidation_sweep",
            lambda: run_sweep(session_factory, event_identity=s.event_identity),
            items=lambda r: r.total,
        )
    finally:
        await eng.dispose()


async def job_resonance(settings: Settings | None = None, today: date | None = None) -> JobOutcome:
    s = settings or load_settings()
    eng, session_factory = make_engine(s.db_path)
    await ensure_schema(eng)
    try:
        return await run_job(
            session_factory, "temporal_resonance",
            lambda: run_resonance(session_factory, today=today, window_days=s.resonance_window_days),
            items=lambda r: r.fired,
        )
    finally:
        await eng.dispose()


async def job_weekly_report(settings: Settings | None = None, week_start: date | None = None) -> JobOutcome:
    s = settings or load_settings()
    eng, session_factory = make_engine(s.db_path)
    await ensure_schema(eng)
    gateway = get_gateway(s)
    try:
        return await run_job(
            session_factory, "weekly_report",
            lambda: build_weekly_report(
                session_factory, gateway, window_for(week_start),
                min_entries=s.report_min_entries,
                timeout=s.background_timeout,
                reports_dir=s.reports_dir,
                biography_recent_limit=s.biography_recent_limit,
            ),
            items=lambda r: r.entry_count if r.status == "created" else 0,
        )
    finally:
        await eng.dispose()


async def job_biography_refresh(settings: Settings | None = None) -> JobOutcome:
    s = settings or load_settings()
    eng, session_factory = make_engine(s.db_path)
    await ensure_schema(eng)
    gateway = get_gateway(s)
    try:
        return await run_job(
            session_factory, "biography_refresh",
            lambda: regenerate_biography(
                session_factory, gateway,
                recent_limit=s.biography_recent_limit, timeout=s.background_timeout,
            ),
            items=lambda r: 1,
        )
    finally:
        await eng.dispose()


def _parse_hm(hm: str) -> tuple[int, int]:
    h, m = hm.strip().split(":")
    return int(h), int(m)


def build_scheduler(s: Settings, loop: asyncio.AbstractEventLoop | None = None) -> AsyncIOScheduler:
    """Register the three recurring jobs from the [schedule] table."""
    sched = AsyncIOScheduler(event_loop=loop) if loop else AsyncIOScheduler()  # system/local timezone
    cfg = s.schedule

    minutes = int(cfg.get("sweep_every_minutes", 60))
    sched.add_job(job_sweep, IntervalTrigger(minutes=minutes), kwargs={"settings": s}, id="consolidation_sweep")

    try:
        rh, rm = _parse_hm(cfg.get("resonance", "02:00"))
    except ValueError:
        logger.warning("[sched] invalid schedule.resonance; expected 'HH:MM', using 02:00")
        rh, rm = 2, 0
    sched.add_job(job_resonance, CronTrigger(hour=rh, minute=rm), kwargs={"settings": s}, id="temporal_resonance")

    try:
        dow, hm = cfg.get("weekly_report", "Sun 23:00").split()
        wh, wm = _parse_hm(hm)
        trigger = CronTrigger(day_of_week=dow.lower()[:3], hour=wh, minute=wm)
    except ValueError:
        logger.warning("[sched] invalid schedule.weekly_report; expected 'DOW HH:MM', using Sun 23:00")
        trigger = CronTrigger(day_of_week="sun", hour=23, minute=0)
    sched.add_job(job_weekly_report, trigger, kwargs={"settings": s}, id="weekly_report")
    return sched


def run_scheduler():
    s = load_settings()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    eng, _ = make_engine(s.db_path)
    loop.run_until_complete(ensure_schema(eng))
    # jobs open their own engines
    loop.run_until_complete(eng.dispose())

    sched = build_scheduler(s, loop)
    sched.start()
    logger.info(
        f"[sched] started: sweep every {s.schedule['sweep_every_minutes']} min, "
        f"resonance at {s.schedule['resonance']}, weekly report {s.schedule['weekly_report']}"
    )
    try:
        loop.run_forever()
    except KeyboardInterrupt:
        pass
    finally:
        sched.shutdown(wait=False)
        loop.close()
