"""
Audit trail for scheduled jobs: one job_runs row per invocation.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from lifeledger.errors import LifeLedgerError
from lifeledger.log import logger
from lifeledger.models import JobRun
from lifeledger.utils import new_id, utcnow

JOB_NAMES = ("consolidation_sweep", "temporal_resonance", "weekly_report", "biography_refresh")


@dataclass
class JobOutcome:
    job_name: str
    status: str  # completed | failed
    run_id: str
    started_at: datetime
    completed_at: datetime
    summary: dict[str, Any] | None = None
    error: str | None = None
    items_processed: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "status": self.status,
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "summary": self.summary,
            "error": self.error,
            "items_processed": self.items_processed,
        }


async def _record_start(session_factory: async_sessionmaker, run_id: str, job_name: str, started: datetime) -> None:
    try:
        async with session_factory() as session:
            session.add(JobRun(id=run_id, job_name=job_name, status="running", started_at=started))
            await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"[sched] {job_name}: could not record start: {e}")


async def _record_end(session_factory: async_sessionmaker, out: JobOutcome) -> None:
    try:
        async with session_factory() as session:
            row = await session.get(JobRun, out.run_id)
            if row is None:
                row = JobRun(id=out.run_id, job_name=out.job_name, started_at=out.started_at)
                session.add(row)
            row.status = out.status
            row.completed_at = out.completed_at
            row.summary = out.summary
            row.error = out.error
            row.items_processed = out.items_processed
            await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"[sched] {out.job_name}: could not record {out.status}: {e}")


async def run_job(
    session_factory: async_sessionmaker,
    job_name: str,
    fn: Callable[[], Awaitable[Any]],
    *,
    items: Callable[[Any], int] | None = None,
) -> JobOutcome:
    """
    Run one job attempt and record it. The job's own failure ends up in the
    audit row and the returned outcome, never as an exception.
    """
    run_id = new_id()
    started = utcnow()
    await _record_start(session_factory, run_id, job_name, started)
    logger.info(f"[sched] {job_name} started ({run_id})")

    try:
        result = await fn()
    except LifeLedgerError as e:
        out = JobOutcome(job_name, "failed", run_id, started, utcnow(), error=f"[{e.code}] {e.message}")
    except Exception as e:
        logger.exception(f"[sched] {job_name} crashed")
        out = JobOutcome(job_name, "failed", run_id, started, utcnow(), error=f"{type(e).__name__}: {e}")
    else:
        summary = result.to_dict() if hasattr(result, "to_dict") else result
        # sub-step failures (e.g. a sweep pass) fail the run but keep the counts
        problems = getattr(result, "errors", None)
        out = JobOutcome(
            job_name, "failed" if problems else "completed", run_id, started, utcnow(),
            summary=summary,
            error="; ".join(f"{k}: {v}" for k, v in problems.items()) if problems else None,
            items_processed=items(result) if items else 0,
        )

    await _record_end(session_factory, out)
    if out.ok:
        logger.info(f"[sched] {job_name} completed ({out.items_processed} item(s))")
    else:
        logger.error(f"[sched] {job_name} failed: {out.error}")
    return out


async def latest_runs(session_factory: async_sessionmaker) -> dict[str, dict[str, Any] | None]:
    """Most recent run per known job, for doctor."""
    out: dict[str, dict[str, Any] | None] = {}
    async with session_factory() as session:
        for name in JOB_NAMES:
            row = (
                await session.execute(
                    select(JobRun)
                    .where(JobRun.job_name == name)
                    .order_by(JobRun.started_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            out[name] = None if row is None else {
                "status": row.status,
                "started_at": row.started_at.isoformat(),
                "completed_at": row.completed_at.isoformat() if row.completed_at else None,
                "error": row.error,
            }
    return out
