from __future__ import annotations
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import List, Dict, Any
import re

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from lifeledger.config import load_settings
from lifeledger.db import make_engine, ensure_schema, missing_tables, table_names
from lifeledger.services.audit import latest_runs
from lifeledger.services.sweeper import run_sweep


@dataclass
class DoctorResult:
    ok: bool
    warnings: List[str]
    errors: List[str]
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_hm(v: str) -> bool:
    return bool(re.match(r"^\d{1,2}:\d{2}$", str(v).strip()))


def _parse_weekly(v: str) -> bool:
    m = re.match(r"^(mon|tue|wed|thu|fri|sat|sun)\s+\d{1,2}:\d{2}$", str(v).strip(), re.IGNORECASE)
    return bool(m)


async def run_checks() -> DoctorResult:
    s = load_settings()

    warnings: List[str] = []
    errors: List[str] = []
    details: Dict[str, Any] = {}

    # Config and paths
    details["config.data_dir"] = str(s.data_dir)
    details["config.inbox_dir"] = str(s.inbox_dir)
    details["config.archive_dir"] = str(s.archive_dir)
    details["config.reports_dir"] = str(s.reports_dir)
    details["config.llm_backend"] = s.llm_backend if s.remote_allowed else "local"
    details["config.event_identity"] = s.event_identity
    details["config.schedule"] = s.schedule

    for p in [s.data_dir, s.inbox_dir, s.archive_dir, s.reports_dir, s.state_dir]:
        if not Path(p).exists():
            errors.append(f"Missing directory: {p}")

    if s.llm_backend != "local" and not s.remote_allowed:
        warnings.append(f"llm_backend={s.llm_backend!r} ignored because remote_allowed is false")

    # Validate schedule formats
    sch = s.schedule
    try:
        if int(sch.get("sweep_every_minutes", 60)) <= 0:
            warnings.append("schedule.sweep_every_minutes should be a positive integer")
    except (TypeError, ValueError):
        warnings.append("schedule.sweep_every_minutes should be a positive integer")
    if not _parse_hm(sch.get("resonance", "")):
        warnings.append("schedule.resonance format should be 'HH:MM'")
    if not _parse_weekly(sch.get("weekly_report", "")):
        warnings.append("schedule.weekly_report format should be 'DOW HH:MM' (e.g., 'Sun 23:00')")

    # DB and schema
    eng, session_factory = make_engine(s.db_path)
    try:
        await ensure_schema(eng)
        async with eng.connect() as conn:
            try:
                val = (await conn.execute(text("SELECT 1"))).scalar_one()
                details["db.ping"] = val
            except SQLAlchemyError as e:
                errors.append(f"DB ping failed: {e}")

        tables = await table_names(eng)
        details["db.tables"] = sorted(tables)
        missing = missing_tables(tables)
        for t in missing:
            errors.append(f"Missing expected table: {t} (run 'alembic upgrade head')")

        if not missing:
            # Last run per job
            runs = await latest_runs(session_factory)
            details["jobs.latest"] = runs
            for name, run in runs.items():
                if run and run["status"] == "failed":
                    warnings.append(f"Last {name} run failed: {run['error']}")

            # What a sweep would remove right now
            pending = await run_sweep(session_factory, dry_run=True, event_identity=s.event_identity)
            details["sweep.pending"] = pending.to_dict()
            if pending.total:
                warnings.append(f"{pending.total} duplicate/orphan row(s) pending; run 'lifeledger sweep'")
    finally:
        await eng.dispose()

    ok = (len(errors) == 0)
    return DoctorResult(ok=ok, warnings=warnings, errors=errors, details=details)
