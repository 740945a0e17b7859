from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifeledger.errors import LifeLedgerError, PersistenceError
from lifeledger.llm.base import ExtractionGateway
from lifeledger.llm.invoke import call_gateway
from lifeledger.llm.schema import WeeklyReportPayload, parse_result
from lifeledger.log import logger
from lifeledger.models import PERSONA_ID, ExtractedEntity, PersonaSummary, RawEntry, WeeklyReport
from lifeledger.services.biography import regenerate_biography
from lifeledger.services.merge import build_insight
from lifeledger.utils import first_title_line, new_id, utcnow


@dataclass
class Window:
    start: date  # inclusive
    end: date  # inclusive

    @property
    def start_ts(self) -> datetime:
        return datetime(self.start.year, self.start.month, self.start.day)

    @property
    def end_ts(self) -> datetime:
        # exclusive upper bound: midnight after the last day
        return datetime(self.end.year, self.end.month, self.end.day) + timedelta(days=1)


def window_for(week_start: date | None = None, today: date | None = None) -> Window:
    """
    Explicit week_start → the 7 days starting there.
    Otherwise the 7 days ending today (today-6 .. today).
    """
    if week_start is not None:
        return Window(start=week_start, end=week_start + timedelta(days=6))
    today = today or utcnow().date()
    return Window(start=today - timedelta(days=6), end=today)


@dataclass
class ReportOutcome:
    status: str  # created | exists | insufficient_data
    window: Window
    entry_count: int = 0
    report_id: str | None = None
    report: dict[str, Any] | None = None
    path: Path | None = None
    biography_refreshed: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "week_start": self.window.start.isoformat(),
            "week_end": self.window.end.isoformat(),
            "entry_count": self.entry_count,
            "report_id": self.report_id,
            "report": self.report,
            "path": str(self.path) if self.path else None,
            "biography_refreshed": self.biography_refreshed,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

def digest_line(category: str, title: str, mood: int | None, task_status: str | None) -> str:
    line = f"[{category}] {title}"
    if mood is not None:
        line += f" (Mood: {mood}/10)"
    if task_status:
        line += f" [Task: {task_status}]"
    return line


async def collect(session: AsyncSession, win: Window) -> tuple[int, str]:
    """
    Count live entries in the window and build the compact digest:
    one line per entity, or per raw entry when extraction never landed.
    """
    entries = (
        await session.execute(
            select(RawEntry.id, RawEntry.text)
            .where(
                RawEntry.created_at >= win.start_ts,
                RawEntry.created_at < win.end_ts,
                RawEntry.deleted_at.is_(None),
            )
            .order_by(RawEntry.created_at.asc())
        )
    ).all()
    if not entries:
        return 0, ""

    ids = [i for (i, _) in entries]
    entity_rows = (
        await session.execute(
            select(ExtractedEntity)
            .where(ExtractedEntity.entry_id.in_(ids))
            .order_by(ExtractedEntity.created_at.asc())
        )
    ).scalars().all()
    by_entry: dict[str, list[ExtractedEntity]] = {}
    for e in entity_rows:
        by_entry.setdefault(e.entry_id, []).append(e)

    lines: list[str] = []
    for entry_id, text in entries:
        ents = by_entry.get(entry_id)
        if not ents:
            lines.append(digest_line("raw", first_title_line(text) or "(untitled)", None, None))
            continue
        for e in ents:
            lines.append(digest_line(e.category, e.title, e.mood_score, e.task_status if e.is_task else None))
    return len(entries), "\n".join(lines)


async def previous_report(session: AsyncSession, week_start: date) -> WeeklyReport | None:
    return (
        await session.execute(
            select(WeeklyReport)
            .where(WeeklyReport.week_start_date < week_start)
            .order_by(WeeklyReport.week_start_date.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


def persona_snapshot(persona: PersonaSummary | None) -> str:
    if persona is None:
        return ""
    parts = []
    if persona.life_chapter_title:
        parts.append(f"Chapter: {persona.life_chapter_title}")
    if persona.life_chapter_narrative:
        parts.append(persona.life_chapter_narrative)
    if persona.baseline_mood:
        parts.append(f"Baseline mood: {persona.baseline_mood}")
    if persona.active_goals:
        parts.append(f"Active goals: {json.dumps(persona.active_goals, ensure_ascii=False, default=str)}")
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_md(win: Window, report: dict[str, Any]) -> str:
    def bullets(items: list[str] | None, empty: str) -> list[str]:
        return [f"- {x}" for x in items] if items else [f"_{empty}_"]

    lines: list[str] = []
    lines.append(f"# Weekly report ({win.start.isoformat()} → {win.end.isoformat()})")
    lines.append("")
    n = report.get("entry_count")
    lines.append(f"- Entries: **{n if n is not None else 'n/a'}**")
    mood = report.get("mood_avg")
    lines.append(f"- Mean mood: **{mood:.1f}/10**" if isinstance(mood, (int, float)) else "- Mean mood: _n/a_")
    energy = report.get("energy_avg")
    if isinstance(energy, (int, float)):
        lines.append(f"- Mean energy: **{energy:.1f}/10**")
    lines.append("")
    lines.append("## Wins")
    lines.extend(bullets(report.get("wins"), "(none noted)"))
    lines.append("")
    lines.append("## Struggles")
    lines.extend(bullets(report.get("struggles"), "(none noted)"))
    lines.append("")
    lines.append("## Patterns")
    lines.extend(bullets(report.get("patterns_noticed"), "(none noted)"))
    for key, heading in (
        ("honest_truth", "Honest truth"),
        ("growth_observed", "Growth"),
        ("recommendation", "Recommendation"),
    ):
        if report.get(key):
            lines.append("")
            lines.append(f"## {heading}")
            lines.append(str(report[key]))
    lines.append("")
    return "\n".join(lines)


def write_report(markdown: str, reports_dir: Path, win: Window) -> Path:
    """
    Write Markdown to reports_dir with a deterministic filename.
    Returns the Path to the written file.
    """
    reports_dir = reports_dir.expanduser()
    reports_dir.mkdir(parents=True, exist_ok=True)

    def ts(d: date) -> str:
        return d.strftime("%Y%m%d")

    path = reports_dir / f"weekly_report_{ts(win.start)}_{ts(win.end)}.md"
    path.write_text(markdown, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

async def build_weekly_report(
    session_factory: async_sessionmaker,
    gateway: ExtractionGateway,
    win: Window,
    *,
    min_entries: int = 5,
    timeout: float = 90.0,
    reports_dir: Path | None = None,
    refresh_biography: bool = True,
    biography_recent_limit: int = 50,
    now: datetime | None = None,
) -> ReportOutcome:
    """
    Write-once report for one window. An existing report for week_start and a
    window under min_entries are both successful no-ops.
    """
    now = now or utcnow()

    async with session_factory() as session:
        existing = (
            await session.execute(
                select(func.count()).select_from(WeeklyReport).where(WeeklyReport.week_start_date == win.start)
            )
        ).scalar_one()
        if existing:
            logger.info(f"[report] {win.start}: already exists")
            return ReportOutcome(status="exists", window=win)

        count, digest = await collect(session, win)
        if count < min_entries:
            logger.info(f"[report] {win.start}: insufficient data ({count} < {min_entries} entries)")
            return ReportOutcome(status="insufficient_data", window=win, entry_count=count)

        prev = await previous_report(session, win.start)
        persona = await session.get(PersonaSummary, PERSONA_ID)
        prev_json = json.dumps(prev.report_json, ensure_ascii=False, default=str) if prev else ""
        persona_text = persona_snapshot(persona)

    raw = await call_gateway(
        gateway.summarize_week, digest, persona_text, prev_json, timeout=timeout, label="weekly report"
    )
    payload = parse_result(raw, WeeklyReportPayload)
    report = payload.model_dump(mode="json")
    if report.get("entry_count") is None:
        report["entry_count"] = count

    row = WeeklyReport(
        id=new_id(),
        week_start_date=win.start,
        week_end_date=win.end,
        report_json=report,
        is_read=False,
        created_at=now,
    )
    headline = report.get("honest_truth") or report.get("recommendation") or ""
    note = f"Your weekly report for {win.start.isoformat()} to {win.end.isoformat()} is ready."
    if headline:
        note += f" {headline}"
    try:
        async with session_factory() as session:
            session.add(row)
            session.add(build_insight(note, "observation", now, confidence=1.0))
            await session.commit()
    except IntegrityError:
        # a concurrent builder won the unique week_start_date
        logger.info(f"[report] {win.start}: created concurrently; keeping the existing one")
        return ReportOutcome(status="exists", window=win, entry_count=count)
    except SQLAlchemyError as e:
        raise PersistenceError(f"weekly report write failed: {e}", details={"week_start": win.start.isoformat()}) from e

    out = ReportOutcome(status="created", window=win, entry_count=count, report_id=row.id, report=report)
    logger.info(f"[report] {win.start}: created from {count} entries")

    # Everything below is best-effort: the report is already committed.
    if reports_dir is not None:
        try:
            out.path = write_report(render_md(win, report), reports_dir, win)
            logger.info(f"[report] wrote {out.path}")
        except OSError as e:
            logger.warning(f"[report] markdown write failed: {e}")
            out.warnings.append(f"markdown: {e}")

    if refresh_biography:
        try:
            await regenerate_biography(
                session_factory, gateway, recent_limit=biography_recent_limit, timeout=timeout, now=now
            )
            out.biography_refreshed = True
        except LifeLedgerError as e:
            logger.warning(f"[report] biography refresh failed: {e.message}")
            out.warnings.append(f"biography: {e.message}")
    return out
