import json
from datetime import date, datetime, timedelta

from sqlalchemy import select, func

from lifeledger.config import load_settings
from lifeledger.llm.local import LocalGateway
from lifeledger.models import ExtractedEntity, Insight, PersonaSummary, RawEntry, WeeklyReport
from lifeledger.reporters.report import Window, build_weekly_report, digest_line, render_md, window_for
from lifeledger.utils import new_id

WEEK = Window(start=date(2026, 10, 12), end=date(2026, 10, 18))


async def _seed_entries(sf, n, start=WEEK.start, mood=6, deleted=0):
    async with sf() as session:
        for i in range(n):
            at = datetime(start.year, start.month, start.day, 9) + timedelta(days=i % 7, minutes=i)
            entry = RawEntry(
                id=new_id(), created_at=at, text=f"entry {i}", source="text", input_metadata={},
                deleted_at=at if i < deleted else None,
            )
            session.add(entry)
            session.add(ExtractedEntity(
                id=new_id(), entry_id=entry.id, created_at=at, category="reflection",
                title=f"Day {i}", content="", mood_score=mood, is_task=False, people_mentioned=[],
            ))
        await session.commit()


async def _count(sf, model):
    async with sf() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def test_window_defaults_to_last_seven_days():
    win = window_for(today=date(2026, 10, 19))
    assert (win.start, win.end) == (date(2026, 10, 13), date(2026, 10, 19))
    assert window_for(date(2026, 10, 12)).end == date(2026, 10, 18)


def test_digest_line_format():
    assert digest_line("task", "Pay rent", 4, "done") == "[task] Pay rent (Mood: 4/10) [Task: done]"
    assert digest_line("raw", "Untitled", None, None) == "[raw] Untitled"


def test_insufficient_data_writes_nothing(run_async, open_db):
    async def go():
        async with open_db() as sf:
            await _seed_entries(sf, 4)
            out = await build_weekly_report(sf, LocalGateway(), WEEK, refresh_biography=False)
            return out, await _count(sf, WeeklyReport)

    out, n = run_async(go())
    assert out.status == "insufficient_data" and out.entry_count == 4
    assert n == 0


def test_soft_deleted_entries_do_not_count(run_async, open_db):
    async def go():
        async with open_db() as sf:
            await _seed_entries(sf, 6, deleted=2)
            return await build_weekly_report(sf, LocalGateway(), WEEK, refresh_biography=False)

    assert run_async(go()).status == "insufficient_data"


def test_report_is_write_once(run_async, open_db):
    s = load_settings()

    async def go():
        async with open_db() as sf:
            await _seed_entries(sf, 5)
            first = await build_weekly_report(sf, LocalGateway(), WEEK, reports_dir=s.reports_dir)
            second = await build_weekly_report(sf, LocalGateway(), WEEK, reports_dir=s.reports_dir)
            async with sf() as session:
                rows = (await session.execute(select(WeeklyReport))).scalars().all()
                notes = (await session.execute(select(Insight).where(Insight.type == "observation"))).scalars().all()
                persona = await session.get(PersonaSummary, "current")
            return first, second, rows, notes, persona

    first, second, rows, notes, persona = run_async(go())
    assert first.status == "created" and second.status == "exists"
    assert len(rows) == 1 and rows[0].week_start_date == WEEK.start
    assert rows[0].report_json["entry_count"] == 5
    assert rows[0].report_json["mood_avg"] == 6.0
    assert len(notes) == 1
    assert first.path is not None and first.path.name == "weekly_report_20261012_20261018.md"
    assert "# Weekly report" in first.path.read_text(encoding="utf-8")
    # best-effort biography refresh ran
    assert first.biography_refreshed and persona.biography_narrative


def test_previous_report_feeds_continuity(run_async, open_db, scripted):
    seen = {}

    def week(digest, persona, previous):
        seen[digest.count("\n") + 1] = previous
        return {"mood_avg": 5, "honest_truth": "steady"}

    gw = scripted(week=week)
    later = Window(start=date(2026, 10, 19), end=date(2026, 10, 25))

    async def go():
        async with open_db() as sf:
            await _seed_entries(sf, 5)
            await _seed_entries(sf, 6, start=later.start)
            a = await build_weekly_report(sf, gw, WEEK, refresh_biography=False)
            b = await build_weekly_report(sf, gw, later, refresh_biography=False)
            return a, b

    a, b = run_async(go())
    assert a.status == b.status == "created"
    assert seen[5] == ""
    assert json.loads(seen[6])["honest_truth"] == "steady"


def test_biography_failure_does_not_fail_report(run_async, open_db, scripted):
    gw = scripted(week={"mood_avg": 7}, biography=RuntimeError("narrative service down"))

    async def go():
        async with open_db() as sf:
            await _seed_entries(sf, 5)
            out = await build_weekly_report(sf, gw, WEEK)
            return out, await _count(sf, WeeklyReport)

    out, n = run_async(go())
    assert out.status == "created" and n == 1
    assert not out.biography_refreshed
    assert out.warnings and out.warnings[0].startswith("biography")


def test_render_md_sections():
    md = render_md(WEEK, {"entry_count": 5, "mood_avg": 6.4, "wins": ["Shipped it"], "recommendation": "Rest"})
    assert "- Entries: **5**" in md
    assert "- Mean mood: **6.4/10**" in md
    assert "- Shipped it" in md
    assert "## Recommendation" in md
