from datetime import date, datetime, timedelta

from sqlalchemy import select

from lifeledger.models import Insight, LifeEvent
from lifeledger.services.resonance import find_resonances, run_resonance
from lifeledger.utils import new_id

TODAY = date(2026, 10, 19)


def _event(title, event_date):
    return LifeEvent(
        id=new_id(), created_at=datetime(2020, 1, 1), event_date=event_date, title=title,
        description="", significance=8, category="milestone", emotions=[], people_involved=[],
        source_entry_ids=[],
    )


def test_exactly_one_year_ago_resonates():
    ev = _event("Started the new job", TODAY - timedelta(days=365))
    found = find_resonances([ev], TODAY)
    assert len(found) == 1
    assert found[0].years_ago == 1 and found[0].days_off == 0
    assert "1 year ago" in found[0].render()


def test_four_hundred_days_ago_does_not():
    ev = _event("Road trip", TODAY - timedelta(days=400))
    assert find_resonances([ev], TODAY) == []


def test_window_edges_and_multiple_years():
    inside = _event("Graduated", date(2016, 10, 22))  # +3 days, ten years back
    outside = _event("Moved", date(2021, 10, 23))  # +4 days
    undated = _event("Someday", None)
    found = find_resonances([inside, outside, undated], TODAY, window_days=3)
    assert [(r.title, r.years_ago, r.days_off) for r in found] == [("Graduated", 10, 3)]


def test_year_boundary():
    ev = _event("New year's party", date(2024, 12, 31))
    found = find_resonances([ev], date(2026, 1, 2))
    assert [(r.years_ago, r.days_off) for r in found] == [(1, -2)]


def test_leap_day_event():
    ev = _event("Leap wedding", date(2024, 2, 29))
    found = find_resonances([ev], date(2025, 3, 1))
    assert [(r.years_ago, r.anniversary) for r in found] == [(1, date(2025, 2, 28))]


def test_same_day_rerun_fires_once_then_next_day_again(run_async, open_db):
    async def go():
        async with open_db() as sf:
            ev = _event("Adopted Pixel", TODAY - timedelta(days=365))
            async with sf() as session:
                session.add(ev)
                await session.commit()
            first = await run_resonance(sf, today=TODAY)
            again = await run_resonance(sf, today=TODAY)
            tomorrow = await run_resonance(sf, today=TODAY + timedelta(days=1))
            async with sf() as session:
                rows = (await session.execute(select(Insight).order_by(Insight.fired_on))).scalars().all()
            return ev, first, again, tomorrow, rows

    ev, first, again, tomorrow, rows = run_async(go())
    assert (first.fired, first.already_fired) == (1, 0)
    assert (again.fired, again.already_fired) == (0, 1)
    assert tomorrow.fired == 1
    assert [r.fired_on for r in rows] == [TODAY, TODAY + timedelta(days=1)]
    assert all(r.type == "anniversary" and r.event_id == ev.id and r.confidence == 1.0 for r in rows)
    # rendered text differs per day, so insight dedup does not collapse them
    assert rows[0].text != rows[1].text


def test_failed_write_does_not_block_other_anniversaries(run_async, open_db, monkeypatch):
    from sqlalchemy.exc import OperationalError
    import lifeledger.services.resonance as resonance

    real = resonance.build_insight

    def flaky(text, type_, now, **kw):
        if kw.get("event_id") == "bad":
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        return real(text, type_, now, **kw)

    monkeypatch.setattr(resonance, "build_insight", flaky)

    async def go():
        async with open_db() as sf:
            bad, good = _event("Broken", TODAY - timedelta(days=365)), _event("Fine", TODAY - timedelta(days=365))
            bad.id = "bad"
            async with sf() as session:
                session.add_all([bad, good])
                await session.commit()
            out = await run_resonance(sf, today=TODAY)
            async with sf() as session:
                rows = (await session.execute(select(Insight))).scalars().all()
            return out, good, rows

    out, good, rows = run_async(go())
    assert out.fired == 1 and list(out.errors) == ["bad"]
    assert [r.event_id for r in rows] == [good.id]
    assert out.to_dict()["errors"]["bad"]
