"""
Temporal resonance: anniversaries of past life events.

Date arithmetic is done here, deterministically. An event resonates in
year k when event_date + k years lies within +/- window days of today.
At most one anniversary insight per (event, day); re-runs the same day
are no-ops, the next matching day fires again.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from lifeledger.log import logger
from lifeledger.models import Insight, LifeEvent
from lifeledger.services.merge import build_insight
from lifeledger.utils import add_years, utcnow

ANNIVERSARY = "anniversary"


@dataclass
class Resonance:
    event_id: str
    title: str
    event_date: date
    years_ago: int
    anniversary: date
    days_off: int  # anniversary minus today; negative means already passed

    def render(self) -> str:
        years = f"{self.years_ago} year{'s' if self.years_ago != 1 else ''} ago"
        if self.days_off == 0:
            when = "today"
        elif self.days_off > 0:
            when = f"in {self.days_off} day{'s' if self.days_off != 1 else ''}"
        else:
            when = f"{-self.days_off} day{'s' if self.days_off != -1 else ''} back"
        return f"{years} ({self.event_date.isoformat()}, anniversary {when}): {self.title}."


@dataclass
class ResonanceOutcome:
    today: date
    candidates: list[Resonance] = field(default_factory=list)
    fired: int = 0
    already_fired: int = 0
    # event id -> write failure; other candidates still fire
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "today": self.today.isoformat(),
            "candidates": len(self.candidates),
            "fired": self.fired,
            "already_fired": self.already_fired,
            "errors": self.errors,
        }


def find_resonances(events: Iterable[LifeEvent], today: date, window_days: int = 3) -> list[Resonance]:
    """Pure matcher: every (event, k >= 1) whose k-th anniversary is within the window."""
    out: list[Resonance] = []
    for ev in events:
        if ev.event_date is None:
            continue
        # k ranges one past the year gap so late-December/early-January windows are covered
        for k in range(1, today.year - ev.event_date.year + 2):
            anniv = add_years(ev.event_date, k)
            delta = (anniv - today).days
            if abs(delta) <= window_days:
                out.append(
                    Resonance(
                        event_id=ev.id,
                        title=ev.title,
                        event_date=ev.event_date,
                        years_ago=k,
                        anniversary=anniv,
                        days_off=delta,
                    )
                )
    return out


async def run_resonance(
    session_factory: async_sessionmaker,
    *,
    today: date | None = None,
    window_days: int = 3,
    now: datetime | None = None,
) -> ResonanceOutcome:
    now = now or utcnow()
    today = today or now.date()
    outcome = ResonanceOutcome(today=today)

    async with session_factory() as session:
        events = (
            await session.execute(select(LifeEvent).where(LifeEvent.event_date.is_not(None)))
        ).scalars().all()
    outcome.candidates = find_resonances(events, today, window_days)

    for cand in outcome.candidates:
        try:
            async with session_factory() as session:
                exists = (
                    await session.execute(
                        select(Insight.id).where(
                            Insight.type == ANNIVERSARY,
                            Insight.event_id == cand.event_id,
                            Insight.fired_on == today,
                        ).limit(1)
                    )
                ).scalar_one_or_none()
                if exists:
                    outcome.already_fired += 1
                    continue
                row = build_insight(cand.render(), ANNIVERSARY, now, confidence=1.0, event_id=cand.event_id)
                row.fired_on = today
                session.add(row)
                await session.commit()
                outcome.fired += 1
        except IntegrityError:
            # a concurrent run fired it first
            outcome.already_fired += 1
        except SQLAlchemyError as e:
            logger.error(f"[resonance] {cand.event_id}: anniversary insight write failed: {e}")
            outcome.errors[cand.event_id] = str(e)

    logger.info(
        f"[resonance] {today}: {len(outcome.candidates)} candidate(s), "
        f"{outcome.fired} fired, {outcome.already_fired} already fired"
        + (f", {len(outcome.errors)} failed" if outcome.errors else "")
    )
    return outcome
