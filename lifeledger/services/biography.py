"""
Biography composer: one cached narrative on the persona row.

Reading never regenerates. A narrative older than the TTL reads as absent
until someone asks for regeneration explicitly.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifeledger.errors import MalformedResultError, PersistenceError
from lifeledger.llm.base import ExtractionGateway
from lifeledger.llm.invoke import call_gateway
from lifeledger.log import logger
from lifeledger.models import PERSONA_ID, ExtractedEntity, LifeEvent, Person, PersonaSummary
from lifeledger.services.merge import get_or_create_persona
from lifeledger.utils import utcnow


@dataclass
class BiographyView:
    biography: str | None
    generated_at: datetime | None
    cached: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "biography": self.biography,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "cached": self.cached,
        }


async def gather_material(session: AsyncSession, recent_limit: int = 50) -> dict[str, Any]:
    """Persona snapshot, recent entities, the people directory and the full timeline."""
    persona = await session.get(PersonaSummary, PERSONA_ID)
    entities = (
        await session.execute(
            select(ExtractedEntity).order_by(ExtractedEntity.created_at.desc()).limit(recent_limit)
        )
    ).scalars().all()
    people = (
        await session.execute(select(Person).order_by(Person.mention_count.desc(), Person.name))
    ).scalars().all()
    events = (
        await session.execute(select(LifeEvent).order_by(LifeEvent.event_date.desc()))
    ).scalars().all()

    return {
        "persona": {
            "life_chapter_title": persona.life_chapter_title,
            "life_chapter_narrative": persona.life_chapter_narrative,
            "baseline_mood": persona.baseline_mood,
            "active_goals": persona.active_goals or [],
            "profile": persona.profile,
        } if persona else {},
        "entries": [
            {
                "category": e.category,
                "title": e.title,
                "mood_score": e.mood_score,
                "created_at": e.created_at.isoformat(),
            }
            for e in entities
        ],
        "people": [
            {
                "name": p.name,
                "relationship": p.relationship,
                "mention_count": p.mention_count,
                "sentiment_avg": p.sentiment_avg,
            }
            for p in people
        ],
        "life_events": [
            {
                "title": ev.title,
                "event_date": ev.event_date.isoformat() if ev.event_date else None,
                "significance": ev.significance,
                "category": ev.category,
            }
            for ev in events
        ],
    }


async def regenerate_biography(
    session_factory: async_sessionmaker,
    gateway: ExtractionGateway,
    *,
    recent_limit: int = 50,
    timeout: float = 90.0,
    now: datetime | None = None,
) -> BiographyView:
    """Rebuild the narrative from the consolidated state and store it on the persona row."""
    now = now or utcnow()
    async with session_factory() as session:
        material = await gather_material(session, recent_limit)

    prose = await call_gateway(gateway.compose_biography, material, timeout=timeout, label="biography")
    prose = (prose or "").strip()
    if not prose:
        raise MalformedResultError("biography narrative was empty", raw=prose)

    try:
        async with session_factory() as session:
            row = await get_or_create_persona(session, now)
            row.biography_narrative = prose
            row.biography_generated_at = now
            row.updated_at = now
            await session.commit()
    except SQLAlchemyError as e:
        raise PersistenceError(f"biography write failed: {e}", details={"step": "persona_summary"}) from e

    logger.info(
        f"[bio] regenerated ({len(prose)} chars from {len(material['entries'])} entries, "
        f"{len(material['people'])} people, {len(material['life_events'])} events)"
    )
    return BiographyView(biography=prose, generated_at=now, cached=False)


async def read_biography(
    session_factory: async_sessionmaker,
    *,
    ttl_hours: float = 24,
    now: datetime | None = None,
) -> BiographyView:
    now = now or utcnow()
    async with session_factory() as session:
        row = await session.get(PersonaSummary, PERSONA_ID)
    if row is None or not row.biography_narrative or row.biography_generated_at is None:
        return BiographyView(biography=None, generated_at=None, cached=False)
    if now - row.biography_generated_at >= timedelta(hours=ttl_hours):
        return BiographyView(biography=None, generated_at=row.biography_generated_at, cached=False)
    return BiographyView(biography=row.biography_narrative, generated_at=row.biography_generated_at, cached=True)
