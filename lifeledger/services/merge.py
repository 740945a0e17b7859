"""
Knowledge merger: applies one validated gateway result to the derived stores.

People are resolved synchronously by canonical name (single-row lookup,
check-then-act). Life events and insights are appended unconditionally;
their duplicates are the sweeper's job. Each step commits on its own, so a
failure part-way leaves earlier steps in place and is reported upward as a
PersistenceError.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lifeledger.errors import PersistenceError
from lifeledger.llm.schema import (
    ChatExtraction,
    EntryExtraction,
    KnowledgeSections,
    LifeEventDraft,
    PersonMention,
    PersonaUpdates,
)
from lifeledger.log import logger
from lifeledger.models import (
    PERSONA_ID,
    ExtractedEntity,
    Insight,
    LifeEvent,
    Person,
    PersonaSummary,
)
from lifeledger.utils import canonical_name, first_title_line, new_id, utcnow

# Fixed buckets, not a running average
SENTIMENT_BUCKETS = {"positive": 7, "neutral": 5, "negative": 3}
_HISTORY_LIMIT = 20


@dataclass
class MergeReport:
    entry_id: str
    entity_id: str | None = None
    people_created: int = 0
    people_updated: int = 0
    life_events_added: int = 0
    insights_added: int = 0
    persona_updated: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def sentiment_score(mention: PersonMention) -> float:
    if mention.sentiment:
        return float(SENTIMENT_BUCKETS.get(mention.sentiment.strip().lower(), 5))
    if mention.sentiment_avg is not None:
        return float(max(1.0, min(10.0, mention.sentiment_avg)))
    return 5.0


async def _commit(session: AsyncSession, step: str) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise PersistenceError(f"{step} write failed: {e}", details={"step": step}) from e


# ---------------------------------------------------------------------------
# Row builders / single-store writes (no commit)
# ---------------------------------------------------------------------------

async def upsert_person(session: AsyncSession, mention: PersonMention, now: datetime) -> bool:
    """
    Check-then-act upsert keyed by canonical name. Returns True when a new row was added.
    Two concurrent first mentions can both insert; the sweeper folds them together.
    """
    key = canonical_name(mention.name)
    score = sentiment_score(mention)
    point = {"date": now.isoformat(), "sentiment": score, "context": mention.context or ""}

    row = (
        await session.execute(
            select(Person)
            .where(Person.canonical_name == key)
            .order_by(Person.last_mentioned.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    if row is not None:
        row.mention_count = (row.mention_count or 0) + 1
        row.last_mentioned = now
        row.sentiment_avg = score
        row.sentiment_history = [*(row.sentiment_history or []), point][-_HISTORY_LIMIT:]
        if mention.relationship:
            row.relationship = mention.relationship
        if mention.tags:
            row.tags = sorted(set(row.tags or []) | set(mention.tags))
        return False

    session.add(
        Person(
            id=new_id(),
            name=mention.name.strip(),
            canonical_name=key,
            relationship=mention.relationship,
            mention_count=1,
            sentiment_avg=score,
            sentiment_history=[point],
            first_mentioned=now,
            last_mentioned=now,
            tags=sorted(set(mention.tags)),
        )
    )
    return True


def build_life_event(draft: LifeEventDraft, source_entry_id: str | None, now: datetime) -> LifeEvent:
    return LifeEvent(
        id=new_id(),
        created_at=now,
        event_date=draft.event_date or now.date(),
        title=draft.title,
        description=draft.description,
        significance=draft.significance,
        category=draft.category,
        emotions=list(draft.emotions),
        people_involved=list(draft.people_involved),
        source_entry_ids=[source_entry_id] if source_entry_id else [],
    )


def build_insight(
    text: str,
    type_: str,
    now: datetime,
    *,
    source_entry_id: str | None = None,
    confidence: float | None = None,
    event_id: str | None = None,
) -> Insight:
    return Insight(
        id=new_id(),
        created_at=now,
        text=text,
        type=type_,
        confidence=confidence,
        status="new",
        source_entry_id=source_entry_id,
        event_id=event_id,
        fired_on=now.date() if event_id else None,
    )


async def get_or_create_persona(session: AsyncSession, now: datetime) -> PersonaSummary:
    row = await session.get(PersonaSummary, PERSONA_ID)
    if row is None:
        row = PersonaSummary(id=PERSONA_ID, updated_at=now)
        session.add(row)
    return row


async def apply_persona_updates(
    session: AsyncSession,
    updates: PersonaUpdates,
    now: datetime,
    source_label: str | None = None,
) -> PersonaSummary:
    """Amend the single persona row: scalar fields overwrite, goals append, profile accumulates."""
    row = await get_or_create_persona(session, now)
    for field in ("life_chapter_title", "life_chapter_narrative", "baseline_mood", "baseline_energy"):
        value = getattr(updates, field)
        if value is not None:
            setattr(row, field, value)
    if updates.active_goals:
        row.active_goals = [*(row.active_goals or []), *updates.active_goals]
    if updates.full_psychological_profile:
        marker = f"[Updated from: {source_label}]\n" if source_label else ""
        addition = marker + updates.full_psychological_profile
        row.profile = f"{row.profile}\n\n{addition}" if row.profile else addition
    row.updated_at = now
    return row


async def clear_derived(session: AsyncSession, entry_id: str) -> None:
    """
    Stage deletion of everything derived from one entry (no commit).
    Life events shared with other entries only lose this entry from their sources.
    """
    await session.execute(delete(ExtractedEntity).where(ExtractedEntity.entry_id == entry_id))
    await session.execute(delete(Insight).where(Insight.source_entry_id == entry_id))
    events = (await session.execute(select(LifeEvent))).scalars().all()
    for ev in events:
        sources = ev.source_entry_ids or []
        if entry_id not in sources:
            continue
        remaining = [s for s in sources if s != entry_id]
        if remaining:
            ev.source_entry_ids = remaining
        else:
            await session.delete(ev)


# ---------------------------------------------------------------------------
# Merge steps
# ---------------------------------------------------------------------------

async def _merge_parts(
    session: AsyncSession,
    report: MergeReport,
    *,
    entity: ExtractedEntity | None,
    people: Iterable[PersonMention],
    events: Iterable[LifeEventDraft],
    insights: Iterable[str],
    insight_type: str,
    now: datetime,
) -> MergeReport:
    # 1) entity (also flushes any staged clear_derived deletes: replace is atomic)
    if entity is not None:
        session.add(entity)
        await _commit(session, "entity")
        report.entity_id = entity.id

    # 2) people
    people = list(people)
    if people:
        for mention in people:
            if await upsert_person(session, mention, now):
                report.people_created += 1
            else:
                report.people_updated += 1
            # new rows must be visible to the next lookup in this batch
            await session.flush()
        await _commit(session, "people")

    # 3) life events, appended; dedup is deferred
    events = list(events)
    if events:
        for draft in events:
            session.add(build_life_event(draft, report.entry_id, now))
        await _commit(session, "life_events")
        report.life_events_added = len(events)

    # 4) insights, appended
    insights = list(insights)
    if insights:
        for text in insights:
            session.add(build_insight(text, insight_type, now, source_entry_id=report.entry_id))
        await _commit(session, "insights")
        report.insights_added = len(insights)

    logger.info(
        f"[merge] entry {report.entry_id}: entity={report.entity_id} "
        f"people +{report.people_created}/~{report.people_updated} "
        f"events +{report.life_events_added} insights +{report.insights_added}"
    )
    return report


async def merge_extraction(
    session: AsyncSession,
    entry_id: str,
    result: EntryExtraction,
    *,
    text: str,
    now: datetime | None = None,
) -> MergeReport:
    """Apply a full entry extraction."""
    now = now or utcnow()
    entity = ExtractedEntity(
        id=new_id(),
        entry_id=entry_id,
        created_at=now,
        category=result.category or "reflection",
        title=result.title or first_title_line(text) or "(untitled)",
        content=result.content or text,
        mood_score=result.mood_score,
        energy_level=result.energy_level,
        surface_emotion=result.surface_emotion,
        is_task=result.is_task,
        task_status=(result.task_status or "pending") if result.is_task else None,
        task_due_date=result.task_due_date if result.is_task else None,
        people_mentioned=[p.model_dump(exclude_none=True) for p in result.people_mentioned],
    )
    return await _merge_parts(
        session,
        MergeReport(entry_id=entry_id),
        entity=entity,
        people=result.people_mentioned,
        events=[result.life_event_detected] if result.life_event_detected else [],
        insights=result.insights,
        insight_type="auto_extracted",
        now=now,
    )


async def merge_chat_extraction(
    session: AsyncSession,
    entry_id: str,
    result: ChatExtraction,
    *,
    text: str,
    now: datetime | None = None,
) -> MergeReport:
    """Apply a short-form chat extraction; `should_extract = false` writes nothing."""
    report = MergeReport(entry_id=entry_id)
    if not result.should_extract:
        # still lands any staged clear_derived deletes
        await _commit(session, "entity")
        logger.info(f"[merge] chat entry {entry_id}: nothing worth extracting")
        return report
    now = now or utcnow()
    entity = ExtractedEntity(
        id=new_id(),
        entry_id=entry_id,
        created_at=now,
        category="task" if result.is_task else "chat",
        title=result.task_title or first_title_line(text) or "(untitled)",
        content=text,
        mood_score=result.mood_score,
        is_task=result.is_task,
        task_status="pending" if result.is_task else None,
        task_due_date=result.task_due_date if result.is_task else None,
        people_mentioned=[p.model_dump(exclude_none=True) for p in result.people_mentioned],
    )
    return await _merge_parts(
        session,
        report,
        entity=entity,
        people=result.people_mentioned,
        events=[result.life_event_detected] if result.life_event_detected else [],
        insights=result.insights,
        insight_type="chat_observation",
        now=now,
    )


async def merge_sections(
    session: AsyncSession,
    entry_id: str,
    sections: KnowledgeSections,
    *,
    text: str,
    file_name: str,
    now: datetime | None = None,
    insight_type: str = "document_upload",
) -> MergeReport:
    """Apply document-mode sections: persona updates, people, life events, insights."""
    now = now or utcnow()
    report = MergeReport(entry_id=entry_id)
    entity = ExtractedEntity(
        id=new_id(),
        entry_id=entry_id,
        created_at=now,
        category="document",
        title=file_name,
        content=text[:2000],
        is_task=False,
        people_mentioned=[p.model_dump(exclude_none=True) for p in sections.people],
    )
    if sections.persona_updates is not None:
        await apply_persona_updates(session, sections.persona_updates, now, source_label=file_name)
        report.persona_updated = True
    return await _merge_parts(
        session,
        report,
        entity=entity,
        people=sections.people,
        events=sections.life_events,
        insights=sections.insights,
        insight_type=insight_type,
        now=now,
    )
