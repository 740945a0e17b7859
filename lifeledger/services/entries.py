from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lifeledger.errors import EntryNotFoundError, ValidationError
from lifeledger.llm.schema import TASK_STATUSES
from lifeledger.log import logger
from lifeledger.models import ExtractedEntity, Insight, LifeEvent, Person, RawEntry
from lifeledger.utils import utcnow


async def soft_delete_entry(session: AsyncSession, entry_id: str, now: datetime | None = None) -> None:
    """Hide an entry. Its derived rows stay; it is no longer a raw-dedup candidate."""
    row = await session.get(RawEntry, entry_id)
    if row is None or row.deleted_at is not None:
        raise EntryNotFoundError(entry_id)
    row.deleted_at = now or utcnow()
    logger.info(f"[ingest] soft-deleted {entry_id}")


async def set_task_status(session: AsyncSession, entity_id: str, status: str) -> ExtractedEntity:
    status = (status or "").strip().lower()
    if status not in TASK_STATUSES:
        raise ValidationError(f"invalid task status {status!r}", details={"allowed": list(TASK_STATUSES)})
    row = await session.get(ExtractedEntity, entity_id)
    if row is None or not row.is_task:
        raise ValidationError(f"no task with id {entity_id}", details={"entity_id": entity_id})
    row.task_status = status
    return row


async def list_entries(session: AsyncSession, limit: int = 20) -> list[dict[str, Any]]:
    rows = (
        await session.execute(
            select(RawEntry)
            .where(RawEntry.deleted_at.is_(None))
            .order_by(RawEntry.created_at.desc())
            .limit(limit)
        )
    ).scalars().all()
    ids = [r.id for r in rows]
    ents = (
        await session.execute(select(ExtractedEntity).where(ExtractedEntity.entry_id.in_(ids)))
    ).scalars().all() if ids else []
    by_entry = {e.entry_id: e for e in ents}
    out = []
    for r in rows:
        e = by_entry.get(r.id)
        out.append({
            "id": r.id,
            "created_at": r.created_at.isoformat(),
            "source": r.source,
            "text": r.text,
            "category": e.category if e else None,
            "title": e.title if e else None,
            "mood_score": e.mood_score if e else None,
        })
    return out


async def list_tasks(session: AsyncSession, include_closed: bool = False) -> list[dict[str, Any]]:
    q = select(ExtractedEntity).where(ExtractedEntity.is_task.is_(True))
    if not include_closed:
        q = q.where(ExtractedEntity.task_status == "pending")
    rows = (await session.execute(q.order_by(ExtractedEntity.created_at.desc()))).scalars().all()
    return [
        {
            "id": t.id,
            "title": t.title,
            "status": t.task_status,
            "due": t.task_due_date.isoformat() if t.task_due_date else None,
        }
        for t in rows
    ]


async def list_people(session: AsyncSession) -> list[dict[str, Any]]:
    rows = (await session.execute(select(Person).order_by(Person.last_mentioned.desc()))).scalars().all()
    return [
        {
            "id": p.id,
            "name": p.name,
            "relationship": p.relationship,
            "mention_count": p.mention_count,
            "sentiment_avg": p.sentiment_avg,
            "last_mentioned": p.last_mentioned.isoformat(),
        }
        for p in rows
    ]


async def list_timeline(session: AsyncSession) -> list[dict[str, Any]]:
    rows = (await session.execute(select(LifeEvent).order_by(LifeEvent.event_date.desc()))).scalars().all()
    return [
        {
            "id": ev.id,
            "event_date": ev.event_date.isoformat() if ev.event_date else None,
            "title": ev.title,
            "significance": ev.significance,
            "category": ev.category,
        }
        for ev in rows
    ]


async def list_insights(session: AsyncSession, limit: int = 50) -> list[dict[str, Any]]:
    rows = (
        await session.execute(select(Insight).order_by(Insight.created_at.desc()).limit(limit))
    ).scalars().all()
    return [
        {"id": i.id, "type": i.type, "text": i.text, "status": i.status, "created_at": i.created_at.isoformat()}
        for i in rows
    ]
