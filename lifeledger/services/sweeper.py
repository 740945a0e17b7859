"""
Consolidation sweeper.

Removes duplicates the write path tolerates. Passes run in a fixed order,
each in its own session: a failing pass is logged and reported, the rest
still run. Within a duplicate group the newest row survives (created_at,
ties broken by id), except for people where the latest mention wins.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Hashable, Iterable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifeledger.log import logger
from lifeledger.models import ExtractedEntity, Insight, LifeEvent, Person, RawEntry
from lifeledger.utils import canonical_name, fold_title

T = TypeVar("T")

PASSES = (
    "life_events_removed",
    "people_removed",
    "entities_removed",
    "raw_entries_removed",
    "insights_removed",
    "orphaned_entities_removed",
)


@dataclass
class SweepReport:
    removed: dict[str, int] = field(default_factory=lambda: {name: 0 for name in PASSES})
    cascaded_entities_removed: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def total(self) -> int:
        return sum(self.removed.values()) + self.cascaded_entities_removed

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.removed,
            "cascaded_entities_removed": self.cascaded_entities_removed,
            "total_removed": self.total,
            "errors": self.errors,
            "dry_run": self.dry_run,
        }


def _newest_first(rows: Iterable[T]) -> list[T]:
    return sorted(rows, key=lambda r: (r.created_at, r.id), reverse=True)


def _duplicates(
    rows: Iterable[T],
    key: Callable[[T], Hashable],
    rank: Callable[[T], Any] | None = None,
) -> list[tuple[T, list[T]]]:
    """Group rows by key; (survivor, losers) for groups larger than one. Highest rank survives."""
    groups: dict[Hashable, list[T]] = defaultdict(list)
    for r in rows:
        groups[key(r)].append(r)
    out = []
    for members in groups.values():
        if len(members) > 1:
            ordered = sorted(members, key=rank, reverse=True) if rank else _newest_first(members)
            out.append((ordered[0], ordered[1:]))
    return out


# ---------------------------------------------------------------------------
# Passes: each returns the number of rows it removed (or would remove)
# ---------------------------------------------------------------------------

def _event_key(identity: str) -> Callable[[LifeEvent], Hashable]:
    if identity == "title_and_date":
        return lambda ev: (fold_title(ev.title), ev.event_date)
    return lambda ev: fold_title(ev.title)


async def sweep_life_events(session: AsyncSession, *, dry_run: bool, identity: str = "title") -> int:
    rows = (await session.execute(select(LifeEvent))).scalars().all()
    removed = 0
    for survivor, losers in _duplicates(rows, _event_key(identity)):
        if not dry_run:
            sources = list(survivor.source_entry_ids or [])
            for loser in losers:
                sources.extend(s for s in (loser.source_entry_ids or []) if s not in sources)
                await session.delete(loser)
            survivor.source_entry_ids = sources
        removed += len(losers)
    return removed


async def sweep_people(session: AsyncSession, *, dry_run: bool) -> int:
    rows = (await session.execute(select(Person))).scalars().all()
    groups: dict[str, list[Person]] = defaultdict(list)
    for p in rows:
        groups[canonical_name(p.name)].append(p)
    removed = 0
    for members in groups.values():
        if len(members) < 2:
            continue
        ordered = sorted(members, key=lambda p: (p.last_mentioned, p.id), reverse=True)
        survivor, losers = ordered[0], ordered[1:]
        if not dry_run:
            survivor.mention_count = sum(p.mention_count or 0 for p in members)
            survivor.first_mentioned = min(p.first_mentioned for p in members)
            history = [pt for p in members for pt in (p.sentiment_history or [])]
            history.sort(key=lambda pt: str(pt.get("date", "")))
            survivor.sentiment_history = history[-20:]
            tags = set()
            for p in members:
                tags.update(p.tags or [])
            survivor.tags = sorted(tags)
            if not survivor.relationship:
                survivor.relationship = next((p.relationship for p in losers if p.relationship), None)
            for loser in losers:
                await session.delete(loser)
        removed += len(losers)
    return removed


async def _raw_duplicates(session: AsyncSession) -> list[tuple[RawEntry, list[RawEntry]]]:
    """Exact-text duplicate groups among live entries."""
    rows = (
        await session.execute(select(RawEntry).where(RawEntry.deleted_at.is_(None)))
    ).scalars().all()
    return _duplicates(rows, lambda r: r.text.strip())


async def sweep_entities(session: AsyncSession, *, dry_run: bool) -> int:
    rows = (await session.execute(select(ExtractedEntity))).scalars().all()
    # entities of raw entries the next pass removes must not be chosen as survivors
    doomed = {r.id for _, losers in await _raw_duplicates(session) for r in losers}
    removed = 0
    for _, losers in _duplicates(
        rows,
        lambda e: (fold_title(e.title), e.category),
        rank=lambda e: (e.entry_id not in doomed, e.created_at, e.id),
    ):
        if not dry_run:
            for loser in losers:
                await session.delete(loser)
        removed += len(losers)
    return removed


async def sweep_raw_entries(session: AsyncSession, *, dry_run: bool) -> tuple[int, int]:
    """
    Exact-text duplicates among live entries. A removed entry takes its
    extracted entities with it; returns (entries, cascaded entities).
    """
    removed = cascaded = 0
    for _, losers in await _raw_duplicates(session):
        loser_ids = [r.id for r in losers]
        dependents = (
            await session.execute(select(ExtractedEntity).where(ExtractedEntity.entry_id.in_(loser_ids)))
        ).scalars().all()
        if not dry_run:
            for ent in dependents:
                await session.delete(ent)
            for loser in losers:
                await session.delete(loser)
        removed += len(losers)
        cascaded += len(dependents)
    return removed, cascaded


async def sweep_insights(session: AsyncSession, *, dry_run: bool) -> int:
    rows = (await session.execute(select(Insight))).scalars().all()
    removed = 0
    for _, losers in _duplicates(rows, lambda i: (i.text or "").strip()):
        if not dry_run:
            for loser in losers:
                await session.delete(loser)
        removed += len(losers)
    return removed


async def sweep_orphans(session: AsyncSession, *, dry_run: bool) -> int:
    """Entities whose entry no longer exists. Soft-deleted entries still count as existing."""
    entry_ids = set((await session.execute(select(RawEntry.id))).scalars().all())
    rows = (await session.execute(select(ExtractedEntity))).scalars().all()
    orphans = [e for e in rows if e.entry_id not in entry_ids]
    if not dry_run:
        for ent in orphans:
            await session.delete(ent)
    return len(orphans)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

async def _run_pass(
    session_factory: async_sessionmaker,
    name: str,
    fn: Callable[[AsyncSession], Awaitable[Any]],
    report: SweepReport,
) -> Any:
    try:
        async with session_factory() as session:
            result = await fn(session)
            if not report.dry_run:
                await session.commit()
            return result
    except SQLAlchemyError as e:
        logger.error(f"[sweep] pass {name} failed: {e}")
        report.errors[name] = str(e)
        return None
    except Exception as e:
        logger.exception(f"[sweep] pass {name} crashed")
        report.errors[name] = f"{type(e).__name__}: {e}"
        return None


async def run_sweep(
    session_factory: async_sessionmaker,
    *,
    dry_run: bool = False,
    event_identity: str = "title",
) -> SweepReport:
    """
    One consolidation sweep. Idempotent: a second run on an unchanged store removes nothing.
    With dry_run=True nothing is written and the counts are what a real run would remove.
    """
    report = SweepReport(dry_run=dry_run)

    n = await _run_pass(
        session_factory, "life_events_removed",
        lambda s: sweep_life_events(s, dry_run=dry_run, identity=event_identity), report,
    )
    report.removed["life_events_removed"] = n or 0

    n = await _run_pass(session_factory, "people_removed", lambda s: sweep_people(s, dry_run=dry_run), report)
    report.removed["people_removed"] = n or 0

    n = await _run_pass(session_factory, "entities_removed", lambda s: sweep_entities(s, dry_run=dry_run), report)
    report.removed["entities_removed"] = n or 0

    pair = await _run_pass(
        session_factory, "raw_entries_removed", lambda s: sweep_raw_entries(s, dry_run=dry_run), report
    )
    if pair:
        report.removed["raw_entries_removed"], report.cascaded_entities_removed = pair

    n = await _run_pass(session_factory, "insights_removed", lambda s: sweep_insights(s, dry_run=dry_run), report)
    report.removed["insights_removed"] = n or 0

    n = await _run_pass(
        session_factory, "orphaned_entities_removed", lambda s: sweep_orphans(s, dry_run=dry_run), report
    )
    report.removed["orphaned_entities_removed"] = n or 0

    verb = "would remove" if dry_run else "removed"
    logger.info(
        f"[sweep] {verb} {report.total} row(s): "
        + ", ".join(f"{k}={v}" for k, v in report.removed.items() if v)
        + (f"; cascaded={report.cascaded_entities_removed}" if report.cascaded_entities_removed else "")
        + (f"; errors in {sorted(report.errors)}" if report.errors else "")
    )
    return report
