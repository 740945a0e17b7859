"""
Entry ingestor.

Phase 1 commits the raw entry on its own; phase 2 (gateway + merge) only
ever adds to it. A gateway timeout, gateway error or malformed answer
leaves the raw entry in place with no derived rows.
"""
from __future__ import annotations

import asyncio
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifeledger.errors import (
    EntryNotFoundError,
    ExternalServiceError,
    LifeLedgerError,
    MalformedResultError,
    PersistenceError,
    ValidationError,
)
from lifeledger.llm.base import ExtractionGateway
from lifeledger.llm.invoke import call_gateway
from lifeledger.llm.schema import ChatExtraction, EntryExtraction, KnowledgeSections, parse_result
from lifeledger.log import logger
from lifeledger.models import PERSONA_ID, ExtractedEntity, PersonaSummary, RawEntry
from lifeledger.services.merge import (
    MergeReport,
    clear_derived,
    merge_chat_extraction,
    merge_extraction,
    merge_sections,
)
from lifeledger.utils import new_id, time_of_day, utcnow

SOURCES = ("text", "voice", "chat", "document")
MAX_TEXT_CHARS = 50_000


@dataclass
class IngestOutcome:
    entry_id: str
    status: str  # extracted | raw_only | partial
    reprocessed: bool = False
    merge: MergeReport | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "status": self.status,
            "reprocessed": self.reprocessed,
            "merge": self.merge.to_dict() if self.merge else None,
            "error": self.error,
        }


def validate_text(text: str | None) -> str:
    stripped = text.strip() if isinstance(text, str) else ""
    if not stripped:
        raise ValidationError("text must not be empty after stripping whitespace")
    if len(stripped) > MAX_TEXT_CHARS:
        raise ValidationError(
            f"text exceeds {MAX_TEXT_CHARS} characters",
            details={"max_chars": MAX_TEXT_CHARS, "received": len(stripped)},
        )
    return stripped


def validate_source(source: str | None) -> str:
    src = (source or "text").strip().lower()
    if src not in SOURCES:
        raise ValidationError(f"unknown source {source!r}", details={"allowed": list(SOURCES)})
    return src


# ---------------------------------------------------------------------------
# Context for the gateway
# ---------------------------------------------------------------------------

async def build_context(session: AsyncSession, *, source: str, now: datetime, recent: int = 10) -> dict[str, Any]:
    rows = (
        await session.execute(
            select(ExtractedEntity.category, ExtractedEntity.title, ExtractedEntity.mood_score)
            .order_by(ExtractedEntity.created_at.desc())
            .limit(recent)
        )
    ).all()
    recent_text = "\n".join(
        f"[{cat}] {title}" + (f" (mood {mood}/10)" if mood else "") for (cat, title, mood) in rows
    )
    persona = await session.get(PersonaSummary, PERSONA_ID)
    persona_text = ""
    if persona is not None:
        persona_text = "\n".join(
            p for p in (persona.life_chapter_title, persona.life_chapter_narrative) if p
        )
    return {
        "source": source,
        "time_of_day": time_of_day(now),
        "today": now.date().isoformat(),
        "recent_entries": recent_text,
        "persona": persona_text,
    }


# ---------------------------------------------------------------------------
# Phase 1: raw capture
# ---------------------------------------------------------------------------

async def capture_raw(
    session_factory: async_sessionmaker,
    text: str,
    source: str,
    *,
    now: datetime,
    metadata: dict[str, Any] | None = None,
) -> str:
    """Persist the raw entry and commit. The only failure that is fatal to a request."""
    entry_id = new_id()
    meta = {"entry_length_chars": len(text), "time_of_day": time_of_day(now)}
    meta.update(metadata or {})
    try:
        async with session_factory() as session:
            session.add(
                RawEntry(
                    id=entry_id,
                    created_at=now,
                    text=text,
                    source=source,
                    input_metadata=meta,
                )
            )
            await session.commit()
    except SQLAlchemyError as e:
        raise PersistenceError(f"raw entry save failed: {e}", details={"step": "raw_entry"}) from e
    logger.info(f"[ingest] captured {entry_id} ({source}, {len(text)} chars)")
    return entry_id


async def _load_for_reprocess(
    session_factory: async_sessionmaker, entry_id: str, text: str, now: datetime
) -> None:
    """Reprocess is a user edit: replace the stored text only when it changed."""
    try:
        async with session_factory() as session:
            row = await session.get(RawEntry, entry_id)
            if row is None or row.deleted_at is not None:
                raise EntryNotFoundError(entry_id)
            if row.text != text:
                row.text = text
                row.input_metadata = {
                    **(row.input_metadata or {}),
                    "entry_length_chars": len(text),
                    "edited_at": now.isoformat(),
                }
                await session.commit()
                logger.info(f"[ingest] {entry_id}: text edited before reprocess")
    except SQLAlchemyError as e:
        raise PersistenceError(f"raw entry update failed: {e}", details={"step": "raw_entry"}) from e


# ---------------------------------------------------------------------------
# Phase 2: extraction + merge
# ---------------------------------------------------------------------------

async def _extract_and_merge(
    session_factory: async_sessionmaker,
    entry_id: str,
    *,
    call: Callable[[dict[str, Any]], Awaitable[str]],
    merge: Callable[[AsyncSession, str], Awaitable[MergeReport]],
    source: str,
    now: datetime,
    recent: int,
    replace: bool,
) -> IngestOutcome:
    """Run the gateway and merge; gateway trouble and partial writes degrade, never raise."""
    try:
        async with session_factory() as session:
            context = await build_context(session, source=source, now=now, recent=recent)
        raw = await call(context)
        async with session_factory() as session:
            if replace:
                await clear_derived(session, entry_id)
            report = await merge(session, raw)
    except MalformedResultError as e:
        logger.warning(f"[ingest] {entry_id}: malformed gateway result ({e.message}); raw payload: {e.raw!r}")
        return IngestOutcome(entry_id, "raw_only", reprocessed=replace, error=e.to_dict())
    except ExternalServiceError as e:
        logger.warning(f"[ingest] {entry_id}: extraction skipped ({e.message})")
        return IngestOutcome(entry_id, "raw_only", reprocessed=replace, error=e.to_dict())
    except PersistenceError as e:
        logger.error(f"[ingest] {entry_id}: derived write failed ({e.message}); left for the sweeper")
        return IngestOutcome(entry_id, "partial", reprocessed=replace, error=e.to_dict())
    return IngestOutcome(entry_id, "extracted", reprocessed=replace, merge=report)


async def ingest_entry(
    session_factory: async_sessionmaker,
    gateway: ExtractionGateway,
    text: str,
    source: str = "text",
    *,
    existing_entry_id: str | None = None,
    timeout: float = 20.0,
    recent: int = 10,
    now: datetime | None = None,
) -> IngestOutcome:
    """
    Capture a journal entry and run full extraction.
    With `existing_entry_id` the entry is reprocessed: its derived rows are
    replaced in one transaction, never duplicated.
    """
    text = validate_text(text)
    source = validate_source(source)
    now = now or utcnow()

    if existing_entry_id:
        await _load_for_reprocess(session_factory, existing_entry_id, text, now)
        entry_id = existing_entry_id
    else:
        entry_id = await capture_raw(session_factory, text, source, now=now)

    async def call(context: dict[str, Any]) -> str:
        return await call_gateway(gateway.extract_entry, text, context, timeout=timeout, label="entry extraction")

    async def merge(session: AsyncSession, raw: str) -> MergeReport:
        result = parse_result(raw, EntryExtraction)
        return await merge_extraction(session, entry_id, result, text=text, now=now)

    return await _extract_and_merge(
        session_factory, entry_id,
        call=call, merge=merge, source=source, now=now, recent=recent,
        replace=bool(existing_entry_id),
    )


async def reprocess_entry(
    session_factory: async_sessionmaker,
    gateway: ExtractionGateway,
    entry_id: str,
    text: str,
    **kwargs: Any,
) -> IngestOutcome:
    return await ingest_entry(session_factory, gateway, text, existing_entry_id=entry_id, **kwargs)


async def ingest_document(
    session_factory: async_sessionmaker,
    gateway: ExtractionGateway,
    text: str,
    file_name: str,
    *,
    timeout: float = 90.0,
    recent: int = 10,
    now: datetime | None = None,
) -> IngestOutcome:
    """Capture already-extracted document text and merge its knowledge sections."""
    text = validate_text(text)
    if not (file_name or "").strip():
        raise ValidationError("file_name is required for documents")
    now = now or utcnow()
    entry_id = await capture_raw(session_factory, text, "document", now=now, metadata={"file_name": file_name})

    async def call(context: dict[str, Any]) -> str:
        return await call_gateway(
            gateway.extract_document, text, file_name, context, timeout=timeout, label="document extraction"
        )

    async def merge(session: AsyncSession, raw: str) -> MergeReport:
        sections = parse_result(raw, KnowledgeSections)
        return await merge_sections(session, entry_id, sections, text=text, file_name=file_name, now=now)

    return await _extract_and_merge(
        session_factory, entry_id,
        call=call, merge=merge, source="document", now=now, recent=recent, replace=False,
    )


# ---------------------------------------------------------------------------
# Chat messages: background extraction
# ---------------------------------------------------------------------------

async def extract_in_background(
    session_factory: async_sessionmaker,
    gateway: ExtractionGateway,
    entry_id: str,
    text: str,
    *,
    timeout: float = 90.0,
    recent: int = 10,
    now: datetime | None = None,
) -> MergeReport:
    """
    Explicit background trigger for one captured entry (short-form chat mode).
    Unlike the ingestion path this raises: the caller reports 200 vs 500.
    Re-running it for the same entry replaces, not duplicates.
    """
    if not (entry_id or "").strip():
        raise ValidationError("entryId is required")
    text = validate_text(text)
    now = now or utcnow()
    async with session_factory() as session:
        row = await session.get(RawEntry, entry_id)
        if row is None:
            raise EntryNotFoundError(entry_id)
        context = await build_context(session, source="chat", now=now, recent=recent)

    raw = await call_gateway(gateway.extract_chat, text, context, timeout=timeout, label="chat extraction")
    try:
        result = parse_result(raw, ChatExtraction)
    except MalformedResultError as e:
        logger.warning(f"[ingest] {entry_id}: malformed chat result ({e.message}); raw payload: {e.raw!r}")
        raise
    async with session_factory() as session:
        await clear_derived(session, entry_id)
        return await merge_chat_extraction(session, entry_id, result, text=text, now=now)


def spawn_background_extraction(
    session_factory: async_sessionmaker,
    gateway: ExtractionGateway,
    entry_id: str,
    text: str,
    **kwargs: Any,
) -> asyncio.Task:
    """Fire-and-forget wrapper; failures are logged, the raw entry is already safe."""

    def _done(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning(f"[ingest] background extraction for {entry_id} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"[ingest] background extraction for {entry_id} failed: {exc}")

    task = asyncio.create_task(
        extract_in_background(session_factory, gateway, entry_id, text, **kwargs),
        name=f"extract-{entry_id}",
    )
    task.add_done_callback(_done)
    return task


async def ingest_chat_message(
    session_factory: async_sessionmaker,
    gateway: ExtractionGateway,
    text: str,
    *,
    timeout: float = 90.0,
    recent: int = 10,
    now: datetime | None = None,
) -> tuple[str, asyncio.Task]:
    """
    Capture a chat message and return its id at once; extraction runs as a task.
    Derived rows are not visible until that task finishes.
    """
    text = validate_text(text)
    now = now or utcnow()
    entry_id = await capture_raw(session_factory, text, "chat", now=now)
    task = spawn_background_extraction(
        session_factory, gateway, entry_id, text, timeout=timeout, recent=recent, now=now
    )
    return entry_id, task


# ---------------------------------------------------------------------------
# Inbox of dropped files
# ---------------------------------------------------------------------------

INBOX_EXTS = {".md", ".markdown", ".mdown", ".txt"}


def safe_move_to_archive(src: Path, archive_dir: Path) -> Path:
    """
    Move file to archive_dir without overwriting: a clash gets a _YYYYmmdd_HHMMSS suffix.
    Returns final destination path.
    """
    archive_dir = archive_dir.expanduser()
    archive_dir.mkdir(parents=True, exist_ok=True)
    dest = archive_dir / src.name
    if dest.exists():
        ts = time.strftime("%Y%m%d_%H%M%S")
        dest = archive_dir / f"{src.stem}_{ts}{src.suffix}"
    shutil.move(str(src), str(dest))
    return dest


def discover_inbox(root: Path) -> list[Path]:
    """
    Return text/markdown files under the inbox (recursive), in a stable sorted order.
    """
    root = root.expanduser()
    if not root.exists() or not root.is_dir():
        return []
    files = [
        p for p in root.rglob("*")
        if p.is_file() and p.suffix.lower() in INBOX_EXTS and not p.name.startswith(".")
    ]
    files.sort()
    return files


@dataclass
class InboxOutcome:
    ingested: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


async def ingest_inbox(
    session_factory: async_sessionmaker,
    gateway: ExtractionGateway,
    inbox_dir: Path,
    archive_dir: Path,
    *,
    timeout: float = 90.0,
    recent: int = 10,
) -> InboxOutcome:
    """
    Ingest every file in the inbox as a document and archive it once its raw
    entry is committed. Empty files are archived and skipped.
    """
    out = InboxOutcome()
    for p in discover_inbox(inbox_dir):
        text = p.read_text(encoding="utf-8", errors="replace")
        if not text.strip():
            safe_move_to_archive(p, archive_dir)
            out.skipped.append(p.name)
            continue
        try:
            outcome = await ingest_document(
                session_factory, gateway, text, p.name, timeout=timeout, recent=recent
            )
        except LifeLedgerError as e:
            logger.error(f"[inbox] {p.name}: {e.message}")
            out.failed[p.name] = e.message
            continue
        final = safe_move_to_archive(p, archive_dir)
        out.ingested.append(outcome.entry_id)
        logger.info(f"[inbox] {p.name} → {outcome.entry_id} ({outcome.status}); archived as {final.name}")
    return out
