# lifeledger/models.py
from __future__ import annotations

from datetime import date, datetime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    String, Text, Integer, Float, Boolean, Date, DateTime, UniqueConstraint, JSON, Index
)

# Fixed key of the one logical persona row
PERSONA_ID = "current"


class Base(DeclarativeBase):
    pass


class RawEntry(Base):
    """Immutable capture of one piece of user input. Only soft delete and user edits touch it."""
    __tablename__ = "raw_entries"
    __table_args__ = (
        Index("ix_raw_entries_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False, default="text")  # text | voice | chat | document
    input_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ExtractedEntity(Base):
    __tablename__ = "extracted_entities"
    __table_args__ = (
        Index("ix_extracted_entities_entry_id", "entry_id"),
        Index("ix_extracted_entities_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # weak reference: no FK, the sweeper removes orphans
    entry_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    mood_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    energy_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    surface_emotion: Mapped[str | None] = mapped_column(String, nullable=True)
    is_task: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    task_status: Mapped[str | None] = mapped_column(String, nullable=True)  # pending | done | cancelled
    task_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    people_mentioned: Mapped[list | None] = mapped_column(JSON, nullable=True)


class Person(Base):
    __tablename__ = "people"
    __table_args__ = (
        # not unique: concurrent first mentions may double-insert; the sweeper merges them
        Index("ix_people_canonical_name", "canonical_name"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    canonical_name: Mapped[str] = mapped_column(String, nullable=False)
    relationship: Mapped[str | None] = mapped_column(String, nullable=True)
    mention_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    sentiment_avg: Mapped[float | None] = mapped_column(Float, nullable=True)
    sentiment_history: Mapped[list | None] = mapped_column(JSON, nullable=True)
    first_mentioned: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_mentioned: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)


class LifeEvent(Base):
    __tablename__ = "life_events"
    __table_args__ = (
        Index("ix_life_events_event_date", "event_date"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    event_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    significance: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    category: Mapped[str] = mapped_column(String, nullable=False, default="personal")
    emotions: Mapped[list | None] = mapped_column(JSON, nullable=True)
    people_involved: Mapped[list | None] = mapped_column(JSON, nullable=True)
    source_entry_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)


class Insight(Base):
    __tablename__ = "insights"
    __table_args__ = (
        # one anniversary insight per (event, day)
        UniqueConstraint("event_id", "fired_on", name="uq_insights_event_fired_on"),
        Index("ix_insights_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    # chat_observation | anniversary | observation | document_upload | auto_extracted | biography_gap
    type: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="new")
    source_entry_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    fired_on: Mapped[date | None] = mapped_column(Date, nullable=True)


class WeeklyReport(Base):
    __tablename__ = "weekly_reports"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    report_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class PersonaSummary(Base):
    __tablename__ = "persona_summary"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=PERSONA_ID)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    life_chapter_title: Mapped[str | None] = mapped_column(String, nullable=True)
    life_chapter_narrative: Mapped[str | None] = mapped_column(Text, nullable=True)
    baseline_mood: Mapped[str | None] = mapped_column(String, nullable=True)
    baseline_energy: Mapped[float | None] = mapped_column(Float, nullable=True)
    active_goals: Mapped[list | None] = mapped_column(JSON, nullable=True)
    profile: Mapped[str | None] = mapped_column(Text, nullable=True)
    biography_narrative: Mapped[str | None] = mapped_column(Text, nullable=True)
    biography_generated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class JobRun(Base):
    """Audit record of one scheduled-job invocation."""
    __tablename__ = "job_runs"
    __table_args__ = (
        Index("ix_job_runs_job_name_started_at", "job_name", "started_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)  # running | completed | failed
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
