"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- raw_entries ---
    op.create_table(
        "raw_entries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("input_metadata", sa.JSON(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_raw_entries_created_at", "raw_entries", ["created_at"])

    # --- extracted_entities (entry_id: no FK) ---
    op.create_table(
        "extracted_entities",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("mood_score", sa.Integer(), nullable=True),
        sa.Column("energy_level", sa.Integer(), nullable=True),
        sa.Column("surface_emotion", sa.String(), nullable=True),
        sa.Column("is_task", sa.Boolean(), nullable=False),
        sa.Column("task_status", sa.String(), nullable=True),
        sa.Column("task_due_date", sa.Date(), nullable=True),
        sa.Column("people_mentioned", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_extracted_entities_entry_id", "extracted_entities", ["entry_id"])
    op.create_index("ix_extracted_entities_created_at", "extracted_entities", ["created_at"])

    # --- people ---
    op.create_table(
        "people",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("canonical_name", sa.String(), nullable=False),
        sa.Column("relationship", sa.String(), nullable=True),
        sa.Column("mention_count", sa.Integer(), nullable=False),
        sa.Column("sentiment_avg", sa.Float(), nullable=True),
        sa.Column("sentiment_history", sa.JSON(), nullable=True),
        sa.Column("first_mentioned", sa.DateTime(), nullable=False),
        sa.Column("last_mentioned", sa.DateTime(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_people_canonical_name", "people", ["canonical_name"])

    # --- life_events ---
    op.create_table(
        "life_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("event_date", sa.Date(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("significance", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("emotions", sa.JSON(), nullable=True),
        sa.Column("people_involved", sa.JSON(), nullable=True),
        sa.Column("source_entry_ids", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_life_events_event_date", "life_events", ["event_date"])

    # --- insights ---
    op.create_table(
        "insights",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("source_entry_id", sa.String(), nullable=True),
        sa.Column("event_id", sa.String(), nullable=True),
        sa.Column("fired_on", sa.Date(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", "fired_on", name="uq_insights_event_fired_on"),
    )
    op.create_index("ix_insights_created_at", "insights", ["created_at"])

    # --- weekly_reports ---
    op.create_table(
        "weekly_reports",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("week_start_date", sa.Date(), nullable=False),
        sa.Column("week_end_date", sa.Date(), nullable=False),
        sa.Column("report_json", sa.JSON(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("week_start_date"),
    )

    # --- persona_summary ---
    op.create_table(
        "persona_summary",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("life_chapter_title", sa.String(), nullable=True),
        sa.Column("life_chapter_narrative", sa.Text(), nullable=True),
        sa.Column("baseline_mood", sa.String(), nullable=True),
        sa.Column("baseline_energy", sa.Float(), nullable=True),
        sa.Column("active_goals", sa.JSON(), nullable=True),
        sa.Column("profile", sa.Text(), nullable=True),
        sa.Column("biography_narrative", sa.Text(), nullable=True),
        sa.Column("biography_generated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    # --- job_runs ---
    op.create_table(
        "job_runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("job_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("items_processed", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_runs_job_name_started_at", "job_runs", ["job_name", "started_at"])


def downgrade() -> None:
    op.drop_index("ix_job_runs_job_name_started_at", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_table("persona_summary")
    op.drop_table("weekly_reports")
    op.drop_index("ix_insights_created_at", table_name="insights")
    op.drop_table("insights")
    op.drop_index("ix_life_events_event_date", table_name="life_events")
    op.drop_table("life_events")
    op.drop_index("ix_people_canonical_name", table_name="people")
    op.drop_table("people")
    op.drop_index("ix_extracted_entities_created_at", table_name="extracted_entities")
    op.drop_index("ix_extracted_entities_entry_id", table_name="extracted_entities")
    op.drop_table("extracted_entities")
    op.drop_index("ix_raw_entries_created_at", table_name="raw_entries")
    op.drop_table("raw_entries")
