import asyncio
import json

import pytest
from sqlalchemy import select, func

from lifeledger.config import load_settings
from lifeledger.errors import EntryNotFoundError, ExternalServiceError, MalformedResultError, ValidationError
from lifeledger.llm.local import LocalGateway
from lifeledger.models import ExtractedEntity, Insight, LifeEvent, Person, RawEntry
from lifeledger.services.ingest import (
    extract_in_background,
    ingest_chat_message,
    ingest_document,
    ingest_entry,
    ingest_inbox,
    reprocess_entry,
    safe_move_to_archive,
)

ENTRY = {
    "category": "reflection",
    "title": "Walk with Sam",
    "mood_score": 7,
    "people_mentioned": [{"name": "Sam", "sentiment": "positive"}],
    "insights": ["Walking clears the head"],
}


async def _counts(sf):
    async with sf() as session:
        out = {}
        for model in (RawEntry, ExtractedEntity, Person, Insight, LifeEvent):
            out[model.__tablename__] = (
                await session.execute(select(func.count()).select_from(model))
            ).scalar_one()
        return out


def test_empty_text_rejected_before_any_write(run_async, open_db, scripted):
    gw = scripted(entry=ENTRY)

    async def go():
        async with open_db() as sf:
            with pytest.raises(ValidationError):
                await ingest_entry(sf, gw, "   \n ")
            return await _counts(sf)

    assert run_async(go())["raw_entries"] == 0
    assert gw.calls == []


def test_unknown_source_rejected(run_async, open_db, scripted):
    async def go():
        async with open_db() as sf:
            with pytest.raises(ValidationError):
                await ingest_entry(sf, scripted(), "hello", source="fax")

    run_async(go())


def test_ingest_extracts_and_records_metadata(run_async, open_db, scripted):
    gw = scripted(entry=ENTRY)

    async def go():
        async with open_db() as sf:
            out = await ingest_entry(sf, gw, "Went for a walk with Sam.", "voice")
            async with sf() as session:
                raw = await session.get(RawEntry, out.entry_id)
            return out, raw, await _counts(sf)

    out, raw, counts = run_async(go())
    assert out.status == "extracted"
    assert out.merge.people_created == 1
    assert raw.source == "voice"
    assert raw.input_metadata["entry_length_chars"] == len("Went for a walk with Sam.")
    assert "time_of_day" in raw.input_metadata
    assert counts["extracted_entities"] == 1 and counts["people"] == 1 and counts["insights"] == 1
    # context reaches the gateway
    _, (_, context) = gw.calls[0]
    assert context["source"] == "voice" and "today" in context


def test_gateway_failure_keeps_raw_entry(run_async, open_db, scripted):
    gw = scripted(entry=RuntimeError("connection refused"))

    async def go():
        async with open_db() as sf:
            out = await ingest_entry(sf, gw, "Something happened today")
            return out, await _counts(sf)

    out, counts = run_async(go())
    assert out.status == "raw_only"
    assert out.error["code"] == ExternalServiceError.code
    assert counts["raw_entries"] == 1
    assert counts["extracted_entities"] == 0


def test_malformed_result_keeps_raw_entry(run_async, open_db, scripted):
    gw = scripted(entry="Sure! Here is your JSON: {oops")

    async def go():
        async with open_db() as sf:
            out = await ingest_entry(sf, gw, "Another day")
            return out, await _counts(sf)

    out, counts = run_async(go())
    assert out.status == "raw_only"
    assert out.error["code"] == MalformedResultError.code
    assert "oops" in out.error["details"]["raw"]
    assert counts["raw_entries"] == 1 and counts["extracted_entities"] == 0


@pytest.mark.parametrize("payload", [
    {"insights": 5},
    {"title": "Lunch", "people_mentioned": [{"name": "Al", "tags": 3}]},
])
def test_wrongly_shaped_sections_degrade_to_raw_only(run_async, open_db, scripted, payload):
    async def go():
        async with open_db() as sf:
            out = await ingest_entry(sf, scripted(entry=payload), "Lunch with Al")
            return out, await _counts(sf)

    out, counts = run_async(go())
    assert out.status == "raw_only" and out.error["code"] == MalformedResultError.code
    assert counts["raw_entries"] == 1 and counts["extracted_entities"] == 0


def test_infinite_mood_is_dropped_not_fatal(run_async, open_db, scripted):
    gw = scripted(entry='{"title": "Strange day", "mood_score": 1e999}')

    async def go():
        async with open_db() as sf:
            out = await ingest_entry(sf, gw, "Strange day")
            async with sf() as session:
                ent = (await session.execute(select(ExtractedEntity))).scalar_one()
            return out, ent

    out, ent = run_async(go())
    assert out.status == "extracted"
    assert ent.title == "Strange day" and ent.mood_score is None


def test_gateway_timeout_degrades(run_async, open_db, scripted):
    gw = scripted(delay=0.5, entry=ENTRY)

    async def go():
        async with open_db() as sf:
            out = await ingest_entry(sf, gw, "Slow day", timeout=0.05)
            return out, await _counts(sf)

    out, counts = run_async(go())
    assert out.status == "raw_only"
    assert "timed out" in out.error["message"]
    assert counts["raw_entries"] == 1 and counts["extracted_entities"] == 0


def test_reprocess_replaces_derived_rows(run_async, open_db, scripted):
    gw = scripted(entry={**ENTRY, "life_event_detected": {"title": "Adopted a dog"}})

    async def go():
        async with open_db() as sf:
            first = await ingest_entry(sf, gw, "We adopted a dog")
            again = await reprocess_entry(sf, gw, first.entry_id, "We adopted a dog")
            edited = await reprocess_entry(sf, gw, first.entry_id, "We adopted a puppy")
            async with sf() as session:
                raw = await session.get(RawEntry, first.entry_id)
                ents = (await session.execute(select(ExtractedEntity))).scalars().all()
            return first, again, edited, raw, ents, await _counts(sf)

    first, again, edited, raw, ents, counts = run_async(go())
    assert again.reprocessed and edited.status == "extracted"
    assert len(ents) == 1 and ents[0].entry_id == first.entry_id
    assert counts["life_events"] == 1 and counts["insights"] == 1
    assert counts["raw_entries"] == 1
    assert raw.text == "We adopted a puppy"
    assert "edited_at" in raw.input_metadata
    # people are a directory, not derived rows: each pass counts as a mention
    assert counts["people"] == 1


def test_reprocess_failure_keeps_previous_derivation(run_async, open_db, scripted):
    good = scripted(entry=ENTRY)
    bad = scripted(entry="not json")

    async def go():
        async with open_db() as sf:
            first = await ingest_entry(sf, good, "Walk with Sam")
            out = await reprocess_entry(sf, bad, first.entry_id, "Walk with Sam")
            return out, await _counts(sf)

    out, counts = run_async(go())
    assert out.status == "raw_only"
    assert counts["extracted_entities"] == 1


def test_reprocess_unknown_entry(run_async, open_db, scripted):
    async def go():
        async with open_db() as sf:
            with pytest.raises(EntryNotFoundError):
                await reprocess_entry(sf, scripted(entry=ENTRY), "missing-id", "text")

    run_async(go())


def test_background_extraction_success_and_rerun(run_async, open_db, scripted):
    chat = {"should_extract": True, "insights": ["Chatty mood"], "people_mentioned": ["Mia"], "mood_score": 6}
    gw = scripted(chat=chat)

    async def go():
        async with open_db() as sf:
            entry_id, task = await ingest_chat_message(sf, gw, "Coffee with Mia was lovely this morning")
            first = await task
            again = await extract_in_background(sf, gw, entry_id, "Coffee with Mia was lovely this morning")
            async with sf() as session:
                ents = (await session.execute(select(ExtractedEntity))).scalars().all()
                ins = (await session.execute(select(Insight))).scalars().all()
            return first, again, ents, ins

    first, again, ents, ins = run_async(go())
    assert first.entity_id is not None and again.entity_id is not None
    assert len(ents) == 1 and ents[0].category == "chat"
    assert [i.type for i in ins] == ["chat_observation"]


def test_background_extraction_failure_raises(run_async, open_db, scripted):
    gw = scripted(chat=RuntimeError("boom"))

    async def go():
        async with open_db() as sf:
            entry_id, task = await ingest_chat_message(sf, gw, "This message will not be extracted")
            results = await asyncio.gather(task, return_exceptions=True)
            with pytest.raises(ExternalServiceError):
                await extract_in_background(sf, gw, entry_id, "This message will not be extracted")
            with pytest.raises(EntryNotFoundError):
                await extract_in_background(sf, gw, "nope", "text")
            return results, await _counts(sf)

    results, counts = run_async(go())
    assert isinstance(results[0], ExternalServiceError)
    assert counts["raw_entries"] == 1


def test_document_ingestion(run_async, open_db, scripted):
    sections = {
        "persona_updates": {"active_goals": ["learn Portuguese"]},
        "people": [{"name": "Rui", "relationship": "mentor"}],
        "life_events": [{"title": "Moved to Lisbon", "event_date": "2024-03-01"}, {"description": "no title"}],
        "insights": ["Language is a theme"],
    }
    gw = scripted(document=sections)

    async def go():
        async with open_db() as sf:
            out = await ingest_document(sf, gw, "Long document text", "journal-2024.md")
            async with sf() as session:
                raw = await session.get(RawEntry, out.entry_id)
            return out, raw, await _counts(sf)

    out, raw, counts = run_async(go())
    assert out.status == "extracted" and out.merge.persona_updated
    assert raw.source == "document" and raw.input_metadata["file_name"] == "journal-2024.md"
    assert counts["life_events"] == 1 and counts["people"] == 1


def test_local_gateway_end_to_end(run_async, open_db):
    async def go():
        async with open_db() as sf:
            out = await ingest_entry(sf, LocalGateway(), "I am so grateful for dinner with Alice. It was wonderful!")
            async with sf() as session:
                ent = (await session.execute(select(ExtractedEntity))).scalar_one()
                people = (await session.execute(select(Person))).scalars().all()
            return out, ent, people

    out, ent, people = run_async(go())
    assert out.status == "extracted"
    assert ent.category == "gratitude" and ent.mood_score >= 7
    assert [p.name for p in people] == ["Alice"]


def test_inbox_ingests_and_archives(run_async, open_db, scripted):
    s = load_settings()
    (s.inbox_dir / "a.md").write_text("# Trip\nWe drove to the coast.", encoding="utf-8")
    (s.inbox_dir / "empty.txt").write_text("  ", encoding="utf-8")
    (s.inbox_dir / "image.png").write_bytes(b"\x89PNG")
    gw = scripted(document={"insights": ["Road trips recharge"]})

    async def go():
        async with open_db() as sf:
            return await ingest_inbox(sf, gw, s.inbox_dir, s.archive_dir)

    out = run_async(go())
    assert len(out.ingested) == 1 and out.skipped == ["empty.txt"]
    assert not (s.inbox_dir / "a.md").exists()
    assert (s.archive_dir / "a.md").exists()
    assert (s.inbox_dir / "image.png").exists()


def test_safe_move_does_not_overwrite(tmp_path):
    arch = tmp_path / "arch"
    arch.mkdir()
    (arch / "n.md").write_text("old", encoding="utf-8")
    src = tmp_path / "n.md"
    src.write_text("new", encoding="utf-8")
    dest = safe_move_to_archive(src, arch)
    assert dest.name != "n.md" and dest.read_text(encoding="utf-8") == "new"
    assert (arch / "n.md").read_text(encoding="utf-8") == "old"
