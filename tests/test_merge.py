from datetime import datetime, timedelta

from sqlalchemy import select, func

from lifeledger.llm.schema import ChatExtraction, EntryExtraction, KnowledgeSections, PersonMention
from lifeledger.models import PERSONA_ID, ExtractedEntity, Insight, LifeEvent, Person, PersonaSummary
from lifeledger.services.merge import (
    clear_derived,
    merge_chat_extraction,
    merge_extraction,
    merge_sections,
    sentiment_score,
)

NOW = datetime(2026, 10, 19, 9, 30)


def _count(session, model):
    return session.execute(select(func.count()).select_from(model))


def test_sentiment_buckets():
    assert sentiment_score(PersonMention(name="A", sentiment="positive")) == 7
    assert sentiment_score(PersonMention(name="A", sentiment="NEGATIVE")) == 3
    assert sentiment_score(PersonMention(name="A", sentiment="meh")) == 5
    assert sentiment_score(PersonMention(name="A", sentiment_avg=12)) == 10
    assert sentiment_score(PersonMention(name="A")) == 5


def test_merge_extraction_writes_every_store(run_async, open_db):
    result = EntryExtraction.model_validate({
        "category": "memory",
        "title": "Lunch with Alice",
        "mood_score": 8,
        "people_mentioned": [{"name": "Alice", "relationship": "friend", "sentiment": "positive"}],
        "life_event_detected": {"title": "Alice got engaged", "event_date": "2026-10-18"},
        "insights": ["Time with friends lifts the week"],
    })

    async def go():
        async with open_db() as sf:
            async with sf() as session:
                rep = await merge_extraction(session, "e1", result, text="Lunch with Alice", now=NOW)
            async with sf() as session:
                ent = (await session.execute(select(ExtractedEntity))).scalar_one()
                person = (await session.execute(select(Person))).scalar_one()
                event = (await session.execute(select(LifeEvent))).scalar_one()
                insight = (await session.execute(select(Insight))).scalar_one()
            return rep, ent, person, event, insight

    rep, ent, person, event, insight = run_async(go())
    assert rep.entity_id == ent.id and rep.people_created == 1
    assert ent.entry_id == "e1" and ent.mood_score == 8
    assert person.canonical_name == "alice" and person.mention_count == 1 and person.sentiment_avg == 7
    assert event.source_entry_ids == ["e1"] and event.event_date.isoformat() == "2026-10-18"
    assert insight.type == "auto_extracted" and insight.source_entry_id == "e1"


def test_person_upsert_by_canonical_name(run_async, open_db):
    first = EntryExtraction.model_validate({"people_mentioned": [{"name": "Alice", "sentiment": "positive"}]})
    second = EntryExtraction.model_validate({"people_mentioned": [{"name": " ALICE ", "sentiment": "negative"}]})

    async def go():
        async with open_db() as sf:
            async with sf() as session:
                await merge_extraction(session, "e1", first, text="x", now=NOW)
            async with sf() as session:
                rep = await merge_extraction(session, "e2", second, text="y", now=NOW + timedelta(hours=1))
            async with sf() as session:
                people = (await session.execute(select(Person))).scalars().all()
            return rep, people

    rep, people = run_async(go())
    assert rep.people_updated == 1 and rep.people_created == 0
    assert len(people) == 1
    p = people[0]
    assert p.name == "Alice"
    assert p.mention_count == 2
    # latest bucket, not an average
    assert p.sentiment_avg == 3
    assert p.last_mentioned == NOW + timedelta(hours=1)
    assert [h["sentiment"] for h in p.sentiment_history] == [7, 3]


def test_same_person_twice_in_one_result(run_async, open_db):
    result = EntryExtraction.model_validate({"people_mentioned": ["Bob", "bob"]})

    async def go():
        async with open_db() as sf:
            async with sf() as session:
                await merge_extraction(session, "e1", result, text="Bob and bob", now=NOW)
            async with sf() as session:
                return (await session.execute(select(Person))).scalars().all()

    people = run_async(go())
    assert len(people) == 1 and people[0].mention_count == 2


def test_events_and_insights_append_without_dedup(run_async, open_db):
    result = EntryExtraction.model_validate({
        "life_event_detected": {"title": "Promotion"},
        "insights": ["Same words"],
    })

    async def go():
        async with open_db() as sf:
            for eid in ("e1", "e2"):
                async with sf() as session:
                    await merge_extraction(session, eid, result, text="t", now=NOW)
            async with sf() as session:
                return (await _count(session, LifeEvent)).scalar_one(), (await _count(session, Insight)).scalar_one()

    assert run_async(go()) == (2, 2)


def test_chat_should_extract_false_writes_nothing(run_async, open_db):
    async def go():
        async with open_db() as sf:
            async with sf() as session:
                rep = await merge_chat_extraction(session, "c1", ChatExtraction(should_extract=False), text="ok")
            async with sf() as session:
                return rep, (await _count(session, ExtractedEntity)).scalar_one()

    rep, n = run_async(go())
    assert rep.entity_id is None and n == 0


def test_chat_task_and_observation(run_async, open_db):
    result = ChatExtraction.model_validate({
        "should_extract": True,
        "is_task": True,
        "task_title": "Call the dentist",
        "task_due_date": "2026-10-20",
        "insights": ["Keeps postponing health errands"],
    })

    async def go():
        async with open_db() as sf:
            async with sf() as session:
                await merge_chat_extraction(session, "c1", result, text="need to call the dentist", now=NOW)
            async with sf() as session:
                ent = (await session.execute(select(ExtractedEntity))).scalar_one()
                ins = (await session.execute(select(Insight))).scalar_one()
            return ent, ins

    ent, ins = run_async(go())
    assert ent.category == "task" and ent.task_status == "pending" and ent.title == "Call the dentist"
    assert ent.task_due_date.isoformat() == "2026-10-20"
    assert ins.type == "chat_observation"


def test_document_sections_amend_persona(run_async, open_db):
    sections = KnowledgeSections.model_validate({
        "persona_updates": {
            "life_chapter_title": "The move",
            "active_goals": [{"goal": "Run a marathon"}],
            "full_psychological_profile": "Values steadiness.",
        },
        "people": [{"name": "Dana", "sentiment_avg": 8, "tags": ["work"]}],
        "insights": ["Wrote a lot about change"],
    })

    async def go():
        async with open_db() as sf:
            async with sf() as session:
                rep = await merge_sections(session, "d1", sections, text="doc", file_name="notes.md", now=NOW)
            async with sf() as session:
                persona = await session.get(PersonaSummary, PERSONA_ID)
                ent = (await session.execute(select(ExtractedEntity))).scalar_one()
                ins = (await session.execute(select(Insight))).scalar_one()
                dana = (await session.execute(select(Person))).scalar_one()
            return rep, persona, ent, ins, dana

    rep, persona, ent, ins, dana = run_async(go())
    assert rep.persona_updated
    assert persona.life_chapter_title == "The move"
    assert persona.active_goals == [{"goal": "Run a marathon"}]
    assert persona.profile.startswith("[Updated from: notes.md]")
    assert ent.category == "document" and ent.title == "notes.md"
    assert ins.type == "document_upload"
    assert dana.sentiment_avg == 8 and dana.tags == ["work"]


def test_clear_derived_keeps_shared_events(run_async, open_db):
    result = EntryExtraction.model_validate({"life_event_detected": {"title": "Moved to Lisbon"}, "insights": ["i"]})

    async def go():
        async with open_db() as sf:
            async with sf() as session:
                await merge_extraction(session, "e1", result, text="t", now=NOW)
            async with sf() as session:
                ev = (await session.execute(select(LifeEvent))).scalar_one()
                ev.source_entry_ids = ["e1", "e9"]
                await session.commit()
            async with sf() as session:
                await clear_derived(session, "e1")
                await session.commit()
            async with sf() as session:
                events = (await session.execute(select(LifeEvent))).scalars().all()
                n_ent = (await _count(session, ExtractedEntity)).scalar_one()
                n_ins = (await _count(session, Insight)).scalar_one()
            return events, n_ent, n_ins

    events, n_ent, n_ins = run_async(go())
    assert n_ent == 0 and n_ins == 0
    assert len(events) == 1 and events[0].source_entry_ids == ["e9"]
