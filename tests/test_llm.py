import json
from datetime import date

import pytest

from lifeledger.config import load_settings
from lifeledger.errors import ExternalServiceError, MalformedResultError
from lifeledger.llm.factory import get_gateway
from lifeledger.llm.invoke import call_gateway
from lifeledger.llm.local import LocalGateway
from lifeledger.llm.schema import ChatExtraction, EntryExtraction, KnowledgeSections, parse_result


def test_factory_forces_local_when_remote_not_allowed():
    s = load_settings()
    assert isinstance(get_gateway(s, backend="openai"), LocalGateway)
    assert isinstance(get_gateway(s), LocalGateway)


def test_parse_tolerates_fences_and_sloppy_fields():
    raw = """```json
    {"category": null, "title": " Gym ", "mood_score": 14, "energy_level": "three",
     "is_task": 1, "task_status": "DONE", "task_due_date": "next week",
     "people_mentioned": ["Kim", {"relationship": "boss"}, {"name": "Lee", "tags": "work"}],
     "life_event_detected": {"title": ""}, "insights": ["", "real one"], "extra": 1}
    ```"""
    r = parse_result(raw, EntryExtraction)
    assert r.category == "reflection" and r.title == "Gym"
    assert r.mood_score == 10 and r.energy_level is None
    assert r.is_task and r.task_status == "done" and r.task_due_date is None
    assert [p.name for p in r.people_mentioned] == ["Kim", "Lee"]
    assert r.people_mentioned[1].tags == ["work"]
    assert r.life_event_detected is None
    assert r.insights == ["real one"]


def test_absent_sections_mean_nothing_found():
    r = parse_result("{}", KnowledgeSections)
    assert r.persona_updates is None and r.people == [] and r.life_events == [] and r.insights == []
    chat = parse_result('{"should_extract": true, "life_event_detected": false}', ChatExtraction)
    assert chat.should_extract and chat.life_event_detected is None


@pytest.mark.parametrize("raw", [
    "",
    "not json",
    "[1, 2]",
    '"text"',
    '{"people_mentioned": [{"name": "A", "sentiment_avg": "lots"}]}',
    '{"insights": 5}',
    '{"people_mentioned": [{"name": "Al", "tags": 3}]}',
])
def test_unusable_output_is_malformed(raw):
    with pytest.raises(MalformedResultError) as exc:
        parse_result(raw, EntryExtraction)
    assert exc.value.code == "MALFORMED_RESULT"


def test_infinite_scores_are_dropped():
    r = parse_result('{"mood_score": 1e999, "energy_level": -1e999, "title": "Odd"}', EntryExtraction)
    assert r.mood_score is None and r.energy_level is None and r.title == "Odd"


def test_call_gateway_wraps_provider_errors(run_async):
    def boom(text):
        raise ValueError("bad key")

    with pytest.raises(ExternalServiceError) as exc:
        run_async(call_gateway(boom, "x", timeout=1, label="entry extraction"))
    assert "bad key" in exc.value.message


def test_local_entry_extraction():
    gw = LocalGateway()
    raw = gw.extract_entry(
        "Need to return the book to Mom tomorrow.",
        {"today": "2026-10-19"},
    )
    r = parse_result(raw, EntryExtraction)
    assert r.category == "task" and r.is_task and r.task_status == "pending"
    assert r.task_due_date == date(2026, 10, 20)
    assert [p.name for p in r.people_mentioned] == ["Mom"]


def test_local_life_event_detection():
    raw = LocalGateway().extract_entry("Big news: I got promoted at work today!", {"today": "2026-10-19"})
    r = parse_result(raw, EntryExtraction)
    assert r.life_event_detected is not None
    assert r.life_event_detected.title == "Got promoted"
    assert r.life_event_detected.event_date == date(2026, 10, 19)


def test_local_chat_short_message_not_extracted():
    r = parse_result(LocalGateway().extract_chat("ok thanks", {}), ChatExtraction)
    assert r.should_extract is False


def test_local_document_goals_and_insight():
    raw = LocalGateway().extract_document(
        "My goal is to run a marathon. I met Priya at the club.", "plans.md", {"today": "2026-10-19"}
    )
    r = parse_result(raw, KnowledgeSections)
    assert r.persona_updates.active_goals[0]["goal"].startswith("My goal")
    assert [p.name for p in r.people] == ["Priya"] and r.people[0].tags == ["document"]
    assert r.insights == ["From plans.md: My goal is to run a marathon."]


def test_local_weekly_summary_compares_with_previous():
    digest = "\n".join([
        "[reflection] Long day (Mood: 4/10)",
        "[task] Pay rent (Mood: 6/10) [Task: done]",
        "[gratitude] Sunny walk (Mood: 8/10)",
    ])
    out = json.loads(LocalGateway().summarize_week(digest, "", json.dumps({"mood_avg": 5.0})))
    assert out["entry_count"] == 3 and out["mood_avg"] == 6.0
    assert out["wins"] == ["Pay rent", "Sunny walk"]
    assert out["struggles"] == ["Long day"]
    assert out["honest_truth"] == "Mood is up 1.0 points versus last week."
