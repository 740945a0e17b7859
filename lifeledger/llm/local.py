from __future__ import annotations
from collections import Counter
from datetime import date, timedelta
from typing import Any, Dict, List
import json
import re

from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer

from lifeledger.utils import first_title_line, parse_iso_date
from .base import ExtractionGateway

_VADER = SentimentIntensityAnalyzer()

_CATEGORY_RULES = [
    ("task", re.compile(r"^(todo|task)\b|\b(need to|have to|remember to|don't forget to)\b", re.I)),
    ("gratitude", re.compile(r"\b(grateful|thankful|appreciate)\b", re.I)),
    ("goal", re.compile(r"\b(my goal|i want to|plan to|this year i will)\b", re.I)),
    ("vent", re.compile(r"\b(hate|furious|fed up|so annoyed)\b", re.I)),
    ("idea", re.compile(r"\b(idea|what if)\b", re.I)),
    ("memory", re.compile(r"\b(remember when|years ago|back then)\b", re.I)),
]

_LIFE_EVENT_RE = re.compile(
    r"\b(got promoted|promotion|graduated|got married|got engaged|moved to \w+|new job|"
    r"had a baby|was born|passed away|retired|broke up)\b",
    re.I,
)

# Capitalised word after a relational cue; the cue itself is matched lowercase
_PERSON_RE = re.compile(r"\b(?:with|and|from|to|told|called|met|saw|visited|texted)\s+([A-Z][a-z]{1,})\b")
_NOT_NAMES = {
    "I", "The", "A", "An", "My", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday",
    "Saturday", "Sunday", "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December", "Today", "Tomorrow", "God",
}

_DIGEST_RE = re.compile(
    r"^\[(?P<cat>[^\]]+)\]\s+(?P<title>.*?)"
    r"(?:\s+\(Mood: (?P<mood>\d+|n/a)/10\))?"
    r"(?:\s+\[Task: (?P<task>\w+)\])?\s*$"
)


def _compound(text: str) -> float:
    if not text:
        return 0.0
    return float(_VADER.polarity_scores(text).get("compound", 0.0))


def _mood(compound: float) -> int:
    """Map VADER compound [-1, 1] onto a 1..10 mood score."""
    return max(1, min(10, int(round((compound + 1) * 4.5)) + 1))


def _label(compound: float) -> str:
    if compound >= 0.05:
        return "positive"
    if compound <= -0.05:
        return "negative"
    return "neutral"


def _sentences(text: str) -> List[str]:
    return [s.strip() for s in re.split(r"(?<=[.!?])\s+|\n+", text) if s.strip()]


def _category(text: str) -> str:
    for name, rx in _CATEGORY_RULES:
        if rx.search(text):
            return name
    return "reflection"


def _people(text: str) -> List[Dict[str, Any]]:
    found: Dict[str, Dict[str, Any]] = {}
    for sent in _sentences(text):
        for m in _PERSON_RE.finditer(sent):
            name = m.group(1)
            if name in _NOT_NAMES or name in found:
                continue
            found[name] = {
                "name": name,
                "relationship": None,
                "sentiment": _label(_compound(sent)),
                "context": sent[:200],
            }
    return list(found.values())


def _due_date(text: str, today: date) -> date | None:
    low = text.lower()
    m = re.search(r"\b(\d{4}-\d{2}-\d{2})\b", text)
    if m:
        return parse_iso_date(m.group(1))
    if "tomorrow" in low:
        return today + timedelta(days=1)
    if "today" in low or "tonight" in low:
        return today
    return None


def _life_events(text: str, people: List[Dict[str, Any]], today: date) -> List[Dict[str, Any]]:
    events = []
    seen = set()
    for sent in _sentences(text):
        m = _LIFE_EVENT_RE.search(sent)
        if not m:
            continue
        title = m.group(1)[0].upper() + m.group(1)[1:]
        if title.lower() in seen:
            continue
        seen.add(title.lower())
        compound = _compound(sent)
        events.append({
            "title": title,
            "description": sent[:300],
            "significance": 8,
            "category": "milestone",
            "emotions": [_label(compound)],
            "people_involved": [p["name"] for p in people if p["name"] in sent],
            "event_date": today.isoformat(),
        })
    return events


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


class LocalGateway(ExtractionGateway):
    """Naive local gateway: rule-based extraction, VADER sentiment, no network."""

    def _today(self, context: Dict[str, Any] | None) -> date:
        return parse_iso_date((context or {}).get("today")) or date.today()

    def extract_entry(self, text: str, context: Dict[str, Any]) -> str:
        today = self._today(context)
        compound = _compound(text)
        category = _category(text)
        is_task = category == "task"
        people = _people(text)
        events = _life_events(text, people, today)
        title = first_title_line(text)
        insights = []
        if abs(compound) >= 0.6:
            tone = "lifted" if compound > 0 else "weighed down"
            insights.append(f"Felt noticeably {tone} while writing about: {title}")
        return _dump({
            "category": category,
            "title": title,
            "content": text.strip(),
            "mood_score": _mood(compound),
            "energy_level": None,
            "surface_emotion": _label(compound),
            "is_task": is_task,
            "task_status": "pending" if is_task else None,
            "task_due_date": _due_date(text, today) if is_task else None,
            "people_mentioned": people,
            "life_event_detected": events[0] if events else None,
            "insights": insights,
        })

    def extract_chat(self, text: str, context: Dict[str, Any]) -> str:
        today = self._today(context)
        words = text.split()
        if len(words) < 5:
            return _dump({"should_extract": False})
        compound = _compound(text)
        is_task = _category(text) == "task"
        people = _people(text)
        events = _life_events(text, people, today)
        insights = []
        if abs(compound) >= 0.6:
            insights.append(f"Chat mood was strongly {_label(compound)}: {first_title_line(text, 60)}")
        return _dump({
            "should_extract": True,
            "insights": insights,
            "people_mentioned": people,
            "mood_score": _mood(compound),
            "is_task": is_task,
            "task_title": first_title_line(text) if is_task else None,
            "task_due_date": _due_date(text, today) if is_task else None,
            "life_event_detected": events[0] if events else False,
        })

    def extract_document(self, text: str, file_name: str, context: Dict[str, Any]) -> str:
        today = self._today(context)
        people = _people(text)
        for p in people:
            p["tags"] = ["document"]
        goals = [
            {"goal": s, "status": "active", "first_mentioned": today.isoformat()}
            for s in _sentences(text)
            if re.search(r"\b(my goal|i want to)\b", s, re.I)
        ]
        sents = _sentences(text)
        insights = [f"From {file_name}: {sents[0][:200]}"] if sents else []
        return _dump({
            "persona_updates": {"active_goals": goals} if goals else None,
            "people": people,
            "life_events": _life_events(text, people, today),
            "insights": insights,
        })

    def summarize_week(self, digest: str, persona: str, previous_report: str) -> str:
        rows = [m for m in (_DIGEST_RE.match(line.strip()) for line in digest.splitlines()) if m]
        moods = [int(m.group("mood")) for m in rows if m.group("mood") and m.group("mood").isdigit()]
        mood_avg = round(sum(moods) / len(moods), 1) if moods else None
        cats = Counter(m.group("cat") for m in rows)
        wins = [m.group("title") for m in rows if m.group("task") == "done" or m.group("cat") == "gratitude"]
        struggles = [
            m.group("title") for m in rows
            if m.group("mood") and m.group("mood").isdigit() and int(m.group("mood")) <= 4
        ]
        patterns = [f"{cat} x{n}" for cat, n in cats.most_common(3)]

        honest = "Not enough signal to compare with last week."
        if previous_report:
            try:
                prev_mood = json.loads(previous_report).get("mood_avg")
            except (ValueError, AttributeError):
                prev_mood = None
            if prev_mood is not None and mood_avg is not None:
                delta = mood_avg - float(prev_mood)
                direction = "up" if delta > 0 else "down" if delta < 0 else "flat"
                honest = f"Mood is {direction} {abs(delta):.1f} points versus last week."
        top = cats.most_common(1)[0][0] if cats else "reflection"
        return _dump({
            "mood_avg": mood_avg,
            "energy_avg": None,
            "wins": wins[:5],
            "struggles": struggles[:5],
            "patterns_noticed": patterns,
            "honest_truth": honest,
            "growth_observed": f"Kept showing up: {len(rows)} entries this week.",
            "recommendation": f"Give the '{top}' thread one deliberate hour next week.",
            "entry_count": len(rows),
        })

    def compose_biography(self, material: Dict[str, Any]) -> str:
        persona = material.get("persona") or {}
        entries = material.get("entries") or []
        people = material.get("people") or []
        events = material.get("life_events") or []

        paras: List[str] = []
        title = persona.get("life_chapter_title")
        narrative = persona.get("life_chapter_narrative")
        if title or narrative:
            paras.append(" ".join(p for p in [f"Current chapter: {title}." if title else "", narrative or ""] if p))

        if entries:
            cats = Counter(e.get("category") or "reflection" for e in entries)
            themes = ", ".join(c for c, _ in cats.most_common(3))
            moods = [e["mood_score"] for e in entries if e.get("mood_score")]
            line = f"Lately the entries circle around {themes}."
            if moods:
                line += f" Average mood sits near {sum(moods) / len(moods):.1f} out of 10."
            paras.append(line)

        if people:
            named = []
            for p in people[:5]:
                rel = f" ({p['relationship']})" if p.get("relationship") else ""
                named.append(f"{p['name']}{rel}, mentioned {p.get('mention_count', 1)} times")
            paras.append("The people who come up most: " + "; ".join(named) + ".")

        if events:
            dated = sorted(events, key=lambda e: str(e.get("event_date") or ""))
            parts = [f"{e.get('event_date') or 'undated'}: {e['title']}" for e in dated[:10]]
            paras.append("Milestones along the way: " + "; ".join(parts) + ".")

        if not paras:
            return "Not much has been written yet. The story starts with the next entry."
        return "\n\n".join(paras)
