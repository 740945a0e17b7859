"""
Result contract for the extraction gateway.

The gateway is allowed to be sloppy: sections may be missing or null,
scores out of range, dates in free text, JSON wrapped in code fences.
Absent sections mean "nothing found". Only output that is not a JSON
object at all, or whose core fields have the wrong shape, is rejected
with MalformedResultError.
"""
from __future__ import annotations

import json
import math
import re
from datetime import date
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaViolation

from lifeledger.errors import MalformedResultError
from lifeledger.utils import parse_iso_date

TASK_STATUSES = ("pending", "done", "cancelled")

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def _list_or_empty(v: Any) -> Any:
    return [] if v is None else v


def _clamp_score(v: Any) -> Optional[int]:
    """Scores are 1..10; anything unusable (including inf/nan) becomes None."""
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(f):
        return None
    return max(1, min(10, int(round(f))))


def _strings(v: Any) -> list[str]:
    """A string or a list of strings; any other shape is malformed."""
    if v is None:
        return []
    if isinstance(v, str):
        v = [v]
    if not isinstance(v, (list, tuple)):
        raise ValueError(f"expected a list of strings, got {type(v).__name__}")
    out: list[str] = []
    for item in v:
        if isinstance(item, str) and item.strip():
            out.append(item.strip())
    return out


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

class PersonMention(_Lenient):
    name: str = Field(min_length=1)
    relationship: Optional[str] = None
    sentiment: Optional[str] = None  # positive | neutral | negative (anything else → neutral)
    sentiment_avg: Optional[float] = None
    context: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v):
        return _strings(v)


class LifeEventDraft(_Lenient):
    title: str = Field(min_length=1)
    description: str = ""
    significance: int = 5
    category: str = "personal"
    emotions: list[str] = Field(default_factory=list)
    people_involved: list[str] = Field(default_factory=list)
    event_date: Optional[date] = None

    @field_validator("description", "category", mode="before")
    @classmethod
    def _text(cls, v, info):
        if v is None:
            return "personal" if info.field_name == "category" else ""
        return v

    @field_validator("significance", mode="before")
    @classmethod
    def _significance(cls, v):
        return _clamp_score(v) or 5

    @field_validator("emotions", "people_involved", mode="before")
    @classmethod
    def _lists(cls, v):
        return _strings(v)

    @field_validator("event_date", mode="before")
    @classmethod
    def _date(cls, v):
        return parse_iso_date(v)


def _people(v: Any) -> Any:
    """Accept ["Alice", {"name": "Bob", ...}]; drop nameless items."""
    if v is None:
        return []
    out = []
    for item in v if isinstance(v, list) else [v]:
        if isinstance(item, str):
            if item.strip():
                out.append({"name": item})
        elif isinstance(item, dict) and str(item.get("name") or "").strip():
            out.append(item)
    return out


def _life_event(v: Any) -> Any:
    # chat mode sends `false` when nothing was detected
    if not v or not isinstance(v, dict):
        return None
    if not str(v.get("title") or "").strip():
        return None
    return v


class EntryExtraction(_Lenient):
    category: str = "reflection"
    title: str = ""
    content: str = ""
    mood_score: Optional[int] = None
    energy_level: Optional[int] = None
    surface_emotion: Optional[str] = None
    is_task: bool = False
    task_status: Optional[str] = None
    task_due_date: Optional[date] = None
    people_mentioned: list[PersonMention] = Field(default_factory=list)
    life_event_detected: Optional[LifeEventDraft] = None
    insights: list[str] = Field(default_factory=list)

    @field_validator("category", "title", "content", mode="before")
    @classmethod
    def _text(cls, v, info):
        if v is None:
            return "reflection" if info.field_name == "category" else ""
        return v

    @field_validator("mood_score", "energy_level", mode="before")
    @classmethod
    def _scores(cls, v):
        return _clamp_score(v)

    @field_validator("is_task", mode="before")
    @classmethod
    def _flag(cls, v):
        return bool(v)

    @field_validator("task_status", mode="before")
    @classmethod
    def _status(cls, v):
        v = (v or "").strip().lower() if isinstance(v, str) else None
        return v if v in TASK_STATUSES else None

    @field_validator("task_due_date", mode="before")
    @classmethod
    def _due(cls, v):
        return parse_iso_date(v)

    @field_validator("people_mentioned", mode="before")
    @classmethod
    def _people(cls, v):
        return _people(v)

    @field_validator("life_event_detected", mode="before")
    @classmethod
    def _event(cls, v):
        return _life_event(v)

    @field_validator("insights", mode="before")
    @classmethod
    def _insights(cls, v):
        return _strings(v)


class ChatExtraction(_Lenient):
    should_extract: bool = False
    insights: list[str] = Field(default_factory=list)
    people_mentioned: list[PersonMention] = Field(default_factory=list)
    mood_score: Optional[int] = None
    is_task: bool = False
    task_title: Optional[str] = None
    task_due_date: Optional[date] = None
    life_event_detected: Optional[LifeEventDraft] = None

    @field_validator("should_extract", "is_task", mode="before")
    @classmethod
    def _flags(cls, v):
        return bool(v)

    @field_validator("insights", mode="before")
    @classmethod
    def _insights(cls, v):
        return _strings(v)

    @field_validator("people_mentioned", mode="before")
    @classmethod
    def _people(cls, v):
        return _people(v)

    @field_validator("mood_score", mode="before")
    @classmethod
    def _mood(cls, v):
        return _clamp_score(v)

    @field_validator("task_due_date", mode="before")
    @classmethod
    def _due(cls, v):
        return parse_iso_date(v)

    @field_validator("life_event_detected", mode="before")
    @classmethod
    def _event(cls, v):
        return _life_event(v)


class PersonaUpdates(_Lenient):
    life_chapter_title: Optional[str] = None
    life_chapter_narrative: Optional[str] = None
    baseline_mood: Optional[str] = None
    baseline_energy: Optional[float] = None
    active_goals: list[Any] = Field(default_factory=list)
    full_psychological_profile: Optional[str] = None

    @field_validator("active_goals", mode="before")
    @classmethod
    def _goals(cls, v):
        return _list_or_empty(v)

    @field_validator("baseline_energy", mode="before")
    @classmethod
    def _energy(cls, v):
        return _clamp_score(v)


class KnowledgeSections(_Lenient):
    persona_updates: Optional[PersonaUpdates] = None
    people: list[PersonMention] = Field(default_factory=list)
    life_events: list[LifeEventDraft] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)

    @field_validator("people", mode="before")
    @classmethod
    def _people(cls, v):
        return _people(v)

    @field_validator("life_events", mode="before")
    @classmethod
    def _events(cls, v):
        items = _list_or_empty(v)
        if not isinstance(items, list):
            items = [items]
        return [e for e in items if _life_event(e)]

    @field_validator("insights", mode="before")
    @classmethod
    def _insights(cls, v):
        return _strings(v)


class WeeklyReportPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    mood_avg: Optional[float] = None
    energy_avg: Optional[float] = None
    wins: list[str] = Field(default_factory=list)
    struggles: list[str] = Field(default_factory=list)
    patterns_noticed: list[str] = Field(default_factory=list)
    honest_truth: Optional[str] = None
    growth_observed: Optional[str] = None
    recommendation: Optional[str] = None
    entry_count: Optional[int] = None

    @field_validator("wins", "struggles", "patterns_noticed", mode="before")
    @classmethod
    def _lists(cls, v):
        return _strings(v)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

M = TypeVar("M", bound=BaseModel)


def strip_fences(raw: str) -> str:
    text = (raw or "").strip()
    m = _FENCE_RE.match(text)
    return m.group(1) if m else text


def parse_result(raw: str, model: type[M]) -> M:
    """
    Parse a gateway JSON response into `model`.
    Raises MalformedResultError (with the raw payload attached) when the
    response is not a JSON object or violates the schema.
    """
    try:
        data = json.loads(strip_fences(raw))
    except (TypeError, ValueError) as e:
        raise MalformedResultError(f"gateway returned non-JSON output for {model.__name__}", raw=raw) from e
    if not isinstance(data, dict):
        raise MalformedResultError(f"gateway returned {type(data).__name__}, expected an object", raw=raw)
    try:
        return model.model_validate(data)
    except SchemaViolation as e:
        raise MalformedResultError(
            f"gateway output violates {model.__name__}: {e.error_count()} error(s)", raw=raw
        ) from e
    except (TypeError, OverflowError) as e:
        # pydantic passes these through from validators unconverted
        raise MalformedResultError(f"gateway output unusable for {model.__name__}: {e}", raw=raw) from e
