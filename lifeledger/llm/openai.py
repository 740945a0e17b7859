from __future__ import annotations
import os
import json
from typing import Any, Dict

from lifeledger.errors import ExternalServiceError
from .base import ExtractionGateway

_ENTRY_SCHEMA = (
    '{"category": "emotion|task|reflection|goal|memory|idea|gratitude|vent", "title": str, '
    '"content": str, "mood_score": 1-10, "energy_level": 1-10, "surface_emotion": str, '
    '"is_task": bool, "task_status": "pending|done|cancelled|null", "task_due_date": "YYYY-MM-DD|null", '
    '"people_mentioned": [{"name": str, "relationship": str, "sentiment": "positive|neutral|negative", '
    '"context": str}], "life_event_detected": {"title": str, "description": str, "significance": 1-10, '
    '"category": str, "emotions": [str], "people_involved": [str], "event_date": "YYYY-MM-DD|null"} | null, '
    '"insights": [str]}'
)

_CHAT_SCHEMA = (
    '{"should_extract": bool, "insights": [str], "people_mentioned": [{"name": str, "relationship": str, '
    '"sentiment": str}], "mood_score": 1-10, "is_task": bool, "task_title": str|null, '
    '"task_due_date": "YYYY-MM-DD|null", "life_event_detected": {...} | false}'
)

_SECTIONS_SCHEMA = (
    '{"persona_updates": {"life_chapter_title": str, "life_chapter_narrative": str, "active_goals": [...], '
    '"full_psychological_profile": str} | null, "people": [{"name": str, "relationship": str, '
    '"sentiment_avg": 1-10, "tags": [str]}], "life_events": [{"title": str, "description": str, '
    '"significance": 1-10, "category": str, "emotions": [str], "event_date": "YYYY-MM-DD|null"}], '
    '"insights": [str]}'
)

_REPORT_SCHEMA = (
    '{"mood_avg": 1-10, "energy_avg": 1-10, "wins": [str], "struggles": [str], "honest_truth": str, '
    '"growth_observed": str, "recommendation": str, "patterns_noticed": [str], "entry_count": int}'
)


class OpenAIGateway(ExtractionGateway):
    """OpenAI gateway using the chat.completions API.

    Requires OPENAI_API_KEY to be set in the environment.
    Model can be overridden via LIFELEDGER_OPENAI_MODEL; defaults to 'gpt-4o-mini'.
    """

    def __init__(self, model: str | None = None, timeout: float = 60.0):
        try:
            from openai import OpenAI  # type: ignore
        except ImportError as e:  # pragma: no cover
            raise RuntimeError("openai package not installed. Install with: pip install 'lifeledger[llm]'") from e

        self._client = OpenAI()
        self._model = model or os.getenv("LIFELEDGER_OPENAI_MODEL") or "gpt-4o-mini"
        self._timeout = timeout

    def _chat(self, system_msg: str, user_msg: str, *, as_json: bool, max_tokens: int = 1200) -> str:
        kwargs: Dict[str, Any] = {}
        if as_json:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            resp = self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system_msg},
                    {"role": "user", "content": user_msg},
                ],
                temperature=0.2,
                max_tokens=max_tokens,
                timeout=self._timeout,  # type: ignore[arg-type]
                **kwargs,
            )
        except Exception as e:
            raise ExternalServiceError(f"OpenAI request failed: {e}", details={"model": self._model}) from e
        return (resp.choices[0].message.content or "").strip()

    @staticmethod
    def _context_block(context: Dict[str, Any]) -> str:
        parts = []
        if context.get("persona"):
            parts.append(f"CURRENT PERSONA:\n{context['persona']}")
        if context.get("recent_entries"):
            parts.append(f"RECENT ENTRIES:\n{context['recent_entries']}")
        if context.get("today"):
            parts.append(f"TODAY: {context['today']}")
        return "\n\n".join(parts)

    def extract_entry(self, text: str, context: Dict[str, Any]) -> str:
        system = (
            "You turn personal journal entries into structured data. "
            f"Respond with ONLY a JSON object of this shape: {_ENTRY_SCHEMA}. Omit what is not present."
        )
        user = f"{self._context_block(context)}\n\nNEW ENTRY:\n{text}"
        return self._chat(system, user, as_json=True)

    def extract_chat(self, text: str, context: Dict[str, Any]) -> str:
        system = (
            "Decide whether a chat message contains anything worth remembering about the writer's life. "
            f"Respond with ONLY a JSON object of this shape: {_CHAT_SCHEMA}."
        )
        user = f"{self._context_block(context)}\n\nMESSAGE:\n{text}"
        return self._chat(system, user, as_json=True, max_tokens=600)

    def extract_document(self, text: str, file_name: str, context: Dict[str, Any]) -> str:
        system = (
            "Extract personally relevant knowledge from a document the user uploaded: people, life events, "
            f"goals and observations. Respond with ONLY a JSON object of this shape: {_SECTIONS_SCHEMA}."
        )
        user = f"{self._context_block(context)}\n\nFILE: {file_name}\n\n{text}"
        return self._chat(system, user, as_json=True, max_tokens=2000)

    def summarize_week(self, digest: str, persona: str, previous_report: str) -> str:
        system = (
            "You write an honest weekly review of a person's journal. Not cruel, but honest. "
            f"Respond with ONLY a JSON object of this shape: {_REPORT_SCHEMA}."
        )
        user = f"PERSONA:\n{persona or '(none)'}\n\nTHIS WEEK'S ENTRIES:\n{digest}"
        if previous_report:
            user += f"\n\nLAST WEEK'S REPORT:\n{previous_report}"
        return self._chat(system, user, as_json=True)

    def compose_biography(self, material: Dict[str, Any]) -> str:
        system = (
            "You write a warm, faithful third-person biography from structured life data. "
            "Plain prose, a few paragraphs, no headings, nothing invented."
        )
        user = json.dumps(material, ensure_ascii=False, default=str)
        return self._chat(system, user, as_json=False, max_tokens=2000)
