from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict


class ExtractionGateway(ABC):
    """
    Text-understanding service boundary.

    JSON modes return the raw response text; the pipeline parses and
    validates it (see lifeledger.llm.schema). Implementations raise on
    transport failure and never retry.
    """

    @abstractmethod
    def extract_entry(self, text: str, context: Dict[str, Any]) -> str:
        """Full extraction of a journal entry (EntryExtraction JSON)."""
        raise NotImplementedError

    @abstractmethod
    def extract_chat(self, text: str, context: Dict[str, Any]) -> str:
        """Short-form extraction of a chat message (ChatExtraction JSON)."""
        raise NotImplementedError

    @abstractmethod
    def extract_document(self, text: str, file_name: str, context: Dict[str, Any]) -> str:
        """Knowledge sections of an uploaded document (KnowledgeSections JSON)."""
        raise NotImplementedError

    @abstractmethod
    def summarize_week(self, digest: str, persona: str, previous_report: str) -> str:
        """Weekly review (WeeklyReportPayload JSON)."""
        raise NotImplementedError

    @abstractmethod
    def compose_biography(self, material: Dict[str, Any]) -> str:
        """Narrative prose; plain text, not JSON."""
        raise NotImplementedError
