"""Narrator: Pydantic AI agents that voice the village of Shadowbrook."""

from narrator.models import GameSummary, NarrativeResponse
from narrator.prompts import (
    FALLBACK_NARRATIVE,
    OPENING_NARRATIVE,
    NarrativeContext,
    SummaryContext,
)
from narrator.service import Narrator

__all__ = [
    "Narrator",
    "NarrativeContext",
    "SummaryContext",
    "NarrativeResponse",
    "GameSummary",
    "FALLBACK_NARRATIVE",
    "OPENING_NARRATIVE",
]
