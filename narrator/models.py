"""Pydantic models for structured narrator outputs."""

from pydantic import BaseModel, Field


class NarrativeResponse(BaseModel):
    """Structured response for a phase narrative."""

    narrative: str = Field(
        description="Atmospheric narration of the current moment, 2-3 sentences. "
        "Never name a player's secret role."
    )


class GameSummary(BaseModel):
    """Closing summary once a faction has won."""

    winner: str = Field(description="Winning faction: VILLAGERS or MAFIA")
    summary: str = Field(description="A dramatic 2-3 sentence conclusion narrative")
    key_moments: list[str] = Field(
        default_factory=list,
        description="Three key moments from the game, one short sentence each",
    )
