"""Prompt building for the narrator agents."""

from dataclasses import dataclass, field
from typing import Optional

from game.rules import Phase

SETTING = "You are the narrator of a Mafia game set in the mysterious village of Shadowbrook."

STYLE_RULES = (
    "Keep the narrative atmospheric, mysterious and engaging. Focus on mood and setting "
    "rather than specific player actions, and never reveal anyone's secret role."
)

PHASE_INSTRUCTIONS = {
    Phase.DAY: (
        "Generate a dramatic narrative for the day phase. The villagers are gathering to "
        "discuss and vote. Describe the village, the tension among the residents and the "
        "growing suspicion, in 2-3 sentences."
    ),
    Phase.VOTING: (
        "Generate a dramatic narrative for the voting phase. The villagers must decide who "
        "to eliminate. Build tension around the weight of their choice, in 2-3 sentences."
    ),
    Phase.NIGHT: (
        "Generate a dramatic narrative for the night phase. Darkness falls and sinister "
        "forces move in the shadows. Describe the fear and the lurking danger, in 2-3 sentences."
    ),
}

GENERIC_INSTRUCTIONS = "Generate a mysterious and atmospheric narrative in 2-3 sentences."

# Static texts used whenever the text-generation service is unavailable
OPENING_NARRATIVE = (
    "The game begins in the mysterious village of Shadowbrook. As night falls, an ominous "
    "feeling settles over the residents..."
)
FALLBACK_NARRATIVE = "The village of Shadowbrook remains shrouded in mystery as the game continues..."


@dataclass(frozen=True)
class NarrativeContext:
    """Snapshot of a session handed to the narrator."""

    phase: Phase
    day_number: int
    alive_count: int
    previous_events: tuple[str, ...] = ()
    custom_prompt: Optional[str] = None


@dataclass(frozen=True)
class SummaryContext:
    winner: str
    player_count: int
    events: tuple[str, ...] = field(default_factory=tuple)


def _situation(context: NarrativeContext) -> str:
    if context.phase == Phase.NIGHT:
        moment = f"It is Night {context.day_number}"
    elif context.phase == Phase.VOTING:
        moment = f"It is the voting phase of Day {context.day_number}"
    else:
        moment = f"It is {context.phase.value.title()} {context.day_number}"
    events = ", ".join(context.previous_events) or "none yet"
    return f"{moment} with {context.alive_count} players remaining.\nPrevious events: {events}"


def build_narrative_prompt(context: NarrativeContext) -> str:
    """User message for the narrative agent."""
    if context.custom_prompt:
        instructions = (
            f"Generate a dramatic narrative based on this custom prompt: {context.custom_prompt}\n\n"
            f"{STYLE_RULES}"
        )
    else:
        instructions = PHASE_INSTRUCTIONS.get(context.phase, GENERIC_INSTRUCTIONS)
    return f"{SETTING}\n{_situation(context)}\n\n{instructions}"


def build_summary_prompt(context: SummaryContext) -> str:
    """User message for the summary agent."""
    return (
        "You are concluding a Mafia game in Shadowbrook village.\n"
        f"Winner: {context.winner}\n"
        f"Total players: {context.player_count}\n"
        f"Game events: {', '.join(context.events)}\n\n"
        "Write a dramatic conclusion and identify 3 key moments from the game."
    )


def fallback_summary_text(winner: str) -> str:
    return (
        f"The game concludes with the {winner.lower()} emerging victorious in the shadows "
        "of Shadowbrook."
    )


def fallback_key_moments(winner: str) -> list[str]:
    return [
        "The game began with mystery and suspicion",
        "Tensions rose as accusations flew",
        f"The {winner.lower()} achieved their victory",
    ]
