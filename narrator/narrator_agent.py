"""Pydantic AI agents for the narrator: phase narrative and closing summary."""

from pydantic_ai import Agent

from narrator.models import GameSummary, NarrativeResponse
from narrator.prompts import SETTING, STYLE_RULES


# Model is passed at run() so we use defer_model_check.
# System prompts are minimal; the service passes the full context in the user message.

_narrative_agent = Agent(
    model=None,
    defer_model_check=True,
    output_type=NarrativeResponse,
    system_prompt=[SETTING, STYLE_RULES],
)

_summary_agent = Agent(
    model=None,
    defer_model_check=True,
    output_type=GameSummary,
    system_prompt=[SETTING, "You write the closing words once the game is decided."],
)


def get_narrative_agent() -> Agent[None, NarrativeResponse]:
    return _narrative_agent


def get_summary_agent() -> Agent[None, GameSummary]:
    return _summary_agent
