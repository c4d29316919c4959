"""Narrator: text generation with a static fallback on any failure."""

import asyncio
import logging
from typing import Optional

from narrator.llm_config import (
    get_model_from_config,
    narrative_timeout,
    narrator_model_name,
    narrator_provider,
)
from narrator.models import GameSummary
from narrator.narrator_agent import get_narrative_agent, get_summary_agent
from narrator.prompts import (
    FALLBACK_NARRATIVE,
    NarrativeContext,
    SummaryContext,
    build_narrative_prompt,
    build_summary_prompt,
    fallback_key_moments,
    fallback_summary_text,
)

logger = logging.getLogger(__name__)


class Narrator:
    """
    Calls the narrative agents. Never raises: failures and timeouts are logged and the
    hardcoded atmospheric text is returned instead.
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.provider = provider or narrator_provider()
        self.model_name = model_name if model_name is not None else narrator_model_name()
        self.timeout = timeout if timeout is not None else narrative_timeout()

    def _model(self, api_key: str):
        return get_model_from_config(self.provider, self.model_name, api_key=api_key)

    async def generate_narrative(self, context: NarrativeContext, api_key: str) -> str:
        try:
            result = await asyncio.wait_for(
                get_narrative_agent().run(build_narrative_prompt(context), model=self._model(api_key)),
                timeout=self.timeout,
            )
            text = (result.output.narrative if result.output else "").strip()
            return text or FALLBACK_NARRATIVE
        except Exception as e:
            logger.warning("Narrative generation failed (%s, day %s): %r", context.phase.value, context.day_number, e)
            return FALLBACK_NARRATIVE

    async def generate_summary(self, context: SummaryContext, api_key: str) -> GameSummary:
        try:
            result = await asyncio.wait_for(
                get_summary_agent().run(build_summary_prompt(context), model=self._model(api_key)),
                timeout=self.timeout,
            )
            if result.output and result.output.summary.strip():
                return result.output
            raise ValueError("empty summary from model")
        except Exception as e:
            logger.warning("Game summary generation failed: %r", e)
            return GameSummary(
                winner=context.winner,
                summary=fallback_summary_text(context.winner),
                key_moments=fallback_key_moments(context.winner),
            )
