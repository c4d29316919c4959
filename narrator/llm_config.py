"""LLM provider/config and model construction for the narrator."""

import os
from typing import Any

# Type alias for model passed to Agent.run(); pydantic-ai accepts Model | str | None
ModelT = Any

# Default env var names
ENV_GEMINI_API_KEY = "GEMINI_API_KEY"
ENV_OPENAI_API_KEY = "OPENAI_API_KEY"
ENV_ANTHROPIC_API_KEY = "ANTHROPIC_API_KEY"
ENV_NARRATOR_PROVIDER = "NARRATOR_PROVIDER"
ENV_NARRATOR_MODEL = "NARRATOR_MODEL"
ENV_NARRATIVE_TIMEOUT = "NARRATIVE_TIMEOUT_SECONDS"

DEFAULT_PROVIDER = "google"
DEFAULT_TIMEOUT_SECONDS = 20.0

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


def get_model_from_config(
    provider: str,
    model_name: str,
    api_key: str | None = None,
) -> ModelT:
    """
    Build a pydantic-ai Model instance for the given provider/model/api_key.
    If api_key is None, falls back to env (GEMINI_API_KEY, etc.).
    """
    key = api_key or env_key_for_provider(provider)
    model_name = model_name or default_model_for_provider(provider)

    from pydantic_ai.models.openai import OpenAIChatModel
    from pydantic_ai.providers.openai import OpenAIProvider

    if provider in ("google", "gemini"):
        return OpenAIChatModel(
            model_name,
            provider=OpenAIProvider(base_url=GEMINI_OPENAI_BASE_URL, api_key=key)
            if key
            else OpenAIProvider(base_url=GEMINI_OPENAI_BASE_URL),
        )
    if provider == "anthropic":
        from pydantic_ai.models.anthropic import AnthropicModel
        from pydantic_ai.providers.anthropic import AnthropicProvider

        return AnthropicModel(
            model_name,
            provider=AnthropicProvider(api_key=key) if key else AnthropicProvider(),
        )
    return OpenAIChatModel(
        model_name,
        provider=OpenAIProvider(api_key=key) if key else OpenAIProvider(),
    )


def narrator_provider() -> str:
    return os.environ.get(ENV_NARRATOR_PROVIDER, DEFAULT_PROVIDER)


def narrator_model_name() -> str:
    return os.environ.get(ENV_NARRATOR_MODEL, "")


def narrative_timeout() -> float:
    """Seconds before a narrative call is abandoned in favour of the default text."""
    raw = os.environ.get(ENV_NARRATIVE_TIMEOUT)
    try:
        return float(raw) if raw else DEFAULT_TIMEOUT_SECONDS
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS


def default_api_key() -> str | None:
    """Credential stored on new sessions that do not bring their own."""
    return env_key_for_provider(narrator_provider())


def env_key_for_provider(provider: str) -> str | None:
    if provider in ("google", "gemini"):
        return os.environ.get(ENV_GEMINI_API_KEY) or None
    if provider == "anthropic":
        return os.environ.get(ENV_ANTHROPIC_API_KEY) or None
    return os.environ.get(ENV_OPENAI_API_KEY) or None


def default_model_for_provider(provider: str) -> str:
    return {
        "google": "gemini-2.5-flash",
        "gemini": "gemini-2.5-flash",
        "openai": "gpt-4o-mini",
        "anthropic": "claude-3-5-haiku-latest",
    }.get(provider, "gpt-4o-mini")
