"""
Centralized OpenAI client + model configuration.

This keeps AI-related configuration DRY and consistent across services.
"""

from __future__ import annotations

from functools import lru_cache

from openai import AsyncOpenAI

from ..config import Config


class GenerationConfigError(ValueError):
    """Generation cannot be attempted with the current configuration."""


@lru_cache(maxsize=1)
def get_openai_client() -> AsyncOpenAI:
    if not Config.OPENAI_API_KEY:
        raise GenerationConfigError(
            "OPENAI_API_KEY is required for note generation. Set it in your environment or .env file."
        )
    return AsyncOpenAI(api_key=Config.OPENAI_API_KEY)


def chat_model() -> str:
    return Config.OPENAI_MODEL


def search_model() -> str:
    return Config.OPENAI_SEARCH_MODEL
