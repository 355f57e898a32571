"""Factory to resolve active completion provider."""

from __future__ import annotations

from functools import lru_cache

from src.ai.providers.base import CompletionProvider
from src.ai.providers.http_provider import HttpCompletionProvider
from src.ai.providers.mock_provider import MockCompletionProvider
from src.core.config import get_settings


@lru_cache(maxsize=1)
def get_completion_provider() -> CompletionProvider:
    settings = get_settings()
    provider = settings.ai_provider.strip().lower()
    if provider == "http":
        return HttpCompletionProvider(
            completion_url=settings.ai_completion_url,
            api_key=settings.ai_api_key,
            model=settings.ai_model,
            timeout_seconds=settings.ai_timeout_seconds,
        )
    return MockCompletionProvider()


def reset_completion_provider_cache() -> None:
    get_completion_provider.cache_clear()
