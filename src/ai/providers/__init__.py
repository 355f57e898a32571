"""Text completion provider integrations."""

from src.ai.providers.base import CompletionOutput, CompletionProvider, CompletionProviderError
from src.ai.providers.factory import get_completion_provider, reset_completion_provider_cache
from src.ai.providers.http_provider import HttpCompletionProvider
from src.ai.providers.mock_provider import MockCompletionProvider

__all__ = [
    "CompletionOutput",
    "CompletionProvider",
    "CompletionProviderError",
    "HttpCompletionProvider",
    "MockCompletionProvider",
    "get_completion_provider",
    "reset_completion_provider_cache",
]
