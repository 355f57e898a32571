"""Provider contracts for text completion backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


class CompletionProviderError(RuntimeError):
    """Raised when a completion provider cannot fulfill a request."""


@dataclass(frozen=True)
class CompletionOutput:
    provider: str
    text: str
    total_tokens: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class CompletionProvider(Protocol):
    provider_name: str

    async def complete(
        self,
        *,
        system_prompt: str,
        prompt: str,
    ) -> CompletionOutput:
        raise NotImplementedError
