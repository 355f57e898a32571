"""Deterministic mock completion provider for local/dev usage."""

from __future__ import annotations

from src.ai.providers.base import CompletionOutput, CompletionProvider


class MockCompletionProvider(CompletionProvider):
    provider_name = "mock"

    async def complete(
        self,
        *,
        system_prompt: str,
        prompt: str,
    ) -> CompletionOutput:
        cleaned = " ".join(prompt.strip().split())
        if len(cleaned) > 280:
            cleaned = cleaned[:280].rstrip() + "..."
        text = f"Suggested policy text: {cleaned}"
        return CompletionOutput(
            provider=self.provider_name,
            text=text,
            total_tokens=len(text.split()) + len(system_prompt.split()),
        )
