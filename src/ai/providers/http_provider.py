"""Chat-completions provider over HTTP."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from src.ai.providers.base import CompletionOutput, CompletionProvider, CompletionProviderError


class HttpCompletionProvider(CompletionProvider):
    provider_name = "http"

    def __init__(
        self,
        *,
        completion_url: str,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._completion_url = completion_url.strip()
        self._api_key = api_key.strip()
        self._model = model.strip()
        self._timeout_seconds = max(1.0, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def complete(
        self,
        *,
        system_prompt: str,
        prompt: str,
    ) -> CompletionOutput:
        if not self._completion_url:
            raise CompletionProviderError("ai_completion_url_missing")

        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
        }

        try:
            if self._client is not None:
                response = await self._client.post(self._completion_url, headers=self._headers(), json=payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await client.post(self._completion_url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise CompletionProviderError(f"ai_transport_error {type(exc).__name__}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 240:
                detail = detail[:240] + "..."
            raise CompletionProviderError(f"ai_completion_failed status={response.status_code} detail={detail}")

        try:
            body: Dict[str, Any] = response.json()
        except ValueError as exc:
            raise CompletionProviderError("ai_invalid_json_response") from exc

        choices = body.get("choices") or []
        message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
        text = str((message or {}).get("content") or "").strip()
        if not text:
            raise CompletionProviderError("ai_empty_completion")

        usage = body.get("usage") or {}
        total_tokens = usage.get("total_tokens") if isinstance(usage, dict) else None
        return CompletionOutput(
            provider=self.provider_name,
            text=text,
            total_tokens=int(total_tokens) if isinstance(total_tokens, int) else None,
            payload=body,
        )
