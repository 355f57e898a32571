"""Deploy hook client used to rebuild statically rendered public pages."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

import httpx

from src.core.config import get_settings


class DeployHookError(RuntimeError):
    """Raised when the deploy hook cannot be triggered."""


class DeployHookNotConfiguredError(DeployHookError):
    """Raised when no deploy hook URL is configured."""


class DeployHookClient:
    def __init__(
        self,
        *,
        hook_url: str,
        timeout_seconds: int = 15,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._hook_url = hook_url.strip()
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._hook_url)

    def trigger(self) -> None:
        if not self._hook_url:
            raise DeployHookNotConfiguredError("deploy_hook_url_missing")

        try:
            if self._client is not None:
                response = self._client.post(self._hook_url)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.post(self._hook_url)
        except httpx.HTTPError as exc:
            raise DeployHookError(f"deploy_hook_transport_error {type(exc).__name__}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise DeployHookError(f"deploy_hook_failed status={response.status_code}")


@lru_cache(maxsize=1)
def get_deploy_hook_client() -> DeployHookClient:
    settings = get_settings()
    return DeployHookClient(
        hook_url=settings.deploy_hook_url,
        timeout_seconds=settings.deploy_hook_timeout_seconds,
    )
