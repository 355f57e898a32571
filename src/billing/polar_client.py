"""Polar REST client for catalog, checkout, subscriptions and usage events."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List, Optional

import httpx

from src.core.config import get_settings


class PolarAPIError(RuntimeError):
    """Raised when a Polar API call fails or returns an unusable payload."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PolarClient:
    def __init__(
        self,
        *,
        access_token: str,
        base_url: str,
        timeout_seconds: int = 15,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._access_token = access_token.strip()
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self._access_token:
            raise PolarAPIError("polar_access_token_missing")

        url = f"{self._base_url}{path}"
        try:
            if self._client is not None:
                response = self._client.request(method, url, headers=self._headers(), json=json, params=params)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.request(method, url, headers=self._headers(), json=json, params=params)
        except httpx.HTTPError as exc:
            raise PolarAPIError(f"polar_transport_error {type(exc).__name__}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 200:
                detail = detail[:200] + "..."
            raise PolarAPIError(
                f"polar_request_failed status={response.status_code} detail={detail}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise PolarAPIError("polar_invalid_json_response", status_code=response.status_code) from exc

    def get_product(self, product_id: str) -> Dict[str, Any]:
        body = self._request("GET", f"/v1/products/{product_id}")
        if not isinstance(body, dict):
            raise PolarAPIError("polar_invalid_product_payload")
        return body

    def create_checkout(
        self,
        *,
        product_id: str,
        success_url: str,
        metadata: Optional[Dict[str, Any]] = None,
        customer_email: Optional[str] = None,
        customer_external_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "products": [product_id],
            "success_url": success_url,
            "metadata": metadata or {},
        }
        if customer_email:
            payload["customer_email"] = customer_email
        if customer_external_id:
            payload["external_customer_id"] = customer_external_id

        body = self._request("POST", "/v1/checkouts/", json=payload)
        if not isinstance(body, dict) or not body.get("url"):
            raise PolarAPIError("polar_invalid_checkout_payload")
        return body

    def revoke_subscription(self, subscription_id: str) -> Dict[str, Any]:
        body = self._request("DELETE", f"/v1/subscriptions/{subscription_id}")
        return body if isinstance(body, dict) else {}

    def ingest_events(self, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        body = self._request("POST", "/v1/events/ingest", json={"events": events})
        return body if isinstance(body, dict) else {}

    def get_customer_by_external_id(self, external_id: str) -> Dict[str, Any]:
        body = self._request("GET", f"/v1/customers/external/{external_id}")
        if not isinstance(body, dict):
            raise PolarAPIError("polar_invalid_customer_payload")
        return body


@lru_cache(maxsize=1)
def get_polar_client() -> PolarClient:
    settings = get_settings()
    return PolarClient(
        access_token=settings.polar_access_token,
        base_url=settings.resolved_polar_api_base_url,
        timeout_seconds=settings.polar_timeout_seconds,
    )


def reset_polar_client_cache() -> None:
    get_polar_client.cache_clear()
