from __future__ import annotations

import json

import httpx
import pytest

from src.billing.polar_client import PolarAPIError, PolarClient


def _client(handler) -> PolarClient:
    return PolarClient(
        access_token="polar_oat_test",
        base_url="https://sandbox-api.polar.sh/",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_get_product_sends_bearer_token() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"id": "prod_1", "prices": [{"amount_type": "free"}]})

    product = _client(handler).get_product("prod_1")

    assert product["id"] == "prod_1"
    assert seen["url"] == "https://sandbox-api.polar.sh/v1/products/prod_1"
    assert seen["auth"] == "Bearer polar_oat_test"


def test_create_checkout_payload() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "chk_1", "url": "https://polar.sh/checkout/chk_1"})

    body = _client(handler).create_checkout(
        product_id="prod_pro",
        success_url="https://app.example/success",
        metadata={"pending_workspace_id": "pw_1"},
        customer_email="owner@acme.io",
        customer_external_id="user-1",
    )

    assert body["url"] == "https://polar.sh/checkout/chk_1"
    assert seen["body"] == {
        "products": ["prod_pro"],
        "success_url": "https://app.example/success",
        "metadata": {"pending_workspace_id": "pw_1"},
        "customer_email": "owner@acme.io",
        "external_customer_id": "user-1",
    }


def test_error_statuses_raise_with_status_code() -> None:
    client = _client(lambda request: httpx.Response(404, text="not found"))

    with pytest.raises(PolarAPIError) as exc_info:
        client.get_customer_by_external_id("user-1")

    assert exc_info.value.status_code == 404


def test_transport_errors_are_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(PolarAPIError) as exc_info:
        _client(handler).revoke_subscription("sub_1")

    assert exc_info.value.status_code is None
    assert "ConnectError" in str(exc_info.value)


def test_missing_access_token_fails_before_request() -> None:
    client = PolarClient(access_token="", base_url="https://sandbox-api.polar.sh")
    with pytest.raises(PolarAPIError):
        client.ingest_events([{"name": "copilot_usage"}])


def test_empty_revoke_response_is_accepted() -> None:
    assert _client(lambda request: httpx.Response(204)).revoke_subscription("sub_1") == {}
