"""Polar webhook parsing and signature verification (Standard Webhooks)."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class WebhookSignatureData:
    message_id: str
    timestamp: int
    signatures: List[str]


class BillingWebhookError(ValueError):
    """Raised when webhook payload/signature is invalid."""


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower(), "")
    return (value or "").strip()


def parse_signature_headers(headers: Mapping[str, str]) -> WebhookSignatureData:
    message_id = _header(headers, "webhook-id")
    raw_timestamp = _header(headers, "webhook-timestamp")
    raw_signatures = _header(headers, "webhook-signature")
    if not message_id or not raw_timestamp or not raw_signatures:
        raise BillingWebhookError("Missing webhook signature headers")

    try:
        timestamp = int(raw_timestamp)
    except ValueError as exc:
        raise BillingWebhookError("Invalid webhook timestamp") from exc

    signatures: List[str] = []
    for part in raw_signatures.split(" "):
        part = part.strip()
        if not part or "," not in part:
            continue
        version, value = part.split(",", 1)
        if version == "v1" and value:
            signatures.append(value)

    if not signatures:
        raise BillingWebhookError("Invalid webhook signature header")
    return WebhookSignatureData(message_id=message_id, timestamp=timestamp, signatures=signatures)


def compute_signature(*, secret: str, message_id: str, timestamp: int, payload: bytes) -> str:
    signed_payload = f"{message_id}.{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed_payload, digestmod=hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(
    *,
    payload: bytes,
    headers: Mapping[str, str],
    webhook_secret: str,
    tolerance_seconds: int = 300,
    now: Optional[datetime] = None,
) -> WebhookSignatureData:
    if not webhook_secret:
        raise BillingWebhookError("Billing webhook secret is not configured")

    data = parse_signature_headers(headers)
    current_time = now or datetime.now(timezone.utc)
    age_seconds = abs(int(current_time.timestamp()) - data.timestamp)
    if age_seconds > tolerance_seconds:
        raise BillingWebhookError("Webhook timestamp outside tolerance window")

    expected = compute_signature(
        secret=webhook_secret,
        message_id=data.message_id,
        timestamp=data.timestamp,
        payload=payload,
    )
    if not any(hmac.compare_digest(expected, candidate) for candidate in data.signatures):
        raise BillingWebhookError("Webhook signature mismatch")
    return data


def parse_billing_event(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload.decode("utf-8"))
    except Exception as exc:
        raise BillingWebhookError("Invalid webhook JSON payload") from exc

    if not isinstance(event, dict):
        raise BillingWebhookError("Webhook payload must be a JSON object")
    if "type" not in event or not isinstance(event.get("data"), dict):
        raise BillingWebhookError("Webhook payload missing required fields: type/data")
    return event
