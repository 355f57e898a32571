"""Polar webhook endpoint with idempotent processing."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.billing.plans import FREE_TIER, UNLIMITED, get_tier_limits
from src.billing.webhook_signature import (
    BillingWebhookError,
    parse_billing_event,
    verify_webhook_signature,
)
from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.metrics import record_billing_event
from src.core.observability import capture_exception
from src.schemas.billing import BillingWebhookResponse
from src.storage.db import get_session
from src.storage.models import BillingEvent, Document, PendingWorkspace, Workspace
from src.workspaces.service import (
    FINALIZE_CONFLICT,
    FINALIZE_CREATED,
    FINALIZE_DUPLICATE,
    FINALIZE_FAILED,
    FinalizeResult,
    find_latest_workspace_for_owner,
    finalize_pending_workspace,
)


router = APIRouter(prefix="/billing", tags=["billing"])

logger = get_logger("openpolicy.billing.webhooks")

FINALIZING_ORDER_REASONS = frozenset({"subscription_create", "purchase"})


def _as_json(payload: bytes) -> str:
    return payload.decode("utf-8")


def _str_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    raw = _str_or_none(value)
    if raw is None:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _customer_refs(data: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Collect customer identifiers from subscription, order and customer payloads."""

    nested = data.get("subscription") if isinstance(data.get("subscription"), dict) else {}
    customer = data.get("customer")
    if not isinstance(customer, dict):
        customer = nested.get("customer") if isinstance(nested.get("customer"), dict) else {}
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

    return {
        "pending_workspace_id": _str_or_none(metadata.get("pending_workspace_id"))
        or _str_or_none(metadata.get("pendingWorkspaceId")),
        "customer_external_id": _str_or_none(customer.get("external_id"))
        or _str_or_none(customer.get("externalId"))
        or _str_or_none(metadata.get("external_id"))
        or _str_or_none(metadata.get("externalId")),
        "customer_email": _str_or_none(customer.get("email")) or _str_or_none(metadata.get("customer_email")),
        "customer_id": _str_or_none(customer.get("id")) or _str_or_none(data.get("customer_id")),
    }


def _is_customer_payload(data: Dict[str, Any]) -> bool:
    return "email" in data and "customer" not in data and "subscription" not in data


def _finalize_from_payload(session: Session, data: Dict[str, Any]) -> FinalizeResult:
    refs = _customer_refs(data)
    if _is_customer_payload(data):
        refs["customer_id"] = refs["customer_id"] or _str_or_none(data.get("id"))
        refs["customer_email"] = refs["customer_email"] or _str_or_none(data.get("email"))
        refs["customer_external_id"] = refs["customer_external_id"] or _str_or_none(data.get("external_id"))
    return finalize_pending_workspace(session, **refs)


def _insert_billing_event(
    session: Session,
    *,
    event_id: str,
    event_type: str,
    payload_json: str,
) -> Tuple[Optional[BillingEvent], bool]:
    billing_event = BillingEvent(
        event_id=event_id,
        event_type=event_type,
        status="received",
        payload_json=payload_json,
    )
    session.add(billing_event)
    try:
        session.commit()
        return billing_event, False
    except IntegrityError:
        session.rollback()
        return None, True


def _mark_event_failed(session: Session, event_id: str, error_message: str) -> None:
    billing_event = session.scalar(select(BillingEvent).where(BillingEvent.event_id == event_id))
    if billing_event is None:
        return
    billing_event.status = "failed"
    billing_event.error_message = error_message[:255]
    billing_event.processed_at = datetime.now(timezone.utc)
    session.commit()


def _finalize_outcome(result: FinalizeResult) -> Tuple[str, str]:
    if result.status == FINALIZE_CREATED:
        return "processed", "Pending workspace finalized"
    if result.status == FINALIZE_DUPLICATE:
        return "processed", "Workspace already provisioned"
    if result.status in {FINALIZE_CONFLICT, FINALIZE_FAILED}:
        return "failed", result.message or "Workspace finalization failed"
    return "ignored", result.message or "No pending workspace matched"


def _workspaces_for_subscription(
    session: Session,
    subscription_id: Optional[str],
    owner_id: Optional[str],
) -> List[Workspace]:
    if subscription_id:
        matched = list(session.scalars(select(Workspace).where(Workspace.subscription_id == subscription_id)).all())
        if matched:
            return matched
    if owner_id:
        latest = find_latest_workspace_for_owner(session, owner_id)
        if latest is not None:
            return [latest]
    return []


def _apply_subscription_fields(workspace: Workspace, subscription: Dict[str, Any]) -> None:
    subscription_id = _str_or_none(subscription.get("id"))
    if subscription_id:
        workspace.subscription_id = subscription_id
    subscription_status = _str_or_none(subscription.get("status"))
    if subscription_status:
        workspace.subscription_status = subscription_status
    period_end = _parse_timestamp(subscription.get("current_period_end"))
    if period_end is not None:
        workspace.subscription_current_period_end = period_end
    product_id = _str_or_none(subscription.get("product_id"))
    if product_id:
        workspace.plan = product_id
    workspace.updated_at = datetime.now(timezone.utc)


def _apply_subscription_created(
    session: Session,
    *,
    billing_event: BillingEvent,
    data: Dict[str, Any],
) -> Tuple[str, str]:
    result = _finalize_from_payload(session, data)
    final_status, message = _finalize_outcome(result)
    if final_status == "failed":
        return final_status, message

    owner_id = result.owner_id or _customer_refs(data)["customer_external_id"]
    if result.workspace_id:
        workspace = session.get(Workspace, result.workspace_id)
        targets = [workspace] if workspace is not None else []
    else:
        targets = _workspaces_for_subscription(session, _str_or_none(data.get("id")), owner_id)
    if not targets:
        return final_status, message

    for workspace in targets:
        _apply_subscription_fields(workspace, data)
    billing_event.workspace_id = targets[0].id
    return "processed", "Subscription attached to workspace"


def _apply_subscription_update(
    session: Session,
    *,
    billing_event: BillingEvent,
    data: Dict[str, Any],
    forced_status: Optional[str] = None,
) -> Tuple[str, str]:
    subscription_id = _str_or_none(data.get("id"))
    owner_id = _customer_refs(data)["customer_external_id"]
    targets = _workspaces_for_subscription(session, subscription_id, owner_id)
    if not targets:
        return "ignored", "No workspace linked to subscription"

    for workspace in targets:
        _apply_subscription_fields(workspace, data)
        if forced_status:
            workspace.subscription_status = forced_status
    billing_event.workspace_id = targets[0].id
    return "processed", "Subscription status applied"


def archive_documents_beyond_limit(session: Session, workspace: Workspace, keep: int) -> int:
    """Archive the oldest non-archived documents so at most ``keep`` stay active."""

    if keep == UNLIMITED:
        return 0
    active = list(
        session.scalars(
            select(Document)
            .where(Document.workspace_id == workspace.id, Document.status != "archived")
            .order_by(Document.created_at.asc(), Document.id.asc())
        ).all()
    )
    overflow = active[: max(len(active) - keep, 0)]
    now = datetime.now(timezone.utc)
    for document in overflow:
        document.status = "archived"
        document.published = False
        document.published_at = None
        document.updated_at = now
    return len(overflow)


def _mark_pending_canceled(session: Session, refs: Dict[str, Optional[str]]) -> None:
    conditions = []
    if refs["customer_external_id"]:
        conditions.append(PendingWorkspace.customer_external_id == refs["customer_external_id"])
    if refs["customer_email"]:
        conditions.append(PendingWorkspace.customer_email == refs["customer_email"])
    if refs["customer_id"]:
        conditions.append(PendingWorkspace.customer_id == refs["customer_id"])

    stamp = datetime.now(timezone.utc).isoformat()
    for condition in conditions:
        for pending in session.scalars(select(PendingWorkspace).where(condition)).all():
            pending.meta = {**dict(pending.meta or {}), "canceled_at": stamp}


def _apply_subscription_canceled(
    session: Session,
    *,
    billing_event: BillingEvent,
    data: Dict[str, Any],
) -> Tuple[str, str]:
    subscription = data.get("subscription") if isinstance(data.get("subscription"), dict) else data
    refs = _customer_refs(data)
    subscription_id = _str_or_none(subscription.get("id"))
    targets = _workspaces_for_subscription(session, subscription_id, None)

    free_limits = get_tier_limits(FREE_TIER)
    archived_total = 0
    for workspace in targets:
        archived_total += archive_documents_beyond_limit(session, workspace, free_limits.documents)
        workspace.plan = None
        workspace.subscription_status = "canceled"
        period_end = _parse_timestamp(subscription.get("current_period_end"))
        if period_end is not None:
            workspace.subscription_current_period_end = period_end
        workspace.updated_at = datetime.now(timezone.utc)

    _mark_pending_canceled(session, refs)

    if not targets:
        return "ignored", "No workspace linked to subscription"
    billing_event.workspace_id = targets[0].id
    logger.info(
        "subscription_downgraded",
        workspace_id=targets[0].id,
        subscription_id=subscription_id,
        archived_documents=archived_total,
    )
    return "processed", "Subscription canceled and workspace downgraded"


def _apply_finalizing_event(
    session: Session,
    *,
    billing_event: BillingEvent,
    data: Dict[str, Any],
) -> Tuple[str, str]:
    result = _finalize_from_payload(session, data)
    if result.workspace_id:
        billing_event.workspace_id = result.workspace_id
    return _finalize_outcome(result)


def process_billing_event(
    session: Session,
    *,
    event: Dict[str, Any],
    event_id: str,
    payload_bytes: bytes,
) -> BillingWebhookResponse:
    event_type = str(event["type"])
    data: Dict[str, Any] = event["data"]

    billing_event, duplicate = _insert_billing_event(
        session,
        event_id=event_id,
        event_type=event_type,
        payload_json=_as_json(payload_bytes),
    )
    if duplicate:
        record_billing_event(event_type=event_type, status="duplicate")
        return BillingWebhookResponse(
            status="duplicate",
            duplicate=True,
            event_id=event_id,
            event_type=event_type,
            message="Event already processed",
        )
    if billing_event is None:  # pragma: no cover
        raise RuntimeError("Failed to persist billing event")

    try:
        if event_type == "subscription.created":
            final_status, message = _apply_subscription_created(session, billing_event=billing_event, data=data)
        elif event_type == "subscription.updated":
            final_status, message = _apply_subscription_update(session, billing_event=billing_event, data=data)
        elif event_type == "subscription.active":
            final_status, message = _apply_subscription_update(
                session,
                billing_event=billing_event,
                data=data,
                forced_status="active",
            )
        elif event_type in {"subscription.canceled", "subscription.revoked"}:
            final_status, message = _apply_subscription_canceled(session, billing_event=billing_event, data=data)
        elif event_type == "order.created":
            if _str_or_none(data.get("billing_reason")) in FINALIZING_ORDER_REASONS:
                final_status, message = _apply_finalizing_event(session, billing_event=billing_event, data=data)
            else:
                final_status, message = "ignored", "Order does not create a workspace"
        elif event_type in {"order.paid", "customer.updated"}:
            final_status, message = _apply_finalizing_event(session, billing_event=billing_event, data=data)
        else:
            final_status, message = "ignored", "Unsupported billing event type"

        billing_event.status = final_status
        billing_event.error_message = None if final_status == "processed" else message[:255]
        billing_event.processed_at = datetime.now(timezone.utc)
        session.commit()
        record_billing_event(event_type=event_type, status=final_status)
        logger.info("billing_event_processed", event_id=event_id, event_type=event_type, status=final_status)
        return BillingWebhookResponse(
            status=final_status,
            duplicate=False,
            event_id=event_id,
            event_type=event_type,
            message=message,
        )
    except Exception as exc:
        session.rollback()
        _mark_event_failed(session, event_id, str(exc))
        capture_exception(exc)
        record_billing_event(event_type=event_type, status="failed")
        logger.exception("billing_event_failed", event_id=event_id, event_type=event_type)
        return BillingWebhookResponse(
            status="failed",
            duplicate=False,
            event_id=event_id,
            event_type=event_type,
            message="Processing failed",
        )


@router.post("/webhook", response_model=BillingWebhookResponse)
async def polar_webhook(
    request: Request,
    session: Session = Depends(get_session),
) -> BillingWebhookResponse:
    settings = get_settings()
    if not settings.polar_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing webhook secret is not configured",
        )

    payload_bytes = await request.body()
    try:
        signature = verify_webhook_signature(
            payload=payload_bytes,
            headers=request.headers,
            webhook_secret=settings.polar_webhook_secret,
            tolerance_seconds=settings.polar_signature_tolerance_seconds,
        )
        event = parse_billing_event(payload_bytes)
    except BillingWebhookError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return process_billing_event(
        session,
        event=event,
        event_id=signature.message_id,
        payload_bytes=payload_bytes,
    )
