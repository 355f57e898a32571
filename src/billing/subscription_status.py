"""Effective access state derived from raw subscription status."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol


ACTIVE_STATUSES = frozenset({"active", "trialing", "past_due"})

STATE_ACTIVE = "active"
STATE_GRACE_PERIOD = "grace_period"
STATE_EXPIRED = "expired"


class SubscriptionHolder(Protocol):
    subscription_status: Optional[str]
    subscription_current_period_end: Optional[datetime]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _period_end_in_future(workspace: SubscriptionHolder, now: datetime) -> bool:
    period_end = workspace.subscription_current_period_end
    if period_end is None:
        return False
    return _as_utc(period_end) > now


def is_subscription_active(workspace: SubscriptionHolder, *, now: Optional[datetime] = None) -> bool:
    status = workspace.subscription_status
    if not status:
        return True
    if status in ACTIVE_STATUSES:
        return True

    reference = now or datetime.now(timezone.utc)
    if status == "canceled":
        return _period_end_in_future(workspace, reference)
    return False


def can_create_documents(workspace: SubscriptionHolder, *, now: Optional[datetime] = None) -> bool:
    # Single policy point for creation rights; extend here, not at call sites.
    return is_subscription_active(workspace, now=now)


def get_subscription_state(workspace: SubscriptionHolder, *, now: Optional[datetime] = None) -> str:
    reference = now or datetime.now(timezone.utc)
    if not is_subscription_active(workspace, now=reference):
        return STATE_EXPIRED
    if workspace.subscription_status in {"past_due", "canceled"}:
        return STATE_GRACE_PERIOD
    return STATE_ACTIVE


def get_subscription_status_message(
    workspace: SubscriptionHolder,
    *,
    now: Optional[datetime] = None,
) -> Optional[str]:
    status = workspace.subscription_status
    if not status:
        return None

    if status == "past_due":
        return "Payment failed. Please update your payment method to avoid service interruption."

    if status == "canceled":
        reference = now or datetime.now(timezone.utc)
        if _period_end_in_future(workspace, reference):
            return None
        return "Subscription has ended."

    if status in {"incomplete", "incomplete_expired"}:
        return "Subscription setup incomplete."

    if status == "unpaid":
        return "Subscription unpaid."

    return None
