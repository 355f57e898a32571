"""Checkout, cancellation and customer lookups against Polar."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from src.auth.jwt import AuthContext
from src.billing.polar_client import PolarClient, get_polar_client
from src.core.config import get_settings
from src.core.logger import get_logger
from src.storage.models import PendingWorkspace, Workspace


logger = get_logger("openpolicy.billing")


@dataclass(frozen=True)
class CheckoutSession:
    url: str
    checkout_id: Optional[str]


def create_checkout_session(
    session: Session,
    *,
    auth: AuthContext,
    product_id: str,
    pending_workspace_id: Optional[str] = None,
    success_url: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    client: Optional[PolarClient] = None,
) -> CheckoutSession:
    """Start a hosted checkout linked to the caller and, optionally, a pending workspace.

    The pending workspace id travels in checkout metadata so webhooks can
    promote exactly that row.
    """

    checkout_metadata: Dict[str, Any] = dict(metadata or {})
    if pending_workspace_id:
        pending = session.get(PendingWorkspace, pending_workspace_id)
        if pending is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pending workspace not found")
        if pending.owner_id != auth.user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to use this workspace")
        checkout_metadata["pending_workspace_id"] = pending.id

    resolved_success_url = success_url or get_settings().checkout_success_url
    if not resolved_success_url:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Checkout success URL not configured",
        )

    polar = client if client is not None else get_polar_client()
    body = polar.create_checkout(
        product_id=product_id,
        success_url=resolved_success_url,
        metadata=checkout_metadata,
        customer_email=auth.email,
        customer_external_id=auth.user_id,
    )
    logger.info("checkout_created", product_id=product_id, pending_workspace_id=pending_workspace_id)
    return CheckoutSession(url=str(body["url"]), checkout_id=body.get("id"))


def cancel_subscription(
    workspace: Workspace,
    *,
    client: Optional[PolarClient] = None,
) -> Optional[str]:
    """Revoke the workspace subscription at Polar.

    Local state is left to the ``subscription.revoked`` webhook.
    """

    if not workspace.subscription_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Workspace has no subscription")

    polar = client if client is not None else get_polar_client()
    polar.revoke_subscription(workspace.subscription_id)
    logger.info("subscription_revoke_requested", workspace_id=workspace.id, subscription_id=workspace.subscription_id)
    return workspace.subscription_id


def get_customer(auth: AuthContext, *, client: Optional[PolarClient] = None) -> Dict[str, Any]:
    polar = client if client is not None else get_polar_client()
    return polar.get_customer_by_external_id(auth.user_id)
