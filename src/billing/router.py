"""Checkout, cancellation and customer API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.billing.polar_client import PolarAPIError
from src.billing.service import cancel_subscription, create_checkout_session, get_customer
from src.core.logger import bind_workspace, get_logger
from src.core.metrics import record_upstream_error
from src.schemas.billing import CancelSubscriptionResponse, CheckoutRequest, CheckoutResponse, CustomerResponse
from src.storage.db import get_session
from src.workspaces.service import get_owned_workspace


router = APIRouter(prefix="/billing", tags=["billing"])

logger = get_logger("openpolicy.billing.router")


def _upstream_failure(exc: PolarAPIError, detail: str) -> HTTPException:
    record_upstream_error(dependency="polar")
    logger.warning("polar_request_failed", error=str(exc)[:200], status_code=exc.status_code)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


@router.post("/checkout", response_model=CheckoutResponse)
def checkout(
    payload: CheckoutRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> CheckoutResponse:
    try:
        result = create_checkout_session(
            session,
            auth=auth,
            product_id=payload.product_id,
            pending_workspace_id=payload.pending_workspace_id,
            success_url=payload.success_url,
            metadata=payload.metadata,
        )
    except PolarAPIError as exc:
        raise _upstream_failure(exc, "Failed to create checkout") from exc
    return CheckoutResponse(checkout_url=result.url, checkout_id=result.checkout_id)


@router.post("/workspaces/{workspace_id}/cancel", response_model=CancelSubscriptionResponse)
def cancel(
    workspace_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> CancelSubscriptionResponse:
    workspace = get_owned_workspace(session, workspace_id, auth.user_id)
    bind_workspace(workspace.id)
    try:
        subscription_id = cancel_subscription(workspace)
    except PolarAPIError as exc:
        raise _upstream_failure(exc, "Failed to cancel subscription") from exc
    return CancelSubscriptionResponse(success=True, subscription_id=subscription_id)


@router.get("/customer", response_model=CustomerResponse)
def customer(auth: AuthContext = Depends(require_auth_context)) -> CustomerResponse:
    try:
        body = get_customer(auth)
    except PolarAPIError as exc:
        if exc.status_code == 404:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found") from exc
        raise _upstream_failure(exc, "Failed to load customer") from exc
    return CustomerResponse(id=body.get("id"), email=body.get("email"), external_id=body.get("external_id"))
