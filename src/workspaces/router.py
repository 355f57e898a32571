"""Workspace management API routes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from src.app.quota_service import build_quota_report
from src.app.usage_service import get_ai_usage_summary
from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.billing.plans import resolve_plan_limits
from src.billing.subscription_status import get_subscription_state, get_subscription_status_message
from src.core.logger import bind_workspace
from src.core.metrics import record_upstream_error
from src.integrations.deploy import DeployHookError, DeployHookNotConfiguredError
from src.schemas.workspace import (
    CustomDomainRequest,
    DomainVerificationRequest,
    DomainVerificationResponse,
    LatestWorkspaceResponse,
    PendingWorkspaceCreateRequest,
    PendingWorkspaceResponse,
    QuotaResponse,
    RepublishResponse,
    SlugAvailabilityResponse,
    WorkspaceResponse,
)
from src.storage.db import get_session
from src.storage.models import Workspace
from src.workspaces.service import (
    DomainConflictError,
    check_slug_availability,
    create_pending_workspace,
    find_latest_workspace_for_owner,
    get_owned_workspace,
    trigger_republish,
    update_custom_domain,
    verify_custom_domain,
)


router = APIRouter(prefix="/workspaces", tags=["workspaces"])


def _to_response(workspace: Workspace) -> WorkspaceResponse:
    created_at = workspace.created_at
    return WorkspaceResponse(
        id=workspace.id,
        owner_id=workspace.owner_id,
        name=workspace.name,
        slug=workspace.slug,
        plan=workspace.plan,
        subscription_status=workspace.subscription_status,
        subscription_state=get_subscription_state(workspace),
        subscription_message=get_subscription_status_message(workspace),
        custom_domain=workspace.custom_domain,
        logo=workspace.logo,
        created_at=created_at.isoformat() if isinstance(created_at, datetime) else str(created_at),
    )


@router.get("/check-slug", response_model=SlugAvailabilityResponse)
def check_slug(
    slug: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
) -> SlugAvailabilityResponse:
    if not slug or not slug.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Slug is required")
    return SlugAvailabilityResponse(slug=slug.strip(), available=check_slug_availability(session, slug))


@router.post("/pending", response_model=PendingWorkspaceResponse, status_code=201)
def create_pending(
    payload: PendingWorkspaceCreateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PendingWorkspaceResponse:
    pending = create_pending_workspace(
        session,
        auth=auth,
        owner_id=payload.owner_id,
        name=payload.name,
        plan=payload.plan,
        slug=payload.slug,
        customer_id=payload.customer_id,
        customer_email=payload.customer_email,
        customer_external_id=payload.customer_external_id,
        metadata=payload.metadata,
    )
    return PendingWorkspaceResponse(
        id=pending.id,
        owner_id=pending.owner_id,
        name=pending.name,
        plan=pending.plan,
        slug=pending.slug,
    )


@router.get("/latest", response_model=LatestWorkspaceResponse)
def latest_workspace(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> LatestWorkspaceResponse:
    workspace = find_latest_workspace_for_owner(session, auth.user_id)
    return LatestWorkspaceResponse(workspace=_to_response(workspace) if workspace is not None else None)


@router.post("/verify-domain", response_model=DomainVerificationResponse)
def verify_domain(
    payload: DomainVerificationRequest,
    auth: AuthContext = Depends(require_auth_context),
) -> DomainVerificationResponse:
    result = verify_custom_domain(payload.domain)
    return DomainVerificationResponse(valid=result.valid, message=result.message)


@router.get("/{workspace_id}", response_model=WorkspaceResponse)
def get_workspace(
    workspace_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> WorkspaceResponse:
    workspace = get_owned_workspace(session, workspace_id, auth.user_id)
    bind_workspace(workspace.id)
    return _to_response(workspace)


@router.put("/{workspace_id}/domain", response_model=WorkspaceResponse)
def set_domain(
    workspace_id: str,
    payload: CustomDomainRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> WorkspaceResponse:
    workspace = get_owned_workspace(session, workspace_id, auth.user_id)
    bind_workspace(workspace.id)
    try:
        updated = update_custom_domain(session, workspace, payload.domain)
    except DomainConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_response(updated)


@router.post("/{workspace_id}/republish", response_model=RepublishResponse)
def republish(
    workspace_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> RepublishResponse:
    workspace = get_owned_workspace(session, workspace_id, auth.user_id)
    bind_workspace(workspace.id)
    try:
        trigger_republish(workspace)
    except DeployHookNotConfiguredError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Deploy hook not configured",
        ) from exc
    except DeployHookError as exc:
        record_upstream_error(dependency="deploy_hook")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to trigger republish") from exc
    return RepublishResponse(triggered=True)


@router.get("/{workspace_id}/quota", response_model=QuotaResponse)
def workspace_quota(
    workspace_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> QuotaResponse:
    workspace = get_owned_workspace(session, workspace_id, auth.user_id)
    bind_workspace(workspace.id)
    limits = resolve_plan_limits(workspace.plan)
    report = build_quota_report(session, workspace, limits)
    usage = get_ai_usage_summary(workspace)
    return QuotaResponse(
        tier=report.tier,
        document_count=report.document_count,
        document_limit=report.document_limit,
        storage_used_bytes=report.storage_used_bytes,
        storage_limit_bytes=report.storage_limit_bytes,
        documents_at_limit=report.documents_at_limit,
        storage_at_limit=report.storage_at_limit,
        storage_warning=report.storage_warning,
        ai_used=usage.used,
        ai_limit=usage.limit,
        ai_remaining=usage.remaining,
        ai_period=usage.period,
    )
