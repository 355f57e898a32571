"""Workspace provisioning and owner-scoped workspace services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import Any, Dict, Iterable, Optional

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.auth.jwt import AuthContext
from src.core.logger import get_logger
from src.core.slugs import is_valid_slug, normalize_slug, suffixed_slug
from src.integrations.deploy import DeployHookClient, get_deploy_hook_client
from src.integrations.dns import CnameResolver, DomainVerificationResult, verify_cname_target
from src.storage.db import is_unique_violation
from src.storage.models import PendingWorkspace, Workspace


FINALIZE_CREATED = "created"
FINALIZE_NOT_FOUND = "not_found"
FINALIZE_DUPLICATE = "duplicate"
FINALIZE_CONFLICT = "conflict"
FINALIZE_FAILED = "failed"

PENDING_FALLBACK_SCAN_LIMIT = 5
MAX_DERIVED_SLUG_ATTEMPTS = 20

_EXTERNAL_ID_METADATA_KEYS = ("externalId", "external_id")
_EMAIL_METADATA_KEYS = ("customer_email", "email")
_DOMAIN_PATTERN = re.compile(r"^(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")

logger = get_logger("openpolicy.workspaces")


class DomainConflictError(RuntimeError):
    def __init__(self, domain: str) -> None:
        self.domain = domain
        super().__init__(f"Domain {domain} is already in use")


@dataclass(frozen=True)
class FinalizeResult:
    status: str
    pending_workspace_id: Optional[str] = None
    workspace_id: Optional[str] = None
    owner_id: Optional[str] = None
    message: Optional[str] = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_owned_workspace(session: Session, workspace_id: str, user_id: str) -> Workspace:
    workspace = session.scalar(select(Workspace).where(Workspace.id == workspace_id))
    if workspace is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found")
    if workspace.owner_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access this workspace",
        )
    return workspace


def find_latest_workspace_for_owner(session: Session, owner_id: str) -> Optional[Workspace]:
    statement = (
        select(Workspace)
        .where(Workspace.owner_id == owner_id)
        .order_by(Workspace.created_at.desc(), Workspace.id.desc())
        .limit(1)
    )
    return session.scalars(statement).first()


def check_slug_availability(session: Session, slug: str) -> bool:
    """Case-insensitive check against live and pending workspaces.

    Advisory only: nothing reserves the slug between this check and the
    eventual insert.
    """

    candidate = slug.strip().lower()
    if not candidate:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Slug is required")

    taken = session.scalar(select(Workspace.id).where(func.lower(Workspace.slug) == candidate).limit(1))
    if taken is not None:
        return False
    pending = session.scalar(
        select(PendingWorkspace.id).where(func.lower(PendingWorkspace.slug) == candidate).limit(1)
    )
    return pending is None


def create_pending_workspace(
    session: Session,
    *,
    auth: AuthContext,
    owner_id: str,
    name: str,
    plan: Optional[str] = None,
    slug: Optional[str] = None,
    customer_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    customer_external_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> PendingWorkspace:
    if auth.user_id != owner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unauthorized: Owner ID mismatch",
        )

    normalized_slug: Optional[str] = None
    if slug:
        normalized_slug = normalize_slug(slug)
        if not is_valid_slug(normalized_slug):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid slug format")

    pending = PendingWorkspace(
        owner_id=owner_id,
        name=name.strip(),
        plan=plan,
        slug=normalized_slug,
        customer_id=customer_id,
        customer_email=customer_email,
        customer_external_id=customer_external_id or owner_id,
        meta=dict(metadata or {}),
    )
    session.add(pending)
    session.commit()
    logger.info("pending_workspace_created", pending_workspace_id=pending.id, owner_id=owner_id, plan=plan)
    return pending


def _first_pending(session: Session, *conditions: Any) -> Optional[PendingWorkspace]:
    statement = (
        select(PendingWorkspace)
        .where(*conditions)
        .order_by(PendingWorkspace.created_at.desc(), PendingWorkspace.id.desc())
        .limit(1)
    )
    return session.scalars(statement).first()


def _metadata_matches(pending: PendingWorkspace, keys: Iterable[str], value: str) -> bool:
    metadata = pending.meta or {}
    return any(metadata.get(key) == value for key in keys)


def locate_pending_workspace(
    session: Session,
    *,
    pending_workspace_id: Optional[str] = None,
    customer_external_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> Optional[PendingWorkspace]:
    if pending_workspace_id:
        found = session.get(PendingWorkspace, pending_workspace_id)
        if found is not None:
            return found
    if customer_external_id:
        found = _first_pending(session, PendingWorkspace.customer_external_id == customer_external_id)
        if found is not None:
            return found
    if customer_email:
        found = _first_pending(session, PendingWorkspace.customer_email == customer_email)
        if found is not None:
            return found
    if customer_id:
        found = _first_pending(session, PendingWorkspace.customer_id == customer_id)
        if found is not None:
            return found

    if not customer_external_id and not customer_email:
        return None

    # Checkout metadata is provider-shaped; match it in Python over recent rows.
    recent = session.scalars(
        select(PendingWorkspace)
        .order_by(PendingWorkspace.created_at.desc(), PendingWorkspace.id.desc())
        .limit(PENDING_FALLBACK_SCAN_LIMIT)
    ).all()
    for pending in recent:
        if customer_external_id and (
            _metadata_matches(pending, _EXTERNAL_ID_METADATA_KEYS, customer_external_id)
            or pending.owner_id == customer_external_id
        ):
            return pending
        if customer_email and _metadata_matches(pending, _EMAIL_METADATA_KEYS, customer_email):
            return pending
    return None


def _derive_workspace_slug(session: Session, pending: PendingWorkspace) -> str:
    explicit = pending.slug or (pending.meta or {}).get("slug")
    if isinstance(explicit, str) and explicit.strip():
        normalized = normalize_slug(explicit)
        if is_valid_slug(normalized):
            return normalized
        logger.warning("pending_workspace_slug_invalid", pending_workspace_id=pending.id, slug=explicit[:64])

    base = normalize_slug(pending.name or "")
    if not is_valid_slug(base):
        base = "workspace"
    candidate = base
    for attempt in range(1, MAX_DERIVED_SLUG_ATTEMPTS + 1):
        taken = session.scalar(select(Workspace.id).where(func.lower(Workspace.slug) == candidate).limit(1))
        if taken is None:
            return candidate
        candidate = suffixed_slug(base, attempt)
    return suffixed_slug(base, int(_now_utc().timestamp()))


def _annotate_pending_failure(session: Session, pending_id: str, error: str) -> None:
    pending = session.get(PendingWorkspace, pending_id)
    if pending is None:
        return
    pending.meta = {
        **dict(pending.meta or {}),
        "finalized_error": error[:255],
        "finalized_at": _now_utc().isoformat(),
    }
    session.commit()


def finalize_pending_workspace(
    session: Session,
    *,
    pending_workspace_id: Optional[str] = None,
    customer_external_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> FinalizeResult:
    """Promote a pending workspace into a live one.

    Safe to call repeatedly for the same checkout: once the pending row is
    gone later calls report ``not_found``, and a same-name workspace for the
    owner short-circuits to ``duplicate``.
    """

    pending = locate_pending_workspace(
        session,
        pending_workspace_id=pending_workspace_id,
        customer_external_id=customer_external_id,
        customer_email=customer_email,
        customer_id=customer_id,
    )
    if pending is None:
        logger.info(
            "pending_workspace_not_found",
            pending_workspace_id=pending_workspace_id,
            customer_external_id=customer_external_id,
            customer_id=customer_id,
        )
        return FinalizeResult(status=FINALIZE_NOT_FOUND, message="No pending workspace matched")

    pending_id = pending.id
    owner_id = pending.owner_id

    existing = session.scalar(
        select(Workspace).where(
            Workspace.owner_id == owner_id,
            func.lower(Workspace.name) == pending.name.strip().lower(),
        )
    )
    if existing is not None:
        session.delete(pending)
        session.commit()
        logger.info("pending_workspace_already_finalized", pending_workspace_id=pending_id, workspace_id=existing.id)
        return FinalizeResult(
            status=FINALIZE_DUPLICATE,
            pending_workspace_id=pending_id,
            workspace_id=existing.id,
            owner_id=owner_id,
            message="Workspace already exists for owner",
        )

    metadata = dict(pending.meta or {})
    workspace = Workspace(
        owner_id=owner_id,
        name=pending.name.strip(),
        slug=_derive_workspace_slug(session, pending),
        plan=pending.plan,
        polar_customer_id=pending.customer_id,
        logo=metadata.get("logo") if isinstance(metadata.get("logo"), str) else None,
        meta={},
        usage_revision=0,
    )
    session.add(workspace)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        conflict = is_unique_violation(exc)
        _annotate_pending_failure(session, pending_id, "slug_conflict" if conflict else str(exc.orig))
        logger.warning(
            "pending_workspace_finalize_failed",
            pending_workspace_id=pending_id,
            owner_id=owner_id,
            conflict=conflict,
        )
        return FinalizeResult(
            status=FINALIZE_CONFLICT if conflict else FINALIZE_FAILED,
            pending_workspace_id=pending_id,
            owner_id=owner_id,
            message="Workspace slug already taken" if conflict else "Workspace insert failed",
        )

    pending_row = session.get(PendingWorkspace, pending_id)
    if pending_row is not None:
        session.delete(pending_row)
        session.commit()

    logger.info(
        "pending_workspace_finalized",
        pending_workspace_id=pending_id,
        workspace_id=workspace.id,
        owner_id=owner_id,
    )
    return FinalizeResult(
        status=FINALIZE_CREATED,
        pending_workspace_id=pending_id,
        workspace_id=workspace.id,
        owner_id=owner_id,
    )


def normalize_domain(raw: str) -> str:
    value = raw.strip().lower()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    return value.split("/", 1)[0].rstrip(".")


def update_custom_domain(session: Session, workspace: Workspace, domain: Optional[str]) -> Workspace:
    new_domain: Optional[str] = None
    if domain and domain.strip():
        new_domain = normalize_domain(domain)
        if not _DOMAIN_PATTERN.match(new_domain):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid domain")

        claimed = session.scalar(
            select(Workspace.id).where(Workspace.custom_domain == new_domain, Workspace.id != workspace.id)
        )
        if claimed is not None:
            raise DomainConflictError(new_domain)

    workspace.custom_domain = new_domain
    workspace.updated_at = _now_utc()
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if new_domain and is_unique_violation(exc):
            raise DomainConflictError(new_domain) from exc
        raise

    logger.info("workspace_domain_updated", workspace_id=workspace.id, custom_domain=new_domain)
    return workspace


def verify_custom_domain(
    domain: Optional[str],
    *,
    resolver: Optional[CnameResolver] = None,
) -> DomainVerificationResult:
    if not domain or not domain.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Domain is required")
    return verify_cname_target(normalize_domain(domain), resolver=resolver)


def trigger_republish(workspace: Workspace, *, client: Optional[DeployHookClient] = None) -> None:
    hook = client if client is not None else get_deploy_hook_client()
    hook.trigger()
    logger.info("workspace_republish_triggered", workspace_id=workspace.id)
