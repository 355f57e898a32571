"""Document authoring and the public publication gate."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.app.quota_service import check_document_quota, count_active_documents, is_at_or_over_limit
from src.auth.jwt import AuthContext
from src.billing.plans import ProductCatalog, resolve_plan_limits
from src.billing.subscription_status import can_create_documents
from src.core.logger import get_logger
from src.core.metrics import record_publication_gate
from src.core.slugs import is_valid_slug, normalize_slug, suffixed_slug
from src.storage.db import is_unique_violation
from src.storage.models import DOCUMENT_STATUSES, DOCUMENT_TYPES, Document, Workspace
from src.workspaces.service import get_owned_workspace


MAX_SLUG_SUFFIX_ATTEMPTS = 20

logger = get_logger("openpolicy.documents")


class DocumentNotFoundError(LookupError):
    """Uniform outcome for any public document that cannot be shown."""


class DocumentSlugConflictError(RuntimeError):
    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f"A document with slug '{slug}' already exists")


@dataclass(frozen=True)
class PublicDocument:
    workspace_id: str
    workspace_name: str
    workspace_slug: str
    workspace_logo: Optional[str]
    document_id: str
    slug: str
    title: str
    type: str
    content: Any
    published_at: Optional[datetime]
    updated_at: Optional[datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def is_publicly_visible(document: Document) -> bool:
    # Both flags must agree; either one alone never exposes a document.
    return document.status == "published" and document.published is True


def parse_document_content(raw: Optional[str]) -> Any:
    if raw is None:
        return ""
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def serialize_document_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, separators=(",", ":"), ensure_ascii=False)


def _slug_taken(session: Session, workspace_id: str, slug: str) -> bool:
    existing = session.scalar(
        select(Document.id)
        .where(Document.workspace_id == workspace_id, func.lower(Document.slug) == slug.lower())
        .limit(1)
    )
    return existing is not None


def make_unique_slug(session: Session, workspace_id: str, base: str) -> str:
    if not _slug_taken(session, workspace_id, base):
        return base
    for attempt in range(1, MAX_SLUG_SUFFIX_ATTEMPTS + 1):
        candidate = suffixed_slug(base, attempt)
        if not _slug_taken(session, workspace_id, candidate):
            return candidate
    return suffixed_slug(base, int(_now_utc().timestamp()))


def _apply_publication(document: Document, published: bool) -> None:
    now = _now_utc()
    if published:
        if not document.published or document.published_at is None:
            document.published_at = now
        document.status = "published"
        document.published = True
    else:
        document.published = False
        document.published_at = None
        if document.status == "published":
            document.status = "draft"
    document.updated_at = now


def create_document(
    session: Session,
    *,
    auth: AuthContext,
    workspace_id: str,
    title: Optional[str],
    content: Any = None,
    slug: Optional[str] = None,
    document_type: Optional[str] = None,
    document_status: Optional[str] = None,
    catalog: Optional[ProductCatalog] = None,
) -> Document:
    """Create a document after ownership, subscription and plan checks.

    Raises ``DocumentLimitReachedError`` when the plan is full and
    ``DocumentSlugConflictError`` when an explicit slug is taken or the
    insert hits the per-workspace slug constraint.
    """

    clean_title = (title or "").strip()
    if not clean_title:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")

    resolved_type = (document_type or "other").strip().lower()
    if resolved_type not in DOCUMENT_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid document type")
    resolved_status = (document_status or "draft").strip().lower()
    if resolved_status not in DOCUMENT_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid document status")

    workspace = get_owned_workspace(session, workspace_id, auth.user_id)
    if not can_create_documents(workspace):
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail="Subscription payment required")

    limits = resolve_plan_limits(workspace.plan, catalog=catalog)
    check_document_quota(session, workspace, limits)

    if slug and slug.strip():
        final_slug = normalize_slug(slug)
        if not is_valid_slug(final_slug):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid slug format")
        if _slug_taken(session, workspace.id, final_slug):
            raise DocumentSlugConflictError(final_slug)
    else:
        base = normalize_slug(clean_title) or "document"
        final_slug = make_unique_slug(session, workspace.id, base)

    document = Document(
        workspace_id=workspace.id,
        owner_id=auth.user_id,
        slug=final_slug,
        title=clean_title,
        content=serialize_document_content(content),
        type=resolved_type,
        status="draft",
        published=False,
        version=1,
    )
    if resolved_status == "published":
        _apply_publication(document, True)
    elif resolved_status == "archived":
        document.status = "archived"

    session.add(document)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if is_unique_violation(exc):
            raise DocumentSlugConflictError(final_slug) from exc
        raise

    logger.info("document_created", workspace_id=workspace.id, document_id=document.id, slug=final_slug)
    return document


def get_owned_document(session: Session, document_id: str, user_id: str) -> tuple[Document, Workspace]:
    document = session.get(Document, document_id)
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    workspace = get_owned_workspace(session, document.workspace_id, user_id)
    return document, workspace


def set_document_publication(
    session: Session,
    *,
    auth: AuthContext,
    document_id: str,
    published: bool,
) -> Document:
    document, workspace = get_owned_document(session, document_id, auth.user_id)
    if published and document.status == "archived":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Archived documents cannot be published")
    _apply_publication(document, published)
    session.commit()
    logger.info(
        "document_publication_changed",
        workspace_id=workspace.id,
        document_id=document.id,
        published=published,
    )
    return document


def update_document(
    session: Session,
    *,
    auth: AuthContext,
    document_id: str,
    title: Optional[str] = None,
    content: Any = None,
    document_status: Optional[str] = None,
    published: Optional[bool] = None,
    catalog: Optional[ProductCatalog] = None,
) -> Document:
    document, workspace = get_owned_document(session, document_id, auth.user_id)

    if title is not None:
        if not title.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
        document.title = title.strip()
    if content is not None:
        document.content = serialize_document_content(content)

    if document_status is not None:
        new_status = document_status.strip().lower()
        if new_status not in DOCUMENT_STATUSES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid document status")
        if document.status == "archived" and new_status != "archived":
            limits = resolve_plan_limits(workspace.plan, catalog=catalog)
            active = count_active_documents(session, workspace.id)
            if is_at_or_over_limit(active, limits.documents):
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail={
                        "error": "Plan limit reached",
                        "message": (
                            f"{limits.tier.capitalize()} plan is limited to {limits.documents} active documents. "
                            "Archive other documents first or upgrade to Pro."
                        ),
                    },
                )
        if new_status == "published":
            _apply_publication(document, True)
        elif new_status == "archived":
            _apply_publication(document, False)
            document.status = "archived"
        else:
            _apply_publication(document, False)
            document.status = new_status

    if published is not None and document_status is None:
        if published and document.status == "archived":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Archived documents cannot be published",
            )
        _apply_publication(document, published)

    document.updated_at = _now_utc()
    session.commit()
    return document


def delete_document(session: Session, *, auth: AuthContext, document_id: str) -> None:
    document, workspace = get_owned_document(session, document_id, auth.user_id)
    if document.status != "archived":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Can only delete archived documents")
    session.delete(document)
    session.commit()
    logger.info("document_deleted", workspace_id=workspace.id, document_id=document_id)


def list_workspace_documents(
    session: Session,
    *,
    auth: AuthContext,
    workspace_id: str,
    document_status: Optional[str] = None,
) -> List[Document]:
    workspace = get_owned_workspace(session, workspace_id, auth.user_id)
    statement = select(Document).where(Document.workspace_id == workspace.id)
    if document_status:
        statement = statement.where(Document.status == document_status)
    return list(session.scalars(statement.order_by(Document.updated_at.desc(), Document.id.asc())).all())


def _to_public(workspace: Workspace, document: Document) -> PublicDocument:
    return PublicDocument(
        workspace_id=workspace.id,
        workspace_name=workspace.name,
        workspace_slug=workspace.slug,
        workspace_logo=workspace.logo,
        document_id=document.id,
        slug=document.slug,
        title=document.title,
        type=document.type,
        content=parse_document_content(document.content),
        published_at=document.published_at,
        updated_at=document.updated_at,
    )


def resolve_public_document(session: Session, workspace_slug: str, document_slug: str) -> PublicDocument:
    """Resolve a document for anonymous readers, failing closed.

    Unknown workspace, unknown document, unpublished document and lookup
    errors all raise the same ``DocumentNotFoundError``.
    """

    try:
        workspace = session.scalar(select(Workspace).where(Workspace.slug == workspace_slug))
        if workspace is None:
            raise DocumentNotFoundError(workspace_slug)
        document = session.scalar(
            select(Document).where(Document.workspace_id == workspace.id, Document.slug == document_slug)
        )
        if document is None or not is_publicly_visible(document):
            raise DocumentNotFoundError(document_slug)
        public = _to_public(workspace, document)
    except DocumentNotFoundError:
        record_publication_gate(outcome="not_found")
        raise
    except Exception as exc:
        record_publication_gate(outcome="error")
        logger.warning(
            "public_document_lookup_failed",
            workspace_slug=workspace_slug,
            document_slug=document_slug,
            error_type=type(exc).__name__,
        )
        raise DocumentNotFoundError(document_slug) from exc

    record_publication_gate(outcome="served")
    return public


def list_published_documents(session: Session, workspace_slug: str) -> List[PublicDocument]:
    """Published documents of a workspace, with the same fail-closed outcome as single lookups."""

    try:
        workspace = session.scalar(select(Workspace).where(Workspace.slug == workspace_slug))
        if workspace is None:
            raise DocumentNotFoundError(workspace_slug)
        documents = session.scalars(
            select(Document)
            .where(
                Document.workspace_id == workspace.id,
                Document.status == "published",
                Document.published.is_(True),
            )
            .order_by(Document.title.asc())
        ).all()
        return [_to_public(workspace, document) for document in documents]
    except DocumentNotFoundError:
        raise
    except Exception as exc:
        record_publication_gate(outcome="error")
        logger.warning(
            "public_document_listing_failed",
            workspace_slug=workspace_slug,
            error_type=type(exc).__name__,
        )
        raise DocumentNotFoundError(workspace_slug) from exc
