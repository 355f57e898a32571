"""Document authoring and public read API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from src.app.quota_service import DocumentLimitReachedError
from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.core.logger import bind_workspace
from src.documents.service import (
    DocumentNotFoundError,
    DocumentSlugConflictError,
    PublicDocument,
    create_document,
    delete_document,
    list_published_documents,
    list_workspace_documents,
    parse_document_content,
    resolve_public_document,
    set_document_publication,
    update_document,
)
from src.schemas.document import (
    DocumentCreateRequest,
    DocumentListResponse,
    DocumentPublicationRequest,
    DocumentResponse,
    DocumentUpdateRequest,
    PublicDocumentListResponse,
    PublicDocumentResponse,
)
from src.storage.db import get_session
from src.storage.models import Document


router = APIRouter(prefix="/documents", tags=["documents"])
public_router = APIRouter(prefix="/public", tags=["public"])

PUBLIC_NOT_FOUND_DETAIL = "Document not found"


def _to_response(document: Document) -> DocumentResponse:
    return DocumentResponse(
        id=document.id,
        workspace_id=document.workspace_id,
        slug=document.slug,
        title=document.title,
        type=document.type,
        status=document.status,
        published=document.published,
        content=parse_document_content(document.content),
        published_at=document.published_at,
        updated_at=document.updated_at,
    )


def _to_public_response(document: PublicDocument) -> PublicDocumentResponse:
    return PublicDocumentResponse(
        workspace_name=document.workspace_name,
        workspace_slug=document.workspace_slug,
        workspace_logo=document.workspace_logo,
        slug=document.slug,
        title=document.title,
        type=document.type,
        content=document.content,
        published_at=document.published_at,
        updated_at=document.updated_at,
    )


@router.post("", response_model=DocumentResponse, status_code=201)
def create(
    payload: DocumentCreateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> DocumentResponse:
    bind_workspace(payload.workspace_id)
    try:
        document = create_document(
            session,
            auth=auth,
            workspace_id=payload.workspace_id,
            title=payload.title,
            content=payload.content,
            slug=payload.slug,
            document_type=payload.type,
            document_status=payload.status,
        )
    except DocumentLimitReachedError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Plan limit reached", "message": str(exc)},
        ) from exc
    except DocumentSlugConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_response(document)


@router.get("", response_model=DocumentListResponse)
def list_documents(
    workspace_id: str,
    status_filter: Optional[str] = None,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> DocumentListResponse:
    bind_workspace(workspace_id)
    items = list_workspace_documents(
        session,
        auth=auth,
        workspace_id=workspace_id,
        document_status=status_filter,
    )
    return DocumentListResponse(workspace_id=workspace_id, items=[_to_response(item) for item in items])


@router.patch("/{document_id}", response_model=DocumentResponse)
def update(
    document_id: str,
    payload: DocumentUpdateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> DocumentResponse:
    document = update_document(
        session,
        auth=auth,
        document_id=document_id,
        title=payload.title,
        content=payload.content,
        document_status=payload.status,
        published=payload.published,
    )
    return _to_response(document)


@router.put("/{document_id}/publication", response_model=DocumentResponse)
def publication(
    document_id: str,
    payload: DocumentPublicationRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> DocumentResponse:
    document = set_document_publication(session, auth=auth, document_id=document_id, published=payload.published)
    return _to_response(document)


@router.delete("/{document_id}", status_code=204)
def delete(
    document_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> Response:
    delete_document(session, auth=auth, document_id=document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@public_router.get("/{workspace_slug}", response_model=PublicDocumentListResponse)
def public_documents(
    workspace_slug: str,
    session: Session = Depends(get_session),
) -> PublicDocumentListResponse:
    try:
        items = list_published_documents(session, workspace_slug)
    except DocumentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=PUBLIC_NOT_FOUND_DETAIL) from exc
    return PublicDocumentListResponse(
        workspace_slug=workspace_slug,
        items=[_to_public_response(item) for item in items],
    )


@public_router.get("/{workspace_slug}/{document_slug}", response_model=PublicDocumentResponse)
def public_document(
    workspace_slug: str,
    document_slug: str,
    session: Session = Depends(get_session),
) -> PublicDocumentResponse:
    try:
        document = resolve_public_document(session, workspace_slug, document_slug)
    except DocumentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=PUBLIC_NOT_FOUND_DETAIL) from exc
    return _to_public_response(document)
