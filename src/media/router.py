"""Upload and file-serving API routes."""

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from src.app.quota_service import StorageLimitExceededError, UsageWriteConflictError
from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.core.logger import bind_workspace
from src.core.metrics import record_upstream_error
from src.media.service import UploadRejectedError, update_workspace_logo, upload_workspace_file
from src.media.storage import ObjectStoreError, is_public_key, resolve_object_path, verify_object_signature
from src.schemas.media import LogoResponse, UploadResponse
from src.storage.db import get_session
from src.workspaces.service import get_owned_workspace


router = APIRouter(tags=["media"])

_UPLOAD_ERRORS = (StorageLimitExceededError, UsageWriteConflictError, UploadRejectedError, ObjectStoreError)


def _translate_upload_errors(exc: Exception) -> HTTPException:
    if isinstance(exc, StorageLimitExceededError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Storage limit exceeded")
    if isinstance(exc, UsageWriteConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Storage usage is busy, retry shortly")
    if isinstance(exc, UploadRejectedError):
        code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE if exc.too_large else status.HTTP_400_BAD_REQUEST
        return HTTPException(status_code=code, detail=str(exc))
    record_upstream_error(dependency="object_store")
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="File upload failed")


@router.post("/media/upload", response_model=UploadResponse)
async def upload_file(
    workspace_id: str = Form(...),
    file: UploadFile = File(...),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> UploadResponse:
    workspace = get_owned_workspace(session, workspace_id, auth.user_id)
    bind_workspace(workspace.id)
    content = await file.read()
    try:
        result = await asyncio.to_thread(
            upload_workspace_file,
            session,
            workspace,
            content=content,
            mime_type=file.content_type or "application/octet-stream",
        )
    except _UPLOAD_ERRORS as exc:
        raise _translate_upload_errors(exc) from exc

    return UploadResponse(
        workspace_id=result.workspace_id,
        key=result.key,
        url=result.url,
        size_bytes=result.size_bytes,
        storage_used_bytes=result.storage_used_bytes,
    )


@router.post("/workspaces/{workspace_id}/logo", response_model=LogoResponse)
async def upload_logo(
    workspace_id: str,
    file: UploadFile = File(...),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> LogoResponse:
    workspace = get_owned_workspace(session, workspace_id, auth.user_id)
    bind_workspace(workspace.id)
    content = await file.read()
    try:
        updated = await asyncio.to_thread(
            update_workspace_logo,
            session,
            workspace,
            content=content,
            mime_type=file.content_type or "application/octet-stream",
        )
    except _UPLOAD_ERRORS as exc:
        raise _translate_upload_errors(exc) from exc
    return LogoResponse(workspace_id=updated.id, logo=updated.logo or "")


@router.get("/media/files/{key:path}")
def serve_file(
    key: str,
    expires: Optional[int] = None,
    signature: Optional[str] = None,
):
    if not is_public_key(key):
        if expires is None or not signature or not verify_object_signature(key, expires, signature):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    path = resolve_object_path(key)
    if path is None or not path.exists() or not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return FileResponse(path, filename=path.name)
