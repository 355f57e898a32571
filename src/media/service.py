"""Upload services: storage quota accounting and workspace logos."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from src.app.quota_service import check_storage_quota, record_storage_usage
from src.billing.plans import ProductCatalog, resolve_plan_limits
from src.core.config import get_settings
from src.core.logger import get_logger
from src.media.storage import MIME_EXTENSIONS, ObjectStore, get_object_store
from src.storage.models import Workspace


logger = get_logger("openpolicy.media")


class UploadRejectedError(ValueError):
    def __init__(self, message: str, *, too_large: bool = False) -> None:
        self.too_large = too_large
        super().__init__(message)


@dataclass(frozen=True)
class UploadResult:
    workspace_id: str
    key: str
    url: str
    size_bytes: int
    storage_used_bytes: int


def _validate_upload(content: bytes, mime_type: str) -> None:
    if not content:
        raise UploadRejectedError("Uploaded file is empty")
    if mime_type.strip().lower() not in MIME_EXTENSIONS:
        raise UploadRejectedError(f"Unsupported file type: {mime_type}")
    max_bytes = get_settings().max_upload_bytes
    if len(content) > max_bytes:
        raise UploadRejectedError(f"File exceeds the {max_bytes} byte upload limit", too_large=True)


def upload_workspace_file(
    session: Session,
    workspace: Workspace,
    *,
    content: bytes,
    mime_type: str,
    public: bool = False,
    store: Optional[ObjectStore] = None,
    catalog: Optional[ProductCatalog] = None,
) -> UploadResult:
    """Store an upload after checking it fits the plan's storage allowance.

    Raises ``StorageLimitExceededError`` before anything is written when the
    upload would push usage past the limit.
    """

    _validate_upload(content, mime_type)
    limits = resolve_plan_limits(workspace.plan, catalog=catalog)
    check_storage_quota(workspace, limits, len(content))

    active_store = store if store is not None else get_object_store()
    stored = active_store.put(
        workspace_id=workspace.id,
        content=content,
        mime_type=mime_type,
        public=public,
    )
    used = record_storage_usage(session, workspace, stored.size_bytes)
    logger.info(
        "workspace_upload_stored",
        workspace_id=workspace.id,
        key=stored.key,
        size_bytes=stored.size_bytes,
        storage_used_bytes=used,
    )
    return UploadResult(
        workspace_id=workspace.id,
        key=stored.key,
        url=stored.public_url if public else (stored.signed_url or stored.public_url),
        size_bytes=stored.size_bytes,
        storage_used_bytes=used,
    )


def update_workspace_logo(
    session: Session,
    workspace: Workspace,
    *,
    content: bytes,
    mime_type: str,
    store: Optional[ObjectStore] = None,
    catalog: Optional[ProductCatalog] = None,
) -> Workspace:
    result = upload_workspace_file(
        session,
        workspace,
        content=content,
        mime_type=mime_type,
        public=True,
        store=store,
        catalog=catalog,
    )
    workspace.logo = result.url
    workspace.logo_path = result.key
    workspace.updated_at = datetime.now(timezone.utc)
    session.commit()
    return workspace
