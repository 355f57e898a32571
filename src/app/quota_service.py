"""Document-count and storage-byte quota checks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from src.billing.plans import UNLIMITED, PlanLimits
from src.core.logger import get_logger
from src.storage.models import Document, Workspace


STORAGE_USAGE_KEY = "storage_usage"
STORAGE_WARNING_RATIO = 0.9
USAGE_WRITE_ATTEMPTS = 10

logger = get_logger("openpolicy.quota")


class DocumentLimitReachedError(RuntimeError):
    def __init__(self, *, tier: str, limit: int, current: int) -> None:
        self.tier = tier
        self.limit = limit
        self.current = current
        upgrade = " Please upgrade to Pro for unlimited documents." if tier == "free" else ""
        super().__init__(f"{tier.capitalize()} plan is limited to {limit} documents.{upgrade}")


class StorageLimitExceededError(RuntimeError):
    def __init__(self, *, limit: int, used: int, requested: int) -> None:
        self.limit = limit
        self.used = used
        self.requested = requested
        super().__init__("Storage limit exceeded")


class UsageWriteConflictError(RuntimeError):
    def __init__(self, workspace_id: str, attempts: int) -> None:
        self.workspace_id = workspace_id
        self.attempts = attempts
        super().__init__(f"Usage counters for workspace {workspace_id} kept changing after {attempts} attempts")


@dataclass(frozen=True)
class QuotaReport:
    tier: str
    document_count: int
    document_limit: int
    storage_used_bytes: int
    storage_limit_bytes: int
    documents_at_limit: bool
    storage_at_limit: bool
    storage_warning: bool


def is_at_or_over_limit(current: int, limit: int) -> bool:
    if limit == UNLIMITED:
        return False
    return current >= limit


def should_warn_storage(used_bytes: int, limit_bytes: int) -> bool:
    if limit_bytes == UNLIMITED:
        return False
    if limit_bytes <= 0:
        return True
    return used_bytes / limit_bytes >= STORAGE_WARNING_RATIO


def count_active_documents(session: Session, workspace_id: str) -> int:
    # Archived documents do not count toward the plan.
    statement = select(func.count(Document.id)).where(
        Document.workspace_id == workspace_id,
        Document.status != "archived",
    )
    return int(session.scalar(statement) or 0)


def get_storage_usage(workspace: Workspace) -> int:
    try:
        return int((workspace.meta or {}).get(STORAGE_USAGE_KEY) or 0)
    except (TypeError, ValueError):
        return 0


def check_document_quota(session: Session, workspace: Workspace, limits: PlanLimits) -> int:
    """Raise when the workspace cannot hold another document; return the current count."""

    if limits.documents == UNLIMITED:
        return count_active_documents(session, workspace.id)
    current = count_active_documents(session, workspace.id)
    if is_at_or_over_limit(current, limits.documents):
        raise DocumentLimitReachedError(tier=limits.tier, limit=limits.documents, current=current)
    return current


def check_storage_quota(workspace: Workspace, limits: PlanLimits, incoming_bytes: int) -> int:
    if incoming_bytes < 0:
        raise ValueError("incoming_bytes must be zero or positive")
    used = get_storage_usage(workspace)
    if limits.storage_bytes != UNLIMITED and used + incoming_bytes > limits.storage_bytes:
        raise StorageLimitExceededError(limit=limits.storage_bytes, used=used, requested=incoming_bytes)
    return used


def write_usage_metadata(
    session: Session,
    workspace_id: str,
    revision: int,
    metadata: Dict[str, Any],
) -> bool:
    """Replace the usage metadata only if ``usage_revision`` still equals ``revision``.

    Every usage counter (AI requests, storage bytes) lives in the same
    metadata map, so all writers go through this guard.
    """

    result = session.execute(
        update(Workspace)
        .where(
            Workspace.id == workspace_id,
            Workspace.usage_revision == revision,
        )
        .values(
            {
                Workspace.meta: metadata,
                Workspace.usage_revision: revision + 1,
                Workspace.updated_at: datetime.now(timezone.utc),
            }
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        return False
    session.commit()
    return True


def _reload_workspace(session: Session, workspace_id: str) -> Workspace:
    statement = select(Workspace).where(Workspace.id == workspace_id).execution_options(populate_existing=True)
    return session.scalars(statement).one()


def record_storage_usage(
    session: Session,
    workspace: Workspace,
    added_bytes: int,
    *,
    max_attempts: int = USAGE_WRITE_ATTEMPTS,
) -> int:
    """Add ``added_bytes`` to the stored byte count and return the new total.

    Each attempt re-reads the row, so counters written by other requests
    since ``workspace`` was loaded are carried over rather than overwritten.
    """

    for attempt in range(1, max_attempts + 1):
        current = _reload_workspace(session, workspace.id)
        revision = int(current.usage_revision or 0)
        used = get_storage_usage(current) + max(added_bytes, 0)
        new_metadata = {**dict(current.meta or {}), STORAGE_USAGE_KEY: used}
        if write_usage_metadata(session, current.id, revision, new_metadata):
            set_committed_value(current, "meta", new_metadata)
            set_committed_value(current, "usage_revision", revision + 1)
            return used
        logger.info("storage_usage_write_conflict", workspace_id=workspace.id, attempt=attempt)

    logger.warning("storage_usage_contention_exhausted", workspace_id=workspace.id, attempts=max_attempts)
    raise UsageWriteConflictError(workspace.id, max_attempts)


def build_quota_report(
    session: Session,
    workspace: Workspace,
    limits: PlanLimits,
    *,
    document_count: Optional[int] = None,
) -> QuotaReport:
    documents = document_count if document_count is not None else count_active_documents(session, workspace.id)
    storage_used = get_storage_usage(workspace)
    return QuotaReport(
        tier=limits.tier,
        document_count=documents,
        document_limit=limits.documents,
        storage_used_bytes=storage_used,
        storage_limit_bytes=limits.storage_bytes,
        documents_at_limit=is_at_or_over_limit(documents, limits.documents),
        storage_at_limit=is_at_or_over_limit(storage_used, limits.storage_bytes),
        storage_warning=should_warn_storage(storage_used, limits.storage_bytes),
    )
