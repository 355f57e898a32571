"""AI usage metering built on per-workspace counters in workspace metadata."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.app.quota_service import write_usage_metadata
from src.billing.plans import UNLIMITED, PlanLimits, ProductCatalog, resolve_plan_limits
from src.billing.polar_client import PolarClient, get_polar_client
from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.metrics import record_ai_usage_decision
from src.storage.models import Workspace


USAGE_COUNT_KEY = "ai_usage_count"
USAGE_PERIOD_KEY = "ai_usage_period"
AI_EVENT_KINDS = ("copilot_usage", "command_usage")

logger = get_logger("openpolicy.usage")


class AiUsageLimitExceededError(RuntimeError):
    """Raised when a workspace has no AI requests left in the current period."""

    def __init__(self, decision: UsageDecision):
        self.decision = decision
        super().__init__(
            f"AI usage limit reached (used={decision.used_before}, limit={decision.limit}, "
            f"period={decision.period})"
        )


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    workspace_id: Optional[str]
    tier: str
    limit: int
    used_before: int
    used_after: int
    period: Optional[str]
    reason: str

    @property
    def remaining(self) -> int:
        if self.limit == UNLIMITED:
            return -1
        return max(self.limit - self.used_after, 0)


@dataclass(frozen=True)
class AiUsageSummary:
    workspace_id: str
    tier: str
    period: str
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        if self.limit == UNLIMITED:
            return -1
        return max(self.limit - self.used, 0)


@dataclass(frozen=True)
class _UsageSnapshot:
    workspace_id: str
    revision: int
    metadata: Dict[str, Any]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _stored_count(metadata: Dict[str, Any]) -> int:
    try:
        return int(metadata.get(USAGE_COUNT_KEY) or 0)
    except (TypeError, ValueError):
        return 0


def current_period_key(workspace: Workspace, *, is_free: bool, now: Optional[datetime] = None) -> str:
    """Calendar month for free workspaces, subscription period end for paid ones."""

    if not is_free and workspace.subscription_current_period_end is not None:
        period_end = workspace.subscription_current_period_end
        if period_end.tzinfo is None:
            period_end = period_end.replace(tzinfo=timezone.utc)
        return period_end.astimezone(timezone.utc).isoformat()
    reference = now or _now_utc()
    return reference.strftime("%Y-%m")


def _load_owned_workspace(session: Session, owner_user_id: str, *, fresh: bool = True) -> Optional[Workspace]:
    statement = (
        select(Workspace)
        .where(Workspace.owner_id == owner_user_id)
        .order_by(Workspace.created_at.asc(), Workspace.id.asc())
        .limit(1)
    )
    if fresh:
        statement = statement.execution_options(populate_existing=True)
    return session.scalars(statement).first()


def check_ai_usage(
    session: Session,
    owner_user_id: str,
    *,
    catalog: Optional[ProductCatalog] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Return whether the owner's workspace may issue another AI request.

    Resets the counter on period rollover. Pair with ``increment_ai_usage``
    after the request completes; the two calls are separate read-modify-write
    cycles, so concurrent callers can overshoot the limit. ``consume_ai_usage``
    is the single-step variant.
    """

    workspace = _load_owned_workspace(session, owner_user_id)
    if workspace is None:
        return True

    limits = resolve_plan_limits(workspace.plan, catalog=catalog)
    period = current_period_key(workspace, is_free=limits.is_free, now=now)
    metadata = dict(workspace.meta or {})

    if metadata.get(USAGE_PERIOD_KEY) != period:
        workspace.meta = {**metadata, USAGE_PERIOD_KEY: period, USAGE_COUNT_KEY: 0}
        workspace.usage_revision = int(workspace.usage_revision or 0) + 1
        workspace.updated_at = _now_utc()
        session.commit()
        logger.info(
            "ai_usage_period_rollover",
            workspace_id=workspace.id,
            previous_period=metadata.get(USAGE_PERIOD_KEY),
            period=period,
        )
        return True

    if limits.ai_requests == UNLIMITED:
        return True
    return _stored_count(metadata) < limits.ai_requests


def increment_ai_usage(session: Session, owner_user_id: str) -> None:
    workspace = _load_owned_workspace(session, owner_user_id)
    if workspace is None:
        return

    metadata = dict(workspace.meta or {})
    workspace.meta = {**metadata, USAGE_COUNT_KEY: _stored_count(metadata) + 1}
    workspace.usage_revision = int(workspace.usage_revision or 0) + 1
    workspace.updated_at = _now_utc()
    session.commit()


def _decide(snapshot: _UsageSnapshot, limits: PlanLimits, period: str) -> tuple[UsageDecision, Dict[str, Any]]:
    metadata = snapshot.metadata
    if metadata.get(USAGE_PERIOD_KEY) != period:
        # A fresh period always admits the triggering request.
        used_before = 0
        allowed = True
        reason = "period_rollover"
    else:
        used_before = _stored_count(metadata)
        allowed = limits.ai_requests == UNLIMITED or used_before < limits.ai_requests
        reason = "within_limit" if allowed else "limit_reached"

    used_after = used_before + 1 if allowed else used_before
    decision = UsageDecision(
        allowed=allowed,
        workspace_id=snapshot.workspace_id,
        tier=limits.tier,
        limit=limits.ai_requests,
        used_before=used_before,
        used_after=used_after,
        period=period,
        reason=reason,
    )
    new_metadata = {**metadata, USAGE_PERIOD_KEY: period, USAGE_COUNT_KEY: used_after}
    return decision, new_metadata


def _apply_conditional_update(
    session: Session,
    snapshot: _UsageSnapshot,
    new_metadata: Dict[str, Any],
) -> bool:
    return write_usage_metadata(session, snapshot.workspace_id, snapshot.revision, new_metadata)


def _snapshot(workspace: Workspace) -> _UsageSnapshot:
    return _UsageSnapshot(
        workspace_id=workspace.id,
        revision=int(workspace.usage_revision or 0),
        metadata=dict(workspace.meta or {}),
    )


def consume_ai_usage(
    session: Session,
    owner_user_id: str,
    *,
    catalog: Optional[ProductCatalog] = None,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> UsageDecision:
    """Check the quota and count one AI request in a single conditional write.

    The write only lands when ``usage_revision`` is unchanged since the read,
    so concurrent callers cannot both take the last slot. A lost race re-reads
    and re-decides, up to ``max_attempts`` times.
    """

    attempts = max_attempts or get_settings().ai_usage_max_attempts
    workspace = _load_owned_workspace(session, owner_user_id, fresh=True)
    if workspace is None:
        decision = UsageDecision(
            allowed=True,
            workspace_id=None,
            tier="none",
            limit=UNLIMITED,
            used_before=0,
            used_after=0,
            period=None,
            reason="no_workspace",
        )
        record_ai_usage_decision(allowed=True, reason=decision.reason)
        return decision

    limits = resolve_plan_limits(workspace.plan, catalog=catalog)
    period = current_period_key(workspace, is_free=limits.is_free, now=now)

    for attempt in range(1, attempts + 1):
        snapshot = _snapshot(workspace)
        decision, new_metadata = _decide(snapshot, limits, period)
        if not decision.allowed:
            record_ai_usage_decision(allowed=False, reason=decision.reason)
            logger.info(
                "ai_usage_denied",
                workspace_id=snapshot.workspace_id,
                used=decision.used_before,
                limit=decision.limit,
                period=period,
            )
            return decision
        if _apply_conditional_update(session, snapshot, new_metadata):
            record_ai_usage_decision(allowed=True, reason=decision.reason)
            return decision

        logger.info("ai_usage_write_conflict", workspace_id=snapshot.workspace_id, attempt=attempt)
        refreshed = _load_owned_workspace(session, owner_user_id, fresh=True)
        if refreshed is None:  # pragma: no cover
            break
        workspace = refreshed

    decision = UsageDecision(
        allowed=False,
        workspace_id=workspace.id,
        tier=limits.tier,
        limit=limits.ai_requests,
        used_before=_stored_count(dict(workspace.meta or {})),
        used_after=_stored_count(dict(workspace.meta or {})),
        period=period,
        reason="contention",
    )
    record_ai_usage_decision(allowed=False, reason=decision.reason)
    logger.warning("ai_usage_contention_exhausted", workspace_id=workspace.id, attempts=attempts)
    return decision


def track_ai_usage(
    user_id: str,
    event_kind: str,
    token_count: Optional[int] = None,
    *,
    client: Optional[PolarClient] = None,
) -> bool:
    """Send a usage event to Polar. Telemetry only: failures never propagate."""

    event = {
        "name": event_kind,
        "external_customer_id": user_id,
        "metadata": {"source": "openpolicy_ai", "tokens": int(token_count or 0)},
    }
    try:
        resolved = client if client is not None else get_polar_client()
        resolved.ingest_events([event])
        return True
    except Exception as exc:
        logger.warning(
            "ai_usage_tracking_failed",
            user_id=user_id,
            event_kind=event_kind,
            error_type=type(exc).__name__,
            error=str(exc)[:200],
        )
        return False


def get_ai_usage_summary(
    workspace: Workspace,
    *,
    catalog: Optional[ProductCatalog] = None,
    now: Optional[datetime] = None,
) -> AiUsageSummary:
    limits = resolve_plan_limits(workspace.plan, catalog=catalog)
    period = current_period_key(workspace, is_free=limits.is_free, now=now)
    metadata = dict(workspace.meta or {})
    used = _stored_count(metadata) if metadata.get(USAGE_PERIOD_KEY) == period else 0
    return AiUsageSummary(
        workspace_id=workspace.id,
        tier=limits.tier,
        period=period,
        used=used,
        limit=limits.ai_requests,
    )
