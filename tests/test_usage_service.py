from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import Session, sessionmaker

from src.app.quota_service import STORAGE_USAGE_KEY, record_storage_usage
from src.app import usage_service
from src.app.usage_service import (
    USAGE_COUNT_KEY,
    USAGE_PERIOD_KEY,
    check_ai_usage,
    consume_ai_usage,
    current_period_key,
    get_ai_usage_summary,
    increment_ai_usage,
    track_ai_usage,
)
from src.billing.plans import load_plans
from src.core.config import get_settings
from src.storage.db import Base, load_models
from src.storage.models import Workspace


NOW = datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc)
OWNER = "user-usage"


class _PaidCatalog:
    def get_product(self, product_id: str) -> Dict[str, Any]:
        return {"id": product_id, "prices": [{"amount_type": "fixed", "price_amount": 1900}]}


@pytest.fixture(autouse=True)
def _plans(monkeypatch, tmp_path):
    plans_path = tmp_path / "plans.yaml"
    plans_path.write_text(
        "free:\n"
        "  documents: 3\n"
        "  storage_bytes: 1000\n"
        "  ai_requests: 3\n"
        "pro:\n"
        "  documents: -1\n"
        "  storage_bytes: 10000\n"
        "  ai_requests: 50\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("PLANS_FILE_PATH", str(plans_path))
    get_settings.cache_clear()
    load_plans.cache_clear()
    yield
    get_settings.cache_clear()
    load_plans.cache_clear()


def _build_session() -> Session:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    return factory()


def _workspace(session: Session, *, plan=None, meta=None, period_end=None) -> Workspace:
    workspace = Workspace(
        id=str(uuid.uuid4()),
        owner_id=OWNER,
        name="Usage Co",
        slug=f"usage-{uuid.uuid4().hex[:6]}",
        plan=plan,
        subscription_current_period_end=period_end,
        meta=dict(meta or {}),
    )
    session.add(workspace)
    session.commit()
    return workspace


def test_period_key_is_calendar_month_for_free_workspaces() -> None:
    workspace = Workspace(owner_id=OWNER, name="x", slug="x")
    assert current_period_key(workspace, is_free=True, now=NOW) == "2026-10"


def test_period_key_follows_subscription_period_end_for_paid_workspaces() -> None:
    period_end = datetime(2026, 11, 3, 0, 0, tzinfo=timezone.utc)
    workspace = Workspace(owner_id=OWNER, name="x", slug="x", subscription_current_period_end=period_end)

    assert current_period_key(workspace, is_free=False, now=NOW) == period_end.isoformat()
    assert current_period_key(Workspace(owner_id=OWNER, name="y", slug="y"), is_free=False, now=NOW) == "2026-10"


def test_consume_within_limit_counts_request() -> None:
    session = _build_session()
    try:
        workspace = _workspace(session, meta={USAGE_PERIOD_KEY: "2026-10", USAGE_COUNT_KEY: 2})

        decision = consume_ai_usage(session, OWNER, now=NOW)

        assert decision.allowed is True
        assert decision.reason == "within_limit"
        assert decision.used_after == 3
        assert decision.remaining == 0
        session.refresh(workspace)
        assert workspace.meta[USAGE_COUNT_KEY] == 3
        assert workspace.usage_revision == 1

        denied = consume_ai_usage(session, OWNER, now=NOW)
        assert denied.allowed is False
        assert denied.reason == "limit_reached"
        session.refresh(workspace)
        assert workspace.meta[USAGE_COUNT_KEY] == 3
    finally:
        session.close()


def test_period_rollover_resets_counter_and_admits_request() -> None:
    session = _build_session()
    try:
        workspace = _workspace(session, meta={USAGE_PERIOD_KEY: "2026-09", USAGE_COUNT_KEY: 3})

        decision = consume_ai_usage(session, OWNER, now=NOW)

        assert decision.allowed is True
        assert decision.reason == "period_rollover"
        session.refresh(workspace)
        assert workspace.meta[USAGE_PERIOD_KEY] == "2026-10"
        assert workspace.meta[USAGE_COUNT_KEY] == 1
    finally:
        session.close()


def test_rollover_admits_request_even_with_zero_allowance(monkeypatch) -> None:
    monkeypatch.setenv("PLANS_FILE_PATH", "config/plans.yaml")
    get_settings.cache_clear()
    load_plans.cache_clear()

    session = _build_session()
    try:
        _workspace(session, meta={USAGE_PERIOD_KEY: "2026-09", USAGE_COUNT_KEY: 0})

        first = consume_ai_usage(session, OWNER, now=NOW)
        second = consume_ai_usage(session, OWNER, now=NOW)

        assert first.allowed is True
        assert first.limit == 0
        assert second.allowed is False
    finally:
        session.close()


def test_paid_workspace_uses_paid_allowance() -> None:
    session = _build_session()
    try:
        period_end = datetime(2026, 11, 3, tzinfo=timezone.utc)
        _workspace(
            session,
            plan="prod_pro",
            period_end=period_end,
            meta={USAGE_PERIOD_KEY: period_end.isoformat(), USAGE_COUNT_KEY: 10},
        )

        decision = consume_ai_usage(session, OWNER, catalog=_PaidCatalog(), now=NOW)

        assert decision.allowed is True
        assert decision.tier == "pro"
        assert decision.remaining == 39
    finally:
        session.close()


def test_owner_without_workspace_is_allowed() -> None:
    session = _build_session()
    try:
        decision = consume_ai_usage(session, "nobody", now=NOW)
        assert decision.allowed is True
        assert decision.reason == "no_workspace"
        assert check_ai_usage(session, "nobody", now=NOW) is True
    finally:
        session.close()


def test_check_ai_usage_allows_below_limit_and_denies_at_limit() -> None:
    session = _build_session()
    try:
        workspace = _workspace(session, meta={USAGE_PERIOD_KEY: "2026-10", USAGE_COUNT_KEY: 2})

        assert check_ai_usage(session, OWNER, now=NOW) is True
        increment_ai_usage(session, OWNER)
        session.refresh(workspace)
        assert workspace.meta[USAGE_COUNT_KEY] == 3

        assert check_ai_usage(session, OWNER, now=NOW) is False
        session.refresh(workspace)
        assert workspace.meta[USAGE_COUNT_KEY] == 3
    finally:
        session.close()


def test_check_ai_usage_resets_stale_period_and_allows() -> None:
    session = _build_session()
    try:
        workspace = _workspace(session, meta={USAGE_PERIOD_KEY: "2026-08", USAGE_COUNT_KEY: 7})

        assert check_ai_usage(session, OWNER, now=NOW) is True

        session.refresh(workspace)
        assert workspace.meta[USAGE_PERIOD_KEY] == "2026-10"
        assert workspace.meta[USAGE_COUNT_KEY] == 0
        assert workspace.usage_revision == 1

        increment_ai_usage(session, OWNER)
        session.refresh(workspace)
        assert workspace.meta[USAGE_COUNT_KEY] == 1
    finally:
        session.close()


def test_increment_ai_usage_without_workspace_is_a_no_op() -> None:
    session = _build_session()
    try:
        increment_ai_usage(session, "nobody")
        assert session.query(Workspace).count() == 0
    finally:
        session.close()

def _file_sessions(tmp_path) -> tuple[Session, Session]:
    load_models()
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'usage.db'}", future=True)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    return factory(), factory()


def test_two_step_check_then_increment_overshoots_under_concurrency(tmp_path) -> None:
    first, second = _file_sessions(tmp_path)
    try:
        workspace = _workspace(first, meta={USAGE_PERIOD_KEY: "2026-10", USAGE_COUNT_KEY: 2})

        assert check_ai_usage(first, OWNER, now=NOW) is True
        assert check_ai_usage(second, OWNER, now=NOW) is True
        increment_ai_usage(first, OWNER)
        increment_ai_usage(second, OWNER)

        first.expire_all()
        stored = first.get(Workspace, workspace.id)
        assert stored.meta[USAGE_COUNT_KEY] == 4
    finally:
        first.close()
        second.close()


def test_conditional_consume_admits_only_one_of_two_racing_requests(tmp_path, monkeypatch) -> None:
    first, second = _file_sessions(tmp_path)
    try:
        workspace = _workspace(first, meta={USAGE_PERIOD_KEY: "2026-10", USAGE_COUNT_KEY: 2})

        original_update = usage_service._apply_conditional_update
        racing: Dict[str, Any] = {}

        def interleaved_update(session, snapshot, new_metadata):
            if session is first and "other" not in racing:
                # The competing request lands between this request's read and write.
                racing["other"] = consume_ai_usage(second, OWNER, now=NOW)
            return original_update(session, snapshot, new_metadata)

        monkeypatch.setattr(usage_service, "_apply_conditional_update", interleaved_update)

        decision = consume_ai_usage(first, OWNER, now=NOW)

        assert racing["other"].allowed is True
        assert decision.allowed is False
        assert decision.reason == "limit_reached"

        first.expire_all()
        stored = first.get(Workspace, workspace.id)
        assert stored.meta[USAGE_COUNT_KEY] == 3
        assert stored.usage_revision == 1
    finally:
        first.close()
        second.close()


def test_upload_accounting_keeps_ai_count_written_after_workspace_load(tmp_path) -> None:
    upload_session, ai_session = _file_sessions(tmp_path)
    try:
        workspace = _workspace(upload_session, meta={USAGE_PERIOD_KEY: "2026-10", USAGE_COUNT_KEY: 2})
        loaded_for_upload = upload_session.get(Workspace, workspace.id)

        assert consume_ai_usage(ai_session, OWNER, now=NOW).allowed is True
        assert record_storage_usage(upload_session, loaded_for_upload, 100) == 100

        upload_session.expire_all()
        stored = upload_session.get(Workspace, workspace.id)
        assert stored.meta[USAGE_COUNT_KEY] == 3
        assert stored.meta[STORAGE_USAGE_KEY] == 100
        assert stored.usage_revision == 2

        fourth = consume_ai_usage(ai_session, OWNER, now=NOW)
        assert fourth.allowed is False
        assert fourth.reason == "limit_reached"
    finally:
        upload_session.close()
        ai_session.close()


def test_ai_count_write_keeps_storage_recorded_by_concurrent_upload(tmp_path, monkeypatch) -> None:
    ai_session, upload_session = _file_sessions(tmp_path)
    try:
        workspace = _workspace(ai_session, meta={USAGE_PERIOD_KEY: "2026-10", USAGE_COUNT_KEY: 0})

        original_update = usage_service._apply_conditional_update
        uploads = []

        def upload_lands_first(session, snapshot, new_metadata):
            if not uploads:
                uploads.append(record_storage_usage(upload_session, upload_session.get(Workspace, workspace.id), 250))
            return original_update(session, snapshot, new_metadata)

        monkeypatch.setattr(usage_service, "_apply_conditional_update", upload_lands_first)

        decision = consume_ai_usage(ai_session, OWNER, now=NOW)

        assert decision.allowed is True
        assert uploads == [250]
        ai_session.expire_all()
        stored = ai_session.get(Workspace, workspace.id)
        assert stored.meta[USAGE_COUNT_KEY] == 1
        assert stored.meta[STORAGE_USAGE_KEY] == 250
        assert stored.usage_revision == 2
    finally:
        ai_session.close()
        upload_session.close()

def test_contention_exhaustion_denies_request(monkeypatch) -> None:
    session = _build_session()
    try:
        _workspace(session, meta={USAGE_PERIOD_KEY: "2026-10", USAGE_COUNT_KEY: 0})

        def always_conflict(session, snapshot, new_metadata):  # noqa: ARG001
            return False

        monkeypatch.setattr(usage_service, "_apply_conditional_update", always_conflict)

        decision = consume_ai_usage(session, OWNER, now=NOW, max_attempts=2)

        assert decision.allowed is False
        assert decision.reason == "contention"
    finally:
        session.close()


def test_usage_summary_ignores_stale_period() -> None:
    session = _build_session()
    try:
        workspace = _workspace(session, meta={USAGE_PERIOD_KEY: "2026-09", USAGE_COUNT_KEY: 3})

        summary = get_ai_usage_summary(workspace, now=NOW)

        assert summary.period == "2026-10"
        assert summary.used == 0
        assert summary.remaining == 3
    finally:
        session.close()


def test_track_ai_usage_sends_event_and_swallows_failures() -> None:
    class _Recorder:
        def __init__(self) -> None:
            self.events = []

        def ingest_events(self, events):
            self.events.extend(events)

    class _Failing:
        def ingest_events(self, events):  # noqa: ARG002
            raise RuntimeError("polar down")

    recorder = _Recorder()
    assert track_ai_usage("user-1", "copilot_usage", 42, client=recorder) is True
    assert recorder.events == [
        {
            "name": "copilot_usage",
            "external_customer_id": "user-1",
            "metadata": {"source": "openpolicy_ai", "tokens": 42},
        }
    ]
    assert track_ai_usage("user-1", "command_usage", client=_Failing()) is False
