from __future__ import annotations

import uuid

import dns.resolver
import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker

import src.api.main as api_main
from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.billing.plans import load_plans
from src.core.config import get_settings
from src.integrations.deploy import DeployHookClient
from src.integrations.dns import cname_verifier
from src.storage.db import Base, get_session, load_models
from src.storage.models import PendingWorkspace, Workspace
from src.workspaces import service as workspace_service
from src.workspaces.service import (
    FINALIZE_CONFLICT,
    FINALIZE_CREATED,
    FINALIZE_DUPLICATE,
    FINALIZE_NOT_FOUND,
    DomainConflictError,
    finalize_pending_workspace,
    update_custom_domain,
    verify_custom_domain,
)


OWNER = AuthContext(user_id="owner-1", email="owner@acme.io")


def _build_sqlite_session_factory():
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture()
def api(monkeypatch):
    monkeypatch.setenv("PLANS_FILE_PATH", "config/plans.yaml")
    get_settings.cache_clear()
    load_plans.cache_clear()

    session_factory = _build_sqlite_session_factory()

    def override_get_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    api_main.app.dependency_overrides[get_session] = override_get_session
    api_main.app.dependency_overrides[require_auth_context] = lambda: OWNER
    try:
        yield TestClient(api_main.app), session_factory
    finally:
        api_main.app.dependency_overrides.clear()
        get_settings.cache_clear()
        load_plans.cache_clear()


def _add_workspace(session, *, slug: str, owner_id: str = OWNER.user_id, name: str = "Acme", **fields) -> Workspace:
    workspace = Workspace(id=str(uuid.uuid4()), owner_id=owner_id, name=name, slug=slug, meta={}, **fields)
    session.add(workspace)
    session.commit()
    return workspace


class _StaticResolver:
    def __init__(self, targets=None, error=None) -> None:
        self._targets = targets or []
        self._error = error

    def resolve_cname(self, hostname):  # noqa: ARG002
        if self._error is not None:
            raise self._error
        return list(self._targets)


def test_slug_availability_checks_live_and_pending_case_insensitively(api) -> None:
    client, session_factory = api
    session = session_factory()
    try:
        _add_workspace(session, slug="acme")
        session.add(PendingWorkspace(owner_id="owner-2", name="Beta", slug="beta", meta={}))
        session.commit()
    finally:
        session.close()

    assert client.get("/workspaces/check-slug", params={"slug": "ACME"}).json()["available"] is False
    assert client.get("/workspaces/check-slug", params={"slug": "Beta"}).json()["available"] is False
    assert client.get("/workspaces/check-slug", params={"slug": "gamma"}).json()["available"] is True
    assert client.get("/workspaces/check-slug").status_code == 400
    assert client.get("/workspaces/check-slug", params={"slug": "  "}).status_code == 400


def test_create_pending_workspace_rejects_owner_mismatch(api) -> None:
    client, _ = api

    response = client.post("/workspaces/pending", json={"owner_id": "someone-else", "name": "Acme"})

    assert response.status_code == 403
    assert response.json()["detail"] == "Unauthorized: Owner ID mismatch"


def test_create_pending_workspace_normalizes_slug(api) -> None:
    client, session_factory = api

    response = client.post(
        "/workspaces/pending",
        json={"owner_id": OWNER.user_id, "name": "My Shop", "slug": "My Shop", "plan": "prod_pro"},
    )

    assert response.status_code == 201
    assert response.json()["slug"] == "my-shop"
    session = session_factory()
    try:
        pending = session.get(PendingWorkspace, response.json()["id"])
        assert pending.customer_external_id == OWNER.user_id
    finally:
        session.close()


def test_finalize_creates_workspace_and_consumes_pending_row() -> None:
    session = _build_sqlite_session_factory()()
    try:
        pending = PendingWorkspace(
            owner_id=OWNER.user_id,
            name="Acme Store",
            plan="prod_pro",
            customer_external_id=OWNER.user_id,
            meta={},
        )
        session.add(pending)
        session.commit()

        result = finalize_pending_workspace(session, customer_external_id=OWNER.user_id)

        assert result.status == FINALIZE_CREATED
        workspace = session.get(Workspace, result.workspace_id)
        assert workspace.slug == "acme-store"
        assert workspace.plan == "prod_pro"
        assert session.scalars(select(PendingWorkspace)).all() == []

        again = finalize_pending_workspace(session, customer_external_id=OWNER.user_id)
        assert again.status == FINALIZE_NOT_FOUND
    finally:
        session.close()


def test_finalize_matches_checkout_metadata_and_reports_duplicates() -> None:
    session = _build_sqlite_session_factory()()
    try:
        _add_workspace(session, slug="acme", name="Acme")
        session.add(PendingWorkspace(owner_id=OWNER.user_id, name="acme", meta={"email": "owner@acme.io"}))
        session.commit()

        result = finalize_pending_workspace(session, customer_email="owner@acme.io")

        assert result.status == FINALIZE_DUPLICATE
        assert session.scalars(select(PendingWorkspace)).all() == []
    finally:
        session.close()


def test_finalize_falls_back_to_name_when_checkout_slug_is_unusable() -> None:
    session = _build_sqlite_session_factory()()
    try:
        session.add(PendingWorkspace(owner_id=OWNER.user_id, name="Bright Shop", meta={"slug": "!!!"}))
        session.add(PendingWorkspace(owner_id="owner-3", name="###", slug="  ~~  ", meta={}))
        session.commit()

        first = finalize_pending_workspace(session, customer_external_id=OWNER.user_id)
        second = finalize_pending_workspace(session, customer_external_id="owner-3")

        assert first.status == FINALIZE_CREATED
        assert session.get(Workspace, first.workspace_id).slug == "bright-shop"
        assert second.status == FINALIZE_CREATED
        assert session.get(Workspace, second.workspace_id).slug == "workspace"
    finally:
        session.close()

def test_finalize_reports_slug_conflict_without_partial_state() -> None:
    session = _build_sqlite_session_factory()()
    try:
        _add_workspace(session, slug="acme", owner_id="owner-2", name="Other")
        pending = PendingWorkspace(owner_id=OWNER.user_id, name="Mine", slug="acme", meta={})
        session.add(pending)
        session.commit()
        pending_id = pending.id

        result = finalize_pending_workspace(session, pending_workspace_id=pending_id)

        assert result.status == FINALIZE_CONFLICT
        assert session.scalars(select(Workspace).where(Workspace.owner_id == OWNER.user_id)).all() == []
        remaining = session.get(PendingWorkspace, pending_id)
        assert remaining.meta["finalized_error"] == "slug_conflict"
    finally:
        session.close()


def test_custom_domain_conflict_is_reported(api) -> None:
    client, session_factory = api
    session = session_factory()
    try:
        _add_workspace(session, slug="other", owner_id="owner-2", custom_domain="legal.acme.io")
        mine = _add_workspace(session, slug="acme")
        mine_id = mine.id
    finally:
        session.close()

    conflict = client.put(f"/workspaces/{mine_id}/domain", json={"domain": "https://Legal.Acme.io/"})
    assert conflict.status_code == 409

    invalid = client.put(f"/workspaces/{mine_id}/domain", json={"domain": "not a domain"})
    assert invalid.status_code == 400

    updated = client.put(f"/workspaces/{mine_id}/domain", json={"domain": "policies.acme.io"})
    assert updated.status_code == 200
    assert updated.json()["custom_domain"] == "policies.acme.io"

    cleared = client.put(f"/workspaces/{mine_id}/domain", json={"domain": None})
    assert cleared.json()["custom_domain"] is None


def test_custom_domain_conflict_detected_at_write_time() -> None:
    session = _build_sqlite_session_factory()()
    try:
        _add_workspace(session, slug="other", owner_id="owner-2", custom_domain="legal.acme.io")
        mine = _add_workspace(session, slug="acme")

        # A concurrent claim that the pre-check does not see.
        session.scalar = lambda *args, **kwargs: None

        with pytest.raises(DomainConflictError):
            update_custom_domain(session, mine, "legal.acme.io")
    finally:
        session.close()


def test_verify_custom_domain_with_resolver() -> None:
    matching = verify_custom_domain(
        "policies.acme.io",
        resolver=_StaticResolver(targets=["CNAME.openpolicyhq.com."]),
    )
    assert matching.valid is True
    assert matching.message == "Domain is valid"

    wrong = verify_custom_domain("policies.acme.io", resolver=_StaticResolver(targets=["elsewhere.net"]))
    assert wrong.valid is False
    assert wrong.message == "Domain CNAME does not point to cname.openpolicyhq.com"

    missing = verify_custom_domain("policies.acme.io", resolver=_StaticResolver(error=dns.resolver.NXDOMAIN()))
    assert missing.valid is False
    assert missing.message == "Could not verify domain configuration. Please check your DNS settings."


def test_verify_domain_endpoint(api, monkeypatch) -> None:
    client, _ = api
    monkeypatch.setattr(
        cname_verifier,
        "get_cname_resolver",
        lambda: _StaticResolver(targets=["cname.openpolicyhq.com"]),
    )

    assert client.post("/workspaces/verify-domain", json={"domain": "policies.acme.io"}).json() == {
        "valid": True,
        "message": "Domain is valid",
    }
    assert client.post("/workspaces/verify-domain", json={}).status_code == 400


def test_republish_maps_deploy_hook_outcomes(api, monkeypatch) -> None:
    client, session_factory = api
    session = session_factory()
    try:
        workspace_id = _add_workspace(session, slug="acme").id
    finally:
        session.close()

    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(200 if len(calls) == 1 else 500)

    hook = DeployHookClient(
        hook_url="https://deploy.example/hook",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    monkeypatch.setattr(workspace_service, "get_deploy_hook_client", lambda: hook)

    assert client.post(f"/workspaces/{workspace_id}/republish").json() == {"triggered": True}
    assert client.post(f"/workspaces/{workspace_id}/republish").status_code == 502

    monkeypatch.setattr(workspace_service, "get_deploy_hook_client", lambda: DeployHookClient(hook_url=""))
    missing = client.post(f"/workspaces/{workspace_id}/republish")
    assert missing.status_code == 500
    assert missing.json()["detail"] == "Deploy hook not configured"


def test_latest_workspace_and_quota(api) -> None:
    client, session_factory = api

    assert client.get("/workspaces/latest").json() == {"workspace": None}

    session = session_factory()
    try:
        workspace_id = _add_workspace(session, slug="acme").id
        _add_workspace(session, slug="foreign", owner_id="owner-2")
    finally:
        session.close()

    latest = client.get("/workspaces/latest").json()["workspace"]
    assert latest["id"] == workspace_id
    assert latest["subscription_state"] == "active"

    quota = client.get(f"/workspaces/{workspace_id}/quota").json()
    assert quota["tier"] == "free"
    assert quota["document_limit"] == 3
    assert quota["document_count"] == 0
    assert quota["ai_limit"] == 0
    assert quota["ai_remaining"] == 0


def test_workspace_access_is_owner_scoped(api) -> None:
    client, session_factory = api
    session = session_factory()
    try:
        foreign_id = _add_workspace(session, slug="foreign", owner_id="owner-2").id
    finally:
        session.close()

    assert client.get(f"/workspaces/{foreign_id}").status_code == 403
    assert client.get(f"/workspaces/{uuid.uuid4()}").status_code == 404
