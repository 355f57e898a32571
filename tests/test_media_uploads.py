from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import urlsplit
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker

import src.api.main as api_main
from src.app import quota_service
from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.billing.plans import load_plans
from src.core.config import PROJECT_ROOT, get_settings
from src.media import storage as media_storage
from src.media.storage import resolve_object_path, sign_object_key, verify_object_signature
from src.storage.db import Base, get_session, load_models
from src.storage.models import Workspace


OWNER = AuthContext(user_id="owner-1", email="owner@acme.io")
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"0" * 592


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
def api(monkeypatch, tmp_path):
    plans_path = tmp_path / "plans.yaml"
    plans_path.write_text(
        "free:\n  documents: 3\n  storage_bytes: 1000\n  ai_requests: 0\n"
        "pro:\n  documents: -1\n  storage_bytes: 100000\n  ai_requests: 50\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("PLANS_FILE_PATH", str(plans_path))
    monkeypatch.setenv("MEDIA_STORAGE_PATH", str(tmp_path / "objects"))
    monkeypatch.setenv("SECRET_KEY", "media-test-secret-0123456789abcdef")
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "http://testserver")
    monkeypatch.setenv("MAX_UPLOAD_BYTES", "800")
    get_settings.cache_clear()
    load_plans.cache_clear()

    session_factory = _build_sqlite_session_factory()
    with session_factory() as session:
        workspace = Workspace(id=str(uuid.uuid4()), owner_id=OWNER.user_id, name="Acme", slug="acme", meta={})
        session.add(workspace)
        session.commit()
        workspace_id = workspace.id

    def override_get_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    api_main.app.dependency_overrides[get_session] = override_get_session
    api_main.app.dependency_overrides[require_auth_context] = lambda: OWNER
    try:
        yield TestClient(api_main.app), session_factory, workspace_id
    finally:
        api_main.app.dependency_overrides.clear()
        get_settings.cache_clear()
        load_plans.cache_clear()


def _upload(client: TestClient, workspace_id: str, content: bytes = PNG_BYTES, mime: str = "image/png"):
    return client.post(
        "/media/upload",
        data={"workspace_id": workspace_id},
        files={"file": ("logo.png", content, mime)},
    )


def test_upload_accounts_storage_and_enforces_limit(api) -> None:
    client, session_factory, workspace_id = api

    first = _upload(client, workspace_id)
    assert first.status_code == 200
    assert first.json()["size_bytes"] == len(PNG_BYTES)
    assert first.json()["storage_used_bytes"] == len(PNG_BYTES)

    second = _upload(client, workspace_id)
    assert second.status_code == 403
    assert second.json()["detail"] == "Storage limit exceeded"

    with session_factory() as session:
        assert session.get(Workspace, workspace_id).meta["storage_usage"] == len(PNG_BYTES)


def test_upload_rejects_bad_type_and_oversized_files(api) -> None:
    client, _, workspace_id = api

    assert _upload(client, workspace_id, content=b"%PDF-1.7", mime="application/pdf").status_code == 400
    assert _upload(client, workspace_id, content=b"0" * 900).status_code == 413


def test_private_upload_requires_valid_signature(api) -> None:
    client, _, workspace_id = api
    url = _upload(client, workspace_id).json()["url"]
    parts = urlsplit(url)

    served = client.get(f"{parts.path}?{parts.query}")
    assert served.status_code == 200
    assert served.content == PNG_BYTES

    assert client.get(parts.path).status_code == 404
    tampered = parts.query.replace("signature=", "signature=0")
    assert client.get(f"{parts.path}?{tampered}").status_code == 404


def test_logo_upload_is_public(api) -> None:
    client, session_factory, workspace_id = api

    response = client.post(f"/workspaces/{workspace_id}/logo", files={"file": ("logo.png", PNG_BYTES, "image/png")})

    assert response.status_code == 200
    logo_url = response.json()["logo"]
    assert logo_url.startswith("http://testserver/media/files/logos/")
    assert client.get(urlsplit(logo_url).path).status_code == 200
    with session_factory() as session:
        assert session.get(Workspace, workspace_id).logo == logo_url


def test_signature_expiry_and_path_traversal(api) -> None:
    now = datetime(2026, 10, 17, tzinfo=timezone.utc)
    expires = int((now + timedelta(minutes=5)).timestamp())
    signature = sign_object_key("uploads/ws/file.png", expires)

    assert verify_object_signature("uploads/ws/file.png", expires, signature, now=now) is True
    assert verify_object_signature("uploads/ws/other.png", expires, signature, now=now) is False
    assert verify_object_signature(
        "uploads/ws/file.png",
        expires,
        signature,
        now=now + timedelta(minutes=10),
    ) is False
    assert resolve_object_path("../../etc/passwd") is None


def test_upload_returns_409_when_usage_counters_keep_changing(api, monkeypatch) -> None:
    client, session_factory, workspace_id = api
    monkeypatch.setattr(quota_service, "write_usage_metadata", lambda *args: False)

    response = _upload(client, workspace_id)

    assert response.status_code == 409
    assert response.json()["detail"] == "Storage usage is busy, retry shortly"
    with session_factory() as session:
        assert "storage_usage" not in session.get(Workspace, workspace_id).meta


def test_relative_storage_path_is_anchored_at_project_root(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("MEDIA_STORAGE_PATH", "data/uploads")
    get_settings.cache_clear()
    monkeypatch.chdir(tmp_path)
    try:
        assert media_storage._storage_root() == PROJECT_ROOT / "data" / "uploads"
    finally:
        get_settings.cache_clear()
