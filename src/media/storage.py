"""Filesystem object store for workspace uploads with signed URL support."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urlencode
import uuid

from src.core.config import PROJECT_ROOT, get_settings


PUBLIC_PREFIX = "logos"
PRIVATE_PREFIX = "uploads"

MIME_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/svg+xml": ".svg",
}


class ObjectStoreError(RuntimeError):
    """Raised when an object cannot be written to or read from the store."""


@dataclass(frozen=True)
class StoredObject:
    key: str
    size_bytes: int
    sha256: str
    public_url: str
    signed_url: Optional[str] = None


class ObjectStore(Protocol):
    def put(self, *, workspace_id: str, content: bytes, mime_type: str, public: bool) -> StoredObject:
        raise NotImplementedError


def _storage_root() -> Path:
    configured = Path(get_settings().media_storage_path)
    if configured.is_absolute():
        return configured
    return PROJECT_ROOT / configured


def _base_url() -> str:
    return get_settings().app_public_base_url.strip().rstrip("/")


def sign_object_key(key: str, expires: int, *, secret: Optional[str] = None) -> str:
    signing_key = (secret if secret is not None else get_settings().secret_key).encode("utf-8")
    message = f"{key}:{expires}".encode("utf-8")
    return hmac.new(signing_key, message, digestmod=hashlib.sha256).hexdigest()


def verify_object_signature(
    key: str,
    expires: int,
    signature: str,
    *,
    now: Optional[datetime] = None,
    secret: Optional[str] = None,
) -> bool:
    current = int((now or datetime.now(timezone.utc)).timestamp())
    if expires < current:
        return False
    return hmac.compare_digest(sign_object_key(key, expires, secret=secret), signature)


def build_public_url(key: str) -> str:
    return f"{_base_url()}/media/files/{key}"


def build_signed_url(key: str, *, expires_in_seconds: Optional[int] = None, now: Optional[datetime] = None) -> str:
    ttl = expires_in_seconds if expires_in_seconds is not None else get_settings().signed_url_expiry_seconds
    expires = int((now or datetime.now(timezone.utc)).timestamp()) + ttl
    query = urlencode({"expires": expires, "signature": sign_object_key(key, expires)})
    return f"{build_public_url(key)}?{query}"


def is_public_key(key: str) -> bool:
    return key.startswith(f"{PUBLIC_PREFIX}/")


def resolve_object_path(key: str) -> Optional[Path]:
    root = _storage_root().resolve()
    candidate = (root / key).resolve()
    if root not in candidate.parents:
        return None
    return candidate


class LocalObjectStore:
    def __init__(self, root: Optional[Path] = None) -> None:
        self._root = root

    def _root_path(self) -> Path:
        return self._root if self._root is not None else _storage_root()

    def put(self, *, workspace_id: str, content: bytes, mime_type: str, public: bool) -> StoredObject:
        extension = MIME_EXTENSIONS.get(mime_type.strip().lower(), ".bin")
        prefix = PUBLIC_PREFIX if public else PRIVATE_PREFIX
        key = (Path(prefix) / workspace_id / f"{uuid.uuid4()}{extension}").as_posix()
        target = self._root_path() / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise ObjectStoreError(f"object_store_write_failed {type(exc).__name__}") from exc

        return StoredObject(
            key=key,
            size_bytes=len(content),
            sha256=hashlib.sha256(content).hexdigest(),
            public_url=build_public_url(key),
            signed_url=None if public else build_signed_url(key),
        )


def get_object_store() -> ObjectStore:
    return LocalObjectStore()
