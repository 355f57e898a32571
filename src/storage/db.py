"""SQLAlchemy engine, session dependency and storage error helpers."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Generator, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from src.core.config import get_settings


Base = declarative_base()

UNIQUE_VIOLATION_PGCODE = "23505"
_UNIQUE_VIOLATION_MARKERS = ("unique", "duplicate key", "uniqueviolation")


def _engine_options(database_url: str) -> Dict[str, Any]:
    options: Dict[str, Any] = {"pool_pre_ping": True, "future": True}
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        return options

    settings = get_settings()
    options["pool_size"] = settings.database_pool_size
    options["pool_recycle"] = settings.database_pool_recycle_seconds
    return options


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    database_url = get_settings().database_url
    return create_engine(database_url, **_engine_options(database_url))


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False, expire_on_commit=False)


def get_session() -> Generator[Session, None, None]:
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def is_unique_violation(exc: IntegrityError) -> bool:
    """True when the database rejected a write on a uniqueness constraint."""

    original = getattr(exc, "orig", None)
    if getattr(original, "pgcode", None) == UNIQUE_VIOLATION_PGCODE:
        return True
    message = str(original if original is not None else exc).lower()
    return any(marker in message for marker in _UNIQUE_VIOLATION_MARKERS)


def test_connection() -> Tuple[bool, Optional[str]]:
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
        return True, None
    except Exception as exc:
        return False, str(exc)


def load_models() -> None:
    """Register workspace, document and billing tables on ``Base.metadata``."""

    import src.storage.models  # noqa: F401
