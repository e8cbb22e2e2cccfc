from __future__ import annotations

from collections.abc import Generator
from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from ..models import db as _db_models  # noqa: F401 - ensure models register with metadata
from .config import get_settings

# Concurrent callbacks write to the same file; wait for the lock rather than fail.
SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engines: dict[str, Engine] = {}


def create_engine_for_url(database_url: str) -> Engine:
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
    return create_engine(database_url, echo=False, connect_args=connect_args)


def get_engine() -> Engine:
    """Engine for the configured database, built on first use."""
    if "active" not in _engines:
        _engines["active"] = create_engine_for_url(get_settings().database_url)
    return _engines["active"]


def set_engine(new_engine: Optional[Engine]) -> Optional[Engine]:
    """Swap the active engine and return the previous one.

    Passing ``None`` drops the override so the next ``get_engine`` call
    builds from settings again.
    """
    previous = _engines.pop("active", None)
    if new_engine is not None:
        _engines["active"] = new_engine
    return previous


def init_db() -> None:
    SQLModel.metadata.create_all(get_engine())


def get_session() -> Generator[Session, None, None]:
    with Session(get_engine()) as session:
        yield session
