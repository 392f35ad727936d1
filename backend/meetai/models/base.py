from __future__ import annotations

from datetime import datetime, timezone
import secrets

from sqlmodel import SQLModel, create_engine
from sqlalchemy.engine import Engine


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def init_db(bind: Engine) -> None:
    if bind.dialect.name == "sqlite" and bind.url.database not in (None, "", ":memory:"):
        # Enable WAL
        with bind.begin() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
            conn.exec_driver_sql("PRAGMA synchronous=NORMAL;")
    # Import tables so they register on the metadata
    from meetai.models import agent, chat_message, meeting, pipeline_job  # noqa: F401

    SQLModel.metadata.create_all(bind)


def new_id() -> str:
    return secrets.token_urlsafe(16)


def utcnow() -> datetime:
    # Naive UTC; SQLite columns carry no offset
    return datetime.now(timezone.utc).replace(tzinfo=None)
