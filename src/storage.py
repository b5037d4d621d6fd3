"""SQLAlchemy tables and session factory for the history log and rate-limit buckets."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

from config import StorageConfig
from models import utcnow
from sqlalchemy import JSON, DateTime, Float, Index, String, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker


class Base(DeclarativeBase):
    pass


class IntentHistoryRow(Base):
    """One append-only audit entry. Rows are inserted, never updated."""

    __tablename__ = "intent_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64))
    kind: Mapped[str] = mapped_column(String(16))
    utterance_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    parsed_intent: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    candidates: Mapped[list] = mapped_column(JSON, default=list)
    chosen_candidate_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    action: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    action_result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    interpret_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index(
            "uq_intent_history_act_key",
            "tenant_id",
            "idempotency_key",
            unique=True,
            sqlite_where=text("kind = 'act' AND idempotency_key IS NOT NULL"),
            postgresql_where=text("kind = 'act' AND idempotency_key IS NOT NULL"),
        ),
    )


class RateLimitBucketRow(Base):
    __tablename__ = "rate_limit_buckets"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    resource: Mapped[str] = mapped_column(String(32), primary_key=True)
    tokens: Mapped[float] = mapped_column(Float)
    capacity: Mapped[float] = mapped_column(Float)
    refill_rate: Mapped[float] = mapped_column(Float)
    last_refill_at: Mapped[float] = mapped_column(Float)


def create_db_engine(config: StorageConfig) -> Engine:
    kwargs: dict[str, Any] = {"echo": config.echo, "pool_pre_ping": True}
    if config.database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(config.database_url, **kwargs)


def create_all_tables(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Commit on success, roll back and re-raise on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ping(engine: Engine) -> bool:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))
    return True
