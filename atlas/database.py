"""Database connection and session management."""

from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL, STORE_STATEMENT_TIMEOUT_MS

Base = declarative_base()


def build_engine(url: str = DATABASE_URL, echo: bool = False) -> Engine:
    """Create an engine with the per-dialect settings the store relies on.

    - SQLite: foreign keys ON; in-memory URLs share one connection (StaticPool)
    - Postgres: statement_timeout so no store call blocks indefinitely
    """
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        new_engine = create_engine(url, echo=echo, **kwargs)

        @event.listens_for(new_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return new_engine

    connect_args = {}
    if STORE_STATEMENT_TIMEOUT_MS > 0 and url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={STORE_STATEMENT_TIMEOUT_MS}"
    return create_engine(url, echo=echo, pool_pre_ping=True, connect_args=connect_args)


engine = build_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables."""
    # models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
