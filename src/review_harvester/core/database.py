"""SQLAlchemy engine and session factory.

Provides:
- engine:              the process-wide Engine instance
- SyncSessionLocal:    the sessionmaker factory used by stores and Celery tasks
- get_sync_session():  context manager yielding a Session
- get_db():            FastAPI dependency that yields a Session
- Base.metadata:       re-exported so migrations can reference it without
                       importing individual models

All access is synchronous: task supervision runs inside Celery worker
processes and the API routes are plain ``def`` handlers executed in
FastAPI's thread pool.

PostgreSQL is the production backend.  SQLite is accepted for local runs and
the test-suite; the partial unique index and ``ON CONFLICT`` upserts used by
the stores exist on both.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from review_harvester.core.models.base import Base  # noqa: F401


def _normalize_url(database_url: str) -> str:
    """Pin plain ``postgresql://`` URLs to the psycopg2 driver."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return database_url


def build_engine(database_url: str) -> Engine:
    """Create an engine from a database URL.

    Separated from module-level code so tests can call this with a scratch
    DSN without touching the application singleton.
    """
    url = _normalize_url(database_url)
    if url.startswith("sqlite"):
        # Stores are shared between the supervisor thread and test threads.
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    """Return a sessionmaker configured the way every store expects."""
    return sessionmaker(
        bind=bind,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


def _get_database_url() -> str:
    """Resolve the database URL from application settings.

    Imported lazily so that test code can patch settings before the engine
    is created.
    """
    from review_harvester.config.settings import get_settings  # noqa: PLC0415

    return str(get_settings().database_url)


# ---------------------------------------------------------------------------
# Application-wide engine and session factory.
# ---------------------------------------------------------------------------

engine = build_engine(_get_database_url())

SyncSessionLocal: sessionmaker[Session] = build_session_factory(engine)


@contextmanager
def get_sync_session(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Yield a Session, rolling back on exception and always closing it.

    The caller commits explicitly.

    Usage::

        with get_sync_session() as session:
            session.execute(update(ScrapeTask).where(...).values(...))
            session.commit()
    """
    session = (factory or SyncSessionLocal)()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------


def get_db() -> Generator[Session, None, None]:
    """Yield a Session for use as a FastAPI dependency.

    The session is closed after the response is sent.  Route handlers remain
    explicit about their transaction boundaries; nothing is auto-committed.
    """
    with get_sync_session() as session:
        yield session
