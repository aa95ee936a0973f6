"""Shared pytest fixtures for Review Harvester tests.

Fixture summary
---------------
engine          SQLite engine on a per-test database file, schema created.
session_factory Sessionmaker bound to ``engine``.
db_session      An open Session for direct assertions.
task_store      TaskStore bound to the test database.
ingestor        Ingestor bound to the test database.
drop_root       Empty directory used as the parent of drop directories.

Every test runs against its own SQLite file, so the partial unique index,
the ``ON CONFLICT`` upserts and cross-thread claims are exercised for real
without a PostgreSQL server.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Set required env vars before any application modules are imported so that
# Settings() does not raise a ValidationError during collection.

_TEST_ENV_DEFAULTS: dict[str, str] = {
    "DATABASE_URL": "sqlite:///:memory:",
    "CELERY_BROKER_URL": "memory://",
    "CELERY_RESULT_BACKEND": "cache+memory://",
    "WORKER_COMMAND": "true",
    "LOG_LEVEL": "WARNING",
}

for _key, _default in _TEST_ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _default)

# ---------------------------------------------------------------------------
# Application imports (after env bootstrap)
# ---------------------------------------------------------------------------

from review_harvester.config.settings import get_settings  # noqa: E402
from review_harvester.core.database import build_engine, build_session_factory  # noqa: E402
from review_harvester.core.models import Base  # noqa: E402
from review_harvester.harvester.ingestor import Ingestor  # noqa: E402
from review_harvester.harvester.task_store import TaskStore  # noqa: E402

# Clear the lru_cache so Settings() re-reads from the patched environment.
get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    test_engine = build_engine(f"sqlite:///{tmp_path / 'harvester.db'}")
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Harvester components
# ---------------------------------------------------------------------------


@pytest.fixture
def task_store(session_factory: sessionmaker[Session]) -> TaskStore:
    return TaskStore(session_factory)


@pytest.fixture
def ingestor(session_factory: sessionmaker[Session]) -> Ingestor:
    return Ingestor(session_factory)


@pytest.fixture
def drop_root(tmp_path: Path) -> Path:
    root = tmp_path / "drops"
    root.mkdir()
    return root
