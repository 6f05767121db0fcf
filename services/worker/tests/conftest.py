"""Pytest configuration and fixtures for worker tests.

These fixtures enable testing Celery tasks without requiring:
- Running Redis/Celery
- A MySQL server (tasks get a SQLite file database instead)
- Reachable PBX hosts
"""

import os
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.dialects import sqlite
from sqlalchemy.orm import sessionmaker

# Set test environment variables before importing celery_app
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")


@pytest.fixture(scope="session")
def celery_config() -> dict[str, Any]:
    """Celery configuration for testing."""
    return {
        "broker_url": "memory://",
        "result_backend": "cache+memory://",
        "task_always_eager": True,
        "task_eager_propagates": True,
    }


@pytest.fixture
def mock_celery_app():
    """Celery app configured for eager (synchronous) execution."""
    from pbxsync_worker.celery_app import app

    app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
    )
    return app


@pytest.fixture
def session_factory(tmp_path):
    """SQLite file database with the archive schema."""
    from pbxsync_core.domain.models import Base

    engine = create_engine(
        f"sqlite:///{tmp_path / 'worker.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    # SQLite only autoincrements INTEGER PRIMARY KEY
    original_visit = sqlite.dialect.type_compiler_cls.visit_BIGINT
    sqlite.dialect.type_compiler_cls.visit_BIGINT = lambda self, type_, **kw: "INTEGER"
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        sqlite.dialect.type_compiler_cls.visit_BIGINT = original_visit

    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)

    engine.dispose()


@pytest.fixture
def patched_db(session_factory):
    """Route the tasks' session factory to the test database."""
    with patch("pbxsync_core.infra.db.get_sync_session_factory", return_value=session_factory):
        yield session_factory


@pytest.fixture
def make_tenant(session_factory):
    """Insert a tenant and return its id."""
    from pbxsync_core.domain.models import Tenant

    def _make(slug: str = "acme", **kwargs: Any) -> int:
        session = session_factory()
        try:
            tenant = Tenant(
                slug=slug,
                name=slug.title(),
                ssh_host=f"{slug}.pbx.example.com",
                ssh_username="root",
                **kwargs,
            )
            session.add(tenant)
            session.commit()
            return tenant.id
        finally:
            session.close()

    return _make

