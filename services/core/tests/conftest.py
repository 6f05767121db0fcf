"""Pytest configuration and fixtures for PBX Sync Core tests.

This module provides fixtures for:
- Database: SQLite in-memory for single-session tests, a SQLite file for
  tests where several sessions or threads share the database
- Secrets: a throwaway Fernet key and cipher
- Storage: a local filesystem backend under tmp_path
- Tenants: a ready-made tenant with encrypted credentials
"""

from collections.abc import Generator

import pytest
from sqlalchemy import StaticPool, create_engine, event
from sqlalchemy.dialects import sqlite
from sqlalchemy.orm import Session, sessionmaker

from pbxsync_core.config import Settings
from pbxsync_core.domain.models import Base
from pbxsync_core.infrastructure.crypto import CredentialCipher

from tests.factories import create_tenant


# -----------------------------------------------------------------------------
# Test Settings
# -----------------------------------------------------------------------------


@pytest.fixture
def encryption_key() -> str:
    return CredentialCipher.generate_key()


@pytest.fixture
def cipher(encryption_key) -> CredentialCipher:
    return CredentialCipher(encryption_key)


@pytest.fixture
def test_settings(tmp_path, encryption_key) -> Settings:
    """Create test settings with safe defaults."""
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        redis_url="redis://localhost:6379/15",
        secret_key="test-secret-key-do-not-use-in-production",
        encryption_key=encryption_key,
        default_storage_backend="fs",
        fs_storage_path=str(tmp_path / "media"),
        media_backups_path=str(tmp_path / "media-backups"),
        ssh_connect_timeout_seconds=2.0,
        media_ingest_enabled=False,
        log_json=False,
    )


# -----------------------------------------------------------------------------
# Database Fixtures
# -----------------------------------------------------------------------------


def _create_schema(engine) -> None:
    # SQLite only autoincrements INTEGER PRIMARY KEY, so compile BIGINT as INTEGER
    original_visit = sqlite.dialect.type_compiler_cls.visit_BIGINT
    sqlite.dialect.type_compiler_cls.visit_BIGINT = lambda self, type_, **kw: "INTEGER"
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        sqlite.dialect.type_compiler_cls.visit_BIGINT = original_visit


def _enable_foreign_keys(engine) -> None:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture
def sync_engine():
    """Create a synchronous SQLite in-memory engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_foreign_keys(engine)
    _create_schema(engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sync_session_factory(sync_engine) -> sessionmaker[Session]:
    """Create a synchronous session factory."""
    return sessionmaker(
        bind=sync_engine,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
def db_session(sync_session_factory) -> Generator[Session, None, None]:
    """Create a synchronous database session for testing."""
    session = sync_session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@pytest.fixture
def file_engine(tmp_path):
    """SQLite file engine: every session gets its own connection.

    Needed wherever the ledger's short transactions run next to a
    long-lived session, or from several threads at once.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'archive.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    _enable_foreign_keys(engine)
    _create_schema(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def file_session_factory(file_engine) -> sessionmaker[Session]:
    return sessionmaker(bind=file_engine, autocommit=False, autoflush=False)


# -----------------------------------------------------------------------------
# Domain Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def tenant(db_session, cipher):
    """A tenant with encrypted SSH and database passwords."""
    return create_tenant(db_session, cipher=cipher)


@pytest.fixture
def fs_storage(tmp_path):
    from pbxsync_core.storage.filesystem import FilesystemStorageBackend

    return FilesystemStorageBackend(root=str(tmp_path / "media"), secret_key="test-secret")


@pytest.fixture
def storage_registry(test_settings, fs_storage):
    from pbxsync_core.storage import StorageRegistry

    return StorageRegistry(test_settings, backends={"fs": fs_storage})
