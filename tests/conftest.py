"""Pytest fixtures for audittrail tests."""

import os

# Keep module-level engines away from any real database
os.environ["AUDITTRAIL_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AUDITTRAIL_SYNC_DATABASE_URL"] = "sqlite:///:memory:"

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker

from audittrail.audit.capture import ChangeCapture
from audittrail.audit.interceptor import AuditSessionInterceptor
from audittrail.audit.memory import InMemoryAuditStore
from audittrail.audit.registry import entity_registry
from audittrail.audit.repository import SqlAuditStore
from audittrail.config import AuditOptions, reset_audit_settings
from audittrail.database import init_db_sync
from tests.entities import BusinessBase


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture(autouse=True)
def _reset_global_state():
    """Drop cached settings and entity descriptors between tests."""
    yield
    reset_audit_settings()
    entity_registry.clear()


@pytest.fixture
def business_engine(tmp_path):
    """File-based SQLite engine holding the business tables."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'business.db'}",
        connect_args={"check_same_thread": False},
    )
    BusinessBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def memory_store():
    return InMemoryAuditStore()


def _audit_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'audit.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db_sync(engine)
    return engine


@pytest.fixture
def sql_store(tmp_path):
    """SqlAuditStore over a fresh audit database (sync path)."""
    sync_engine = _audit_engine(tmp_path)
    yield SqlAuditStore(session_factory=sessionmaker(sync_engine, expire_on_commit=False))
    sync_engine.dispose()


@pytest_asyncio.fixture
async def async_sql_store(tmp_path):
    """SqlAuditStore over a fresh audit database (sync and async paths)."""
    sync_engine = _audit_engine(tmp_path)
    async_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")

    yield SqlAuditStore(
        session_factory=sessionmaker(sync_engine, expire_on_commit=False),
        async_session_factory=async_sessionmaker(async_engine, expire_on_commit=False),
    )

    await async_engine.dispose()
    sync_engine.dispose()


@pytest.fixture
def make_audited_sessions(business_engine, memory_store):
    """Build a sessionmaker whose sessions feed the given (or memory) store.

    Returns (sessionmaker, store).
    """

    def factory(options: AuditOptions | None = None, store=None):
        store = store if store is not None else memory_store
        capture = ChangeCapture(store, options or AuditOptions())
        session_factory = sessionmaker(business_engine)
        AuditSessionInterceptor(capture).install(session_factory)
        return session_factory, store

    return factory


@pytest.fixture
def audited_sessions(make_audited_sessions):
    """Sessionmaker with default options auditing into an in-memory store."""
    return make_audited_sessions()


@pytest_asyncio.fixture
async def async_business_engine(tmp_path):
    """Async engine over a fresh business database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'business_async.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(BusinessBase.metadata.create_all)
    yield engine
    await engine.dispose()
