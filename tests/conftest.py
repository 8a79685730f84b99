"""Shared fixtures for the audit trail test suite."""

import asyncio

import pytest

from audit_trail_store import (
    AuditTrailConfig,
    AuditTrailStore,
    SQLAuditLogStorage,
    StaticUserDirectory,
)


@pytest.fixture
def config():
    """Test configuration with small pages."""
    return AuditTrailConfig(
        environment="test",
        database_url="sqlite:///:memory:",
        default_page_size=5,
        max_page_size=10,
        jwt_secret="audit-trail-test-secret-0123456789abcdef",
    )


@pytest.fixture
def sql_storage():
    """Create an in-memory SQL storage for testing."""
    storage = SQLAuditLogStorage("sqlite:///:memory:")

    # Initialize storage synchronously for test fixture
    asyncio.run(storage.initialize())
    yield storage
    asyncio.run(storage.dispose())


@pytest.fixture
def user_directory():
    """Directory knowing the actors used across the tests."""
    return StaticUserDirectory(
        {
            "7": {"name": "Alice Operator", "email": "alice@example.com"},
            "8": {"name": "Bob Reviewer", "email": "bob@example.com"},
        }
    )


@pytest.fixture
def store(sql_storage, user_directory, config):
    """Create an audit trail store over in-memory storage."""
    return AuditTrailStore(sql_storage, user_directory=user_directory, config=config)
