"""
Pytest configuration and shared fixtures.

Environment defaults are applied before any application import so that the
settings, engine and logging pick up the test database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_dmchat.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from dmchat.config import get_settings
get_settings.cache_clear()

from dmchat import models  # noqa: E402,F401
from dmchat.main import app  # noqa: E402
from dmchat.storage import Base, SessionLocal, create_user, engine  # noqa: E402


USERNAMES = ("alice", "bob", "carol", "dave")


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db():
    """Database session on a fresh schema, for store-level tests."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


def _seed_users(session) -> dict:
    return {name: create_user(session, name).id for name in USERNAMES}


@pytest.fixture
def users(client) -> dict:
    """Seed identity records for the HTTP tests. Returns username -> id."""
    with SessionLocal() as session:
        return _seed_users(session)


@pytest.fixture
def db_users(db) -> dict:
    """Seed identity records through the store-level session."""
    return _seed_users(db)
