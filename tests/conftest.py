"""
Pytest configuration and shared fixtures.

Test settings are placed in the environment before any chatcore import so the
module-level settings, engine and logging pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatcore.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from chatcore.config import get_settings
get_settings.cache_clear()

from chatcore.storage import Base, SessionLocal, engine


@pytest.fixture(scope="function")
def tables():
    """Fresh schema for each test."""
    from chatcore import directory, models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
