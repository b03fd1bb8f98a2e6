"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests, plus the
monetization config, fake guild and fake billing client used by the
service tests.
"""

import os
import tempfile
import pytest
import yaml
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from src.config.monetization import MonetizationConfig, RoleSpec, reset_monetization_config_loader
from src.tests.helpers.fakes import FakeBillingClient, FakeGuild, FakePlatform

# Set test environment
os.environ.setdefault("ENV", "test")


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        # Handle Render's postgres:// URL format
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    url = _get_test_database_url()
    return url.startswith("postgresql")


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        # SQLite in-memory for fast unit tests
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    # Import and create all tables
    from src.db_base import Base
    import src.models  # noqa: F401 - registers every model

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Each test gets a fresh session that rolls back after the test completes.
    Repository commits do not end the outer transaction.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=connection)
    session = SessionLocal()

    if _is_postgres():
        # Use savepoints for PostgreSQL
        nested = connection.begin_nested()

        @event.listens_for(session, "after_transaction_end")
        def restart_savepoint(session, transaction):
            nonlocal nested
            if transaction.nested and not transaction._parent.nested:
                nested = connection.begin_nested()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "scenario: end-to-end flow across services")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Config fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("monetization.yml", {"roles": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(config, f, allow_unicode=True)
        return config_path
    return _make


@pytest.fixture(autouse=True)
def _reset_config_loader():
    reset_monetization_config_loader()
    yield
    reset_monetization_config_loader()


@pytest.fixture
def monetization_config() -> MonetizationConfig:
    """Standard roles, no pacing delay."""
    return MonetizationConfig(
        paid_role=RoleSpec(name="🟢 Paid Member", color=0x2ECC71),
        free_role=RoleSpec(name="🔴 Free Member", color=0xE74C3C),
        pending_click_window=10,
        sweep_delay_seconds=0,
    )


# =============================================================================
# Platform / billing fakes
# =============================================================================


@pytest.fixture
def fake_guild() -> FakeGuild:
    return FakeGuild(guild_id="111")


@pytest.fixture
def fake_platform(fake_guild) -> FakePlatform:
    return FakePlatform({fake_guild.guild_id: fake_guild})


@pytest.fixture
def fake_billing() -> FakeBillingClient:
    return FakeBillingClient()
