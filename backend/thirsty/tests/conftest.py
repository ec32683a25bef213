"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests.

Shared fixtures:
- db_engine / db_session: Shared SQLite engine, per-test rollback
- session_factory: Fresh SQLite database per test for code that commits
- catalog: The shipped feature catalog
- clock: Controllable UTC clock
- entitlement_cache / synchronizer: Wired against session_factory
- temp_config_dir / make_yaml_config: YAML catalog files in a temp dir
"""

import os
import tempfile
import pytest
import yaml
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from thirsty.tests.helpers.clock import FakeClock
from thirsty.tests.helpers.stripe_signing import TEST_WEBHOOK_SECRET

# Set test environment
os.environ.setdefault("ENV", "test")

CATALOG_PATH = Path(__file__).resolve().parents[2] / "config" / "feature_catalog.yml"


@pytest.fixture(scope="session", autouse=True)
def _httpx_app_kwarg_patch():
    """
    Compatibility patch for httpx>=0.28 where Client(app=...) is not supported.

    Starlette's TestClient (used by FastAPI) passes app= into httpx.Client.
    This patch removes the app kwarg to avoid TypeError in environments
    with newer httpx while remaining safe for older versions.
    """
    import httpx

    original_init = httpx.Client.__init__

    def patched_init(self, *args, **kwargs):
        kwargs.pop("app", None)
        return original_init(self, *args, **kwargs)

    httpx.Client.__init__ = patched_init
    try:
        yield
    finally:
        httpx.Client.__init__ = original_init


@pytest.fixture(autouse=True)
def _reset_singletons(monkeypatch):
    """Every test starts with fresh settings, catalog, cache and synchronizer."""
    from thirsty.config.settings import reset_settings
    from thirsty.entitlements.cache import set_entitlement_cache
    from thirsty.entitlements.catalog import reset_feature_catalog
    from thirsty.services.subscription_sync import set_subscription_synchronizer

    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("FEATURE_CATALOG_PATH", str(CATALOG_PATH))
    reset_settings()
    reset_feature_catalog()
    set_entitlement_cache(None)
    set_subscription_synchronizer(None)
    yield
    reset_settings()
    reset_feature_catalog()
    set_entitlement_cache(None)
    set_subscription_synchronizer(None)


def _create_sqlite_engine(url: str = "sqlite:///:memory:", **kwargs):
    if url == "sqlite:///:memory:":
        kwargs.setdefault("poolclass", StaticPool)
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
        **kwargs,
    )

    # Import and create all tables
    from thirsty.db_base import Base
    import thirsty.models  # noqa: F401 - registers tables

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="session")
def db_engine():
    """SQLite in-memory engine shared by repository and model tests."""
    engine = _create_sqlite_engine()
    yield engine

    from thirsty.db_base import Base
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Each test gets a fresh session that rolls back after the test completes.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=connection)
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """
    Session factory over a fresh in-memory database.

    For components that open and commit their own sessions (synchronizer,
    resolver, jobs).
    """
    engine = _create_sqlite_engine()
    yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File-backed SQLite so concurrent threads get their own connections."""
    engine = _create_sqlite_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


@pytest.fixture(scope="session")
def catalog():
    from thirsty.entitlements.catalog import FeatureCatalog
    return FeatureCatalog.from_file(CATALOG_PATH)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def resolver(session_factory, catalog, clock):
    from thirsty.entitlements.resolver import EntitlementResolver
    return EntitlementResolver(session_factory=session_factory, catalog=catalog, clock=clock)


@pytest.fixture
def entitlement_cache(resolver, catalog, clock):
    from thirsty.entitlements.cache import EntitlementCache
    return EntitlementCache(resolver, ttl_seconds=300, clock=clock, catalog=catalog)


@pytest.fixture
def synchronizer(session_factory, entitlement_cache, catalog, resolver, clock):
    from thirsty.services.subscription_sync import SubscriptionSynchronizer
    return SubscriptionSynchronizer(
        session_factory=session_factory,
        cache=entitlement_cache,
        catalog=catalog,
        resolver=resolver,
        webhook_secret=TEST_WEBHOOK_SECRET,
        tolerance_seconds=300,
        clock=clock,
    )


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Shared Config Fixtures
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
        config_path = make_yaml_config("feature_catalog.yml", {"features": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
