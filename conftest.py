"""Pytest configuration and shared fixtures."""

from urllib.parse import urlparse

import pytest
from dotenv import load_dotenv

from db.client import init_db, close_db
from services.enrichment.config import EngineConfig

# Load env vars
load_dotenv()


# =============================================================================
# SAFETY CHECK: Prevent tests from running against production database
# =============================================================================

ALLOWED_DB_HOSTS = {"localhost", "127.0.0.1", "host.docker.internal", "db", "postgres"}


def configured_db_host(config: EngineConfig):
    """Host the record store would connect to, or None when running on the memory store."""
    if config.database_url:
        return urlparse(config.database_url).hostname or "localhost"
    return config.db_host


def pytest_configure(config):
    """Register custom markers and check database safety."""
    config.addinivalue_line("markers", "no_db: mark test to skip database setup")
    config.addinivalue_line("markers", "integration: mark test as integration test (hits external services)")
    config.addinivalue_line("markers", "online: mark test as online test (hits external APIs)")

    db_host = configured_db_host(EngineConfig.from_env())
    if db_host is not None and db_host not in ALLOWED_DB_HOSTS:
        pytest.exit(
            f"\n\n"
            f"{'=' * 60}\n"
            f"SAFETY CHECK FAILED: Cannot run tests against production DB!\n"
            f"{'=' * 60}\n"
            f"\n"
            f"Configured database host: {db_host}\n"
            f"Allowed hosts: {', '.join(sorted(ALLOWED_DB_HOSTS))}\n"
            f"\n"
            f"Point DATABASE_URL / ENRICH_DB_HOST at a local database, or unset both\n"
            f"to run only the memory-store tests.\n"
            f"{'=' * 60}\n",
            returncode=1,
        )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="function", autouse=True)
async def setup_db(request):
    """Initialize database connection pool for tests that need it.

    Tests marked with @pytest.mark.no_db skip database initialization. Without
    DATABASE_URL or ENRICH_DB_HOST the engine runs on the memory store, so
    database tests are skipped rather than failed.
    """
    if "no_db" in [marker.name for marker in request.node.iter_markers()]:
        yield
        return

    if not EngineConfig.from_env().database_configured:
        pytest.skip("no database configured (set DATABASE_URL or ENRICH_DB_HOST)")

    await init_db()
    yield
    await close_db()
