# taxportal/conftest.py
import os
import pytest
from sqlalchemy import delete


@pytest.fixture(scope="session")
def db_url(tmp_path_factory):
    """
    Provide the database URL for tests.

    Uses TEST_DATABASE_URL when set (Postgres in CI); otherwise a throwaway
    SQLite file so the ledger tests always run.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{tmp_path_factory.mktemp('ledger') / 'ledger.db'}"


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """Bind the engine and create the schema once per session."""
    from taxportal.core.database import init_engine, create_all_tables, check_connection, get_engine

    init_engine(db_url)
    if not check_connection():
        pytest.exit(f"Test database not reachable: {db_url}", returncode=2)
    create_all_tables()
    yield
    get_engine().dispose()


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """
    Clear every ledger table and re-seed the plan catalog before each test.

    Deletes run child-first so foreign keys hold on stores that enforce them.
    """
    from taxportal.core.database import get_engine, metadata
    from taxportal.core.metrics import METRICS
    from taxportal.features.plan_configs.service import seed_plan_configs

    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(delete(table))

    seed_plan_configs()
    METRICS.reset()
    yield


@pytest.fixture
def fast_retries(monkeypatch):
    """Generous attempt budget and near-zero backoff for contention tests."""
    from taxportal.core.config import settings

    monkeypatch.setattr(settings, "LEDGER_MAX_ATTEMPTS", 60)
    monkeypatch.setattr(settings, "LEDGER_RETRY_BASE_DELAY_MS", 1)
    monkeypatch.setattr(settings, "LEDGER_RETRY_MAX_DELAY_MS", 20)
    return settings
