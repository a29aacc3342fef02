# datemaker/conftest.py
import os

import pytest
from sqlalchemy import delete

from datemaker.core.database import (
    create_all_tables,
    dispose_engine,
    get_db_session,
    init_engine,
    metadata,
)
from datemaker.core.metrics import METRICS
from datemaker.features.ledger.service import SubscriptionLedger
from datemaker.tests.mocks import FakeStripeProvider, make_settings


@pytest.fixture(scope="session")
def db_url():
    """
    Database URL for tests.

    Defaults to a shared in-memory SQLite database; set TEST_DATABASE_URL
    to run against Postgres.
    """
    return os.getenv("TEST_DATABASE_URL") or "sqlite://"


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """Create all tables once per test session."""
    init_engine(db_url)
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Empty every table before each test so records never leak across tests."""
    with get_db_session() as session:
        for table in reversed(metadata.sorted_tables):
            session.execute(delete(table))
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def ledger():
    return SubscriptionLedger()


@pytest.fixture
def stripe_provider():
    return FakeStripeProvider()
