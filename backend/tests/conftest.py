"""
Shared test fixtures for the Guidepass backend test suite.
"""

from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from guidepass.config import BillingConfig
from guidepass.services.billing_repository import InMemoryBillingRepository
from guidepass.services.billing_service import BillingService


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests off any real Supabase project or webhook token from .env."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("WEBHOOK__AUTH_TOKEN", "")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def billing_service(repository, clock) -> BillingService:
    return BillingService(repository, BillingConfig(), now_provider=clock.now)


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from guidepass.config import get_settings

    get_settings.cache_clear()

    from guidepass.main import app

    yield TestClient(app)

    app.dependency_overrides.clear()
    get_settings.cache_clear()
