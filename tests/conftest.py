"""
Shared test fixtures for the battery ledger test suite.
"""

from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from battery.config import BillingConfig
from battery.services.ledger import BatteryLedger
from battery.services.ledger_store import InMemoryBatteryStore

CRON_SECRET = "cron-test-secret"


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta

    def set(self, now: datetime) -> None:
        self._now = now


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables so Settings can be instantiated without a .env."""
    monkeypatch.setenv("BILLING__CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("DAILY_RESET__ENABLED", "false")
    monkeypatch.delenv("STRIPE__SECRET_KEY", raising=False)


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
    return MutableClock(datetime(2026, 2, 22, 12, 0, tzinfo=UTC))


@pytest.fixture
def store() -> InMemoryBatteryStore:
    return InMemoryBatteryStore()


@pytest.fixture
def ledger(store: InMemoryBatteryStore, clock: MutableClock) -> BatteryLedger:
    return BatteryLedger(store, BillingConfig(), now_provider=clock.now)


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application (lifespan not run)."""
    # Clear the lru_cache so settings pick up test env vars
    from battery.config import get_settings

    get_settings.cache_clear()

    from battery.main import app

    return TestClient(app)
