"""Test configuration."""
import os

import pytest

# --- Config env defaults, before the package reads settings
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("SQUARE_WEBHOOK_SECRET", "test-production-secret")
os.environ.setdefault("SQUARE_WEBHOOK_SECRET_SANDBOX", "test-sandbox-secret")
os.environ.setdefault("SQUARE_ACCESS_TOKEN", "test-production-token")
os.environ.setdefault("SQUARE_SANDBOX_TOKEN", "test-sandbox-token")
os.environ.setdefault("SLACK_ALERTS_ENABLED", "false")
os.environ.setdefault("RETRY_INITIAL_DELAY_SECONDS", "0")
os.environ.setdefault("RETRY_BACKOFF_MULTIPLIER", "0")
os.environ.setdefault("PAYMENT_SYNC_BATCH_DELAY_SECONDS", "0")
os.environ.setdefault("CATALOG_SYNC_BATCH_DELAY_SECONDS", "0")

from fakes import FakeAlerts, FakeSupabase  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def fake_alerts() -> FakeAlerts:
    return FakeAlerts()
