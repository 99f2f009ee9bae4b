"""
chatrelay - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- Smoke test handling (skip with SKIP_SMOKE=1)
- Accounts, registries and isolated metrics for unit tests
"""

import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from prometheus_client import CollectorRegistry

from chatrelay.core.config import GatewaySettings
from chatrelay.core.models import Account, AccountStatus, ApiKeyCredentials
from chatrelay.observability.metrics import MetricsCollector
from chatrelay.routing.accounts import InMemoryAccountRegistry
from chatrelay.routing.quota import QuotaCooldownConfig, QuotaCooldownRegistry


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))
SKIP_SMOKE = _is_truthy(os.getenv("SKIP_SMOKE"))


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )
    config.addinivalue_line(
        "markers",
        "smoke: mark test as smoke test (skip with SKIP_SMOKE=1)"
    )


def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to handle integration and smoke tests.

    - Integration tests: Skip unless RUN_INTEGRATION=1
    - Smoke tests: Skip if SKIP_SMOKE=1
    """
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    skip_smoke = pytest.mark.skip(
        reason="Smoke test skipped - SKIP_SMOKE=1"
    )

    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)

        if "smoke" in item.keywords and SKIP_SMOKE:
            item.add_marker(skip_smoke)


# ============================================================
# Accounts
# ============================================================

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_account(
    account_id: str,
    provider_key: str = "openai",
    created_offset: int = 0,
    status: AccountStatus = AccountStatus.ACTIVE,
    is_default: bool = False,
) -> Account:
    """Account created ``created_offset`` minutes after a fixed base time."""
    return Account(
        id=account_id,
        provider_key=provider_key,
        display_name=account_id.upper(),
        status=status,
        is_default=is_default,
        created_at=BASE_TIME + timedelta(minutes=created_offset),
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quota(clock):
    return QuotaCooldownRegistry(QuotaCooldownConfig(), clock=clock)


@pytest.fixture
def registry(quota):
    """Three active OpenAI accounts a, b, c created in that order, load balancing on."""
    registry = InMemoryAccountRegistry(quota=quota)
    for offset, account_id in enumerate(["a", "b", "c"]):
        registry.add_account(
            make_account(account_id, created_offset=offset),
            ApiKeyCredentials(api_key=f"sk-{account_id}"),
        )
    registry.set_load_balance("openai", True)
    return registry


@pytest.fixture
def metrics():
    """Metrics collector on a private registry."""
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def settings():
    return GatewaySettings(connect_timeout=1.0, read_timeout=1.0)


# ============================================================
# Logging Configuration
# ============================================================

@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    yield
