"""
Component Test Layer Configuration (Layer 3)

Structure:
    tests/component/
    ├── campaign_delivery/   Service components wired to in-memory backends
    └── mocks/               Mock implementations

Usage:
    pytest tests/component -v
    pytest tests/component/campaign_delivery -v
"""
import os
import sys

import pytest

# Set testing environment BEFORE any imports
os.environ["ENV"] = "testing"
os.environ["ENVIRONMENT"] = "testing"
os.environ["NATS_ENABLED"] = "false"
os.environ["QUEUE_WORKERS_ENABLED"] = "false"

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from tests.component.mocks import (
    MockAnalyticsRepository,
    MockCampaignRepository,
    MockEmailTransport,
    MockEventBus,
    MockRedis,
)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "component: marks tests as component tests"
    )


# =============================================================================
# Infrastructure Mocks
# =============================================================================

@pytest.fixture
def mock_redis() -> MockRedis:
    """In-memory Redis"""
    return MockRedis()


@pytest.fixture
def mock_event_bus() -> MockEventBus:
    """Mock NATS event bus"""
    return MockEventBus()


@pytest.fixture
def mock_transport() -> MockEmailTransport:
    """Mock email provider"""
    return MockEmailTransport()


# =============================================================================
# Repository Mocks
# =============================================================================

@pytest.fixture
def mock_campaign_repository() -> MockCampaignRepository:
    return MockCampaignRepository()


@pytest.fixture
def mock_analytics_repository(mock_campaign_repository) -> MockAnalyticsRepository:
    """Event store that bumps counters on the campaign repository"""
    return MockAnalyticsRepository(mock_campaign_repository)
