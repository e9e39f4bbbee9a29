"""
Component Test Mocks

Shared mock implementations for component testing.
These mocks replace real I/O dependencies (Redis, PostgreSQL, NATS, email provider).
"""

from .redis_mock import MockRedis
from .nats_mock import MockEventBus
from .delivery_mocks import (
    MockCampaignRepository,
    MockAnalyticsRepository,
    MockEmailTransport,
)

__all__ = [
    'MockRedis',
    'MockEventBus',
    'MockCampaignRepository',
    'MockAnalyticsRepository',
    'MockEmailTransport',
]
