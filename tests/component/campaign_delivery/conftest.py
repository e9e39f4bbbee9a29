"""
Component Test Fixtures for Campaign Delivery Service

Wires the real services, queue and cache onto in-memory Redis, repositories
and email transport. Workers are driven by hand through QueueDriver.
"""

import pytest
from typing import Dict, Optional

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import BatchConfig, RetryPolicyConfig
from microservices.campaign_delivery_service.analytics_service import AnalyticsService
from microservices.campaign_delivery_service.batch_processor import BatchProcessor
from microservices.campaign_delivery_service.cache_manager import CacheManager
from microservices.campaign_delivery_service.campaign_service import CampaignService
from microservices.campaign_delivery_service.events.publishers import CampaignEventPublisher
from microservices.campaign_delivery_service.job_queue import QueueManager
from microservices.campaign_delivery_service.models import Campaign, QueueName
from microservices.campaign_delivery_service.report_service import ReportService
from microservices.campaign_delivery_service.workers import JobDispatcher, QueueWorker
from tests.fixtures import make_campaign


# ====================
# Queue Driver
# ====================


class QueueDriver:
    """Runs worker pools one job at a time and fast-forwards delayed jobs"""

    def __init__(self, redis, queue_manager: QueueManager, workers: Dict[QueueName, QueueWorker]):
        self.redis = redis
        self.queue_manager = queue_manager
        self.workers = workers

    async def drain(self, queue_name: QueueName = QueueName.EMAIL, limit: int = 200) -> int:
        """Process ready jobs until none is left; returns how many ran"""
        worker = self.workers[queue_name]
        processed = 0
        while processed < limit and await worker.process_next():
            processed += 1
        return processed

    def release_delayed(self, queue_name: QueueName = QueueName.EMAIL) -> int:
        """Make every delayed job ready now"""
        delayed = self.redis.zsets.get(self.queue_manager.get_queue(queue_name).delayed_key, {})
        for job_id in delayed:
            delayed[job_id] = 0
        return len(delayed)

    async def run_until_idle(self, queue_name: QueueName = QueueName.EMAIL, rounds: int = 10) -> int:
        """Drain, releasing backoffs and deferrals between rounds"""
        total = await self.drain(queue_name)
        for _ in range(rounds):
            if not self.release_delayed(queue_name):
                break
            total += await self.drain(queue_name)
        return total


# ====================
# Configuration
# ====================


@pytest.fixture
def batch_config() -> BatchConfig:
    """Two recipients per batch and no pacing delay"""
    return BatchConfig(batch_size=2, delay_between_batches_ms=0, retry_delay_ms=1000)


@pytest.fixture
def retry_policy() -> RetryPolicyConfig:
    return RetryPolicyConfig()


# ====================
# Infrastructure
# ====================


@pytest.fixture
def cache(mock_redis) -> CacheManager:
    return CacheManager(mock_redis)


@pytest.fixture
def queue_manager(mock_redis) -> QueueManager:
    return QueueManager(mock_redis)


@pytest.fixture
def event_publisher(mock_event_bus) -> CampaignEventPublisher:
    return CampaignEventPublisher(mock_event_bus)


@pytest.fixture
def batch_processor(mock_transport, queue_manager, batch_config) -> BatchProcessor:
    return BatchProcessor(
        transport=mock_transport,
        queue_manager=queue_manager,
        batch_config=batch_config,
    )


# ====================
# Services
# ====================


@pytest.fixture
def campaign_service(
    mock_campaign_repository,
    mock_analytics_repository,
    cache,
    queue_manager,
    batch_processor,
    event_publisher,
    retry_policy,
    batch_config,
) -> CampaignService:
    return CampaignService(
        repository=mock_campaign_repository,
        analytics_repository=mock_analytics_repository,
        cache=cache,
        queue_manager=queue_manager,
        batch_processor=batch_processor,
        event_publisher=event_publisher,
        retry_policy=retry_policy,
        batch_config=batch_config,
    )


@pytest.fixture
def analytics_service(mock_analytics_repository, cache, mock_campaign_repository) -> AnalyticsService:
    return AnalyticsService(
        repository=mock_analytics_repository,
        cache=cache,
        campaign_repository=mock_campaign_repository,
    )


@pytest.fixture
def report_service(mock_analytics_repository, mock_campaign_repository, cache) -> ReportService:
    return ReportService(
        analytics_repository=mock_analytics_repository,
        campaign_repository=mock_campaign_repository,
        cache=cache,
    )


# ====================
# Workers
# ====================


@pytest.fixture
def email_worker(queue_manager, campaign_service) -> QueueWorker:
    return QueueWorker(
        queue=queue_manager.get_queue(QueueName.EMAIL),
        handler=JobDispatcher(email_handler=campaign_service.process_email_job),
        concurrency=1,
        on_completed=campaign_service.on_email_job_finished,
        on_failed=campaign_service.on_email_job_finished,
    )


@pytest.fixture
def analytics_worker(queue_manager, analytics_service) -> QueueWorker:
    return QueueWorker(
        queue=queue_manager.get_queue(QueueName.ANALYTICS),
        handler=JobDispatcher(analytics_handler=analytics_service.process_analytics_job),
        concurrency=1,
    )


@pytest.fixture
def queue_driver(mock_redis, queue_manager, email_worker, analytics_worker) -> QueueDriver:
    return QueueDriver(
        mock_redis,
        queue_manager,
        {QueueName.EMAIL: email_worker, QueueName.ANALYTICS: analytics_worker},
    )


# ====================
# Data
# ====================


@pytest.fixture
def seed_campaign(mock_campaign_repository):
    """Store a campaign built by make_campaign and return it"""

    def _seed(tenant_id: Optional[str] = None, **kwargs) -> Campaign:
        campaign = make_campaign(tenant_id=tenant_id, **kwargs)
        return mock_campaign_repository.add(campaign)

    return _seed
