"""
Campaign Delivery Service Factory

Factory for creating campaign delivery components with proper dependency injection.
"""

import logging
from typing import List, Optional

import pytz
import redis.asyncio as aioredis
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.config import DeliveryConfig, get_settings
from core.nats_client import NATSEventBus
from core.postgres_client import PostgresClientWrapper
from core.redis_client import create_redis_client

from .analytics_repository import AnalyticsRepository
from .analytics_service import AnalyticsService
from .batch_processor import BatchProcessor
from .cache_manager import CacheManager
from .campaign_repository import CampaignRepository
from .campaign_service import CampaignService
from .clients.email_transport_client import EmailTransportClient
from .events.publishers import CampaignEventPublisher
from .job_queue import NIGHTLY_AGGREGATION_HOUR, QueueManager
from .models import QueueName
from .report_service import ReportService
from .workers import JobDispatcher, QueueWorker

logger = logging.getLogger(__name__)

SERVICE_NAME = "campaign_delivery_service"
NIGHTLY_AGGREGATION_JOB_ID = "nightly_aggregation_job"


def create_nightly_scheduler(queue_manager: QueueManager) -> AsyncIOScheduler:
    """Scheduler that queues yesterday's rollup every night at 02:00 UTC"""
    scheduler = AsyncIOScheduler(timezone=pytz.utc)
    scheduler.add_job(
        queue_manager.schedule_daily_aggregation,
        "cron",
        hour=NIGHTLY_AGGREGATION_HOUR,
        minute=0,
        id=NIGHTLY_AGGREGATION_JOB_ID,
        replace_existing=True,
        coalesce=True,
        misfire_grace_time=3600,
    )
    return scheduler


class CampaignDeliveryServiceFactory:
    """Factory for creating campaign delivery components"""

    def __init__(self, config: Optional[DeliveryConfig] = None):
        self.config = config or get_settings()
        self._db: Optional[PostgresClientWrapper] = None
        self._redis: Optional[aioredis.Redis] = None
        self._campaign_repository: Optional[CampaignRepository] = None
        self._analytics_repository: Optional[AnalyticsRepository] = None
        self._cache: Optional[CacheManager] = None
        self._queue_manager: Optional[QueueManager] = None
        self._transport: Optional[EmailTransportClient] = None
        self._batch_processor: Optional[BatchProcessor] = None
        self._nats_client: Optional[NATSEventBus] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._event_publisher: Optional[CampaignEventPublisher] = None
        self._campaign_service: Optional[CampaignService] = None
        self._analytics_service: Optional[AnalyticsService] = None
        self._report_service: Optional[ReportService] = None
        self._workers: List[QueueWorker] = []

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing Campaign Delivery Service components...")

        # Store
        self._db = PostgresClientWrapper(SERVICE_NAME, self.config.infrastructure)
        self._campaign_repository = CampaignRepository(self._db)
        await self._campaign_repository.initialize()
        self._analytics_repository = AnalyticsRepository(self._db)

        # Cache and queues share one Redis client
        self._redis = create_redis_client(self.config.infrastructure)
        self._cache = CacheManager(self._redis, self.config.cache)
        self._queue_manager = QueueManager(self._redis, self.config.queue)

        # Transport
        self._transport = EmailTransportClient(self.config.transport)
        self._batch_processor = BatchProcessor(
            transport=self._transport,
            queue_manager=self._queue_manager,
            batch_config=self.config.batch,
            transport_config=self.config.transport,
        )

        # Initialize NATS client
        if self.config.infrastructure.nats_enabled:
            try:
                self._nats_client = NATSEventBus(
                    service_name=SERVICE_NAME,
                    config=self.config.infrastructure,
                )
                await self._nats_client.connect()
                logger.info("NATS client connected")
            except Exception as e:
                logger.warning(f"NATS client initialization failed: {e}")
                self._nats_client = None
        else:
            logger.info("NATS disabled, lifecycle events will not be published")
        self._event_publisher = CampaignEventPublisher(self._nats_client)

        # Services
        self._campaign_service = CampaignService(
            repository=self._campaign_repository,
            analytics_repository=self._analytics_repository,
            cache=self._cache,
            queue_manager=self._queue_manager,
            batch_processor=self._batch_processor,
            event_publisher=self._event_publisher,
            retry_policy=self.config.retry,
            batch_config=self.config.batch,
        )
        self._analytics_service = AnalyticsService(
            repository=self._analytics_repository,
            cache=self._cache,
            campaign_repository=self._campaign_repository,
            config=self.config.reports,
        )
        self._report_service = ReportService(
            analytics_repository=self._analytics_repository,
            campaign_repository=self._campaign_repository,
            cache=self._cache,
            config=self.config.reports,
            cache_config=self.config.cache,
        )

        logger.info("Campaign Delivery Service components initialized")

    def _build_workers(self) -> List[QueueWorker]:
        queue_config = self.config.queue
        email_worker = QueueWorker(
            queue=self.queue_manager.get_queue(QueueName.EMAIL),
            handler=JobDispatcher(email_handler=self.campaign_service.process_email_job),
            concurrency=queue_config.email_concurrency,
            poll_interval_ms=queue_config.poll_interval_ms,
            stall_timeout_ms=queue_config.stall_timeout_ms,
            on_completed=self.campaign_service.on_email_job_finished,
            on_failed=self.campaign_service.on_email_job_finished,
        )
        analytics_worker = QueueWorker(
            queue=self.queue_manager.get_queue(QueueName.ANALYTICS),
            handler=JobDispatcher(analytics_handler=self.analytics_service.process_analytics_job),
            concurrency=queue_config.analytics_concurrency,
            poll_interval_ms=queue_config.poll_interval_ms,
            stall_timeout_ms=queue_config.stall_timeout_ms,
        )
        return [email_worker, analytics_worker]

    async def start_workers(self) -> None:
        """Start the email and analytics worker pools and arm the nightly rollup"""
        if not self.config.queue.workers_enabled:
            logger.info("Queue workers disabled by configuration")
            return

        self._workers = self._build_workers()
        for worker in self._workers:
            await worker.start()

        try:
            self._scheduler = create_nightly_scheduler(self.queue_manager)
            self._scheduler.start()
            logger.info(f"Nightly aggregation scheduler started (daily at {NIGHTLY_AGGREGATION_HOUR:02d}:00 UTC)")
        except Exception as e:
            logger.warning(f"Failed to start nightly aggregation scheduler: {e}")
            self._scheduler = None

    async def stop_workers(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        for worker in self._workers:
            await worker.stop()
        self._workers = []

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing Campaign Delivery Service components...")

        await self.stop_workers()

        if self._nats_client:
            await self._nats_client.close()

        if self._transport:
            await self._transport.close()

        if self._cache:
            await self._cache.close()

        if self._redis is not None:
            await self._redis.aclose()

        if self._campaign_repository:
            await self._campaign_repository.close()

        logger.info("Campaign Delivery Service components closed")

    @property
    def campaign_repository(self) -> CampaignRepository:
        """Get campaign repository"""
        if not self._campaign_repository:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._campaign_repository

    @property
    def analytics_repository(self) -> AnalyticsRepository:
        if not self._analytics_repository:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._analytics_repository

    @property
    def cache(self) -> CacheManager:
        if not self._cache:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._cache

    @property
    def queue_manager(self) -> QueueManager:
        if not self._queue_manager:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._queue_manager

    @property
    def transport(self) -> EmailTransportClient:
        if not self._transport:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._transport

    @property
    def campaign_service(self) -> CampaignService:
        """Get campaign service"""
        if not self._campaign_service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._campaign_service

    @property
    def analytics_service(self) -> AnalyticsService:
        if not self._analytics_service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._analytics_service

    @property
    def report_service(self) -> ReportService:
        if not self._report_service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._report_service

    @property
    def nats_client(self) -> Optional[NATSEventBus]:
        """Get NATS client"""
        return self._nats_client


# Global factory instance
_factory: Optional[CampaignDeliveryServiceFactory] = None


async def get_factory() -> CampaignDeliveryServiceFactory:
    """Get or create factory instance"""
    global _factory
    if _factory is None:
        _factory = CampaignDeliveryServiceFactory()
        await _factory.initialize()
    return _factory


async def close_factory() -> None:
    """Close factory instance"""
    global _factory
    if _factory:
        await _factory.close()
        _factory = None


__all__ = [
    "CampaignDeliveryServiceFactory",
    "get_factory",
    "close_factory",
]
