"""
Analytics Service

Event ingestion and aggregation: records delivery events with transactional
counter updates, runs the nightly rollup and processes analytics jobs.
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from core.config import ReportConfig

from .cache_manager import CachePrefix
from .job_queue import chunk_list
from .models import (
    AnalyticsJob,
    AnalyticsJobType,
    CampaignAnalytics,
    EmailEvent,
    utc_now,
)
from .protocols import (
    AnalyticsRepositoryProtocol,
    CacheProtocol,
    CampaignRepositoryProtocol,
    UnsupportedJobError,
)

logger = logging.getLogger(__name__)

NIGHTLY_LOCK_NAME = "nightly-aggregation"
NIGHTLY_LOCK_TTL = 600


def campaign_report_key(campaign_id: str) -> str:
    return f"campaign-report:{campaign_id}"


class AnalyticsService:
    """
    Event ingestion and aggregation.

    Write paths propagate failures so the job that drove them is retried as
    a whole; cache invalidation afterwards is best effort.
    """

    def __init__(
        self,
        repository: AnalyticsRepositoryProtocol,
        cache: CacheProtocol,
        campaign_repository: Optional[CampaignRepositoryProtocol] = None,
        config: Optional[ReportConfig] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.campaign_repository = campaign_repository
        self.config = config or ReportConfig()

    # ====================
    # Event Recording
    # ====================

    async def record_email_event(self, event: EmailEvent) -> Optional[CampaignAnalytics]:
        """
        Store one event and, in the same transaction, bump the owning
        campaign's counter. Events without a campaign are stored only.
        """
        updated = await self.repository.record_events([event])
        if event.campaign_id:
            await self.cache.delete(CachePrefix.ANALYTICS, campaign_report_key(event.campaign_id))
        return updated.get(event.campaign_id) if event.campaign_id else None

    async def record_email_events_batch(self, events: List[EmailEvent]) -> Dict[str, CampaignAnalytics]:
        """All events in one transaction, one analytics update per campaign"""
        if not events:
            return {}
        updated = await self.repository.record_events(events)
        for campaign_id in updated:
            await self.cache.delete(CachePrefix.ANALYTICS, campaign_report_key(campaign_id))
        return updated

    async def batch_process_email_events(self, events: List[EmailEvent]) -> int:
        """
        Bulk ingestion in chunks, one transaction per chunk.

        After each chunk commits, cache entries of every tenant it touched
        are invalidated. Returns the number of events stored.
        """
        if not events:
            return 0

        processed = 0
        for chunk in chunk_list(events, self.config.event_chunk_size):
            await self.repository.record_events(chunk)
            processed += len(chunk)
            for tenant_id in sorted({event.tenant_id for event in chunk}):
                await self.invalidate_tenant_cache(tenant_id)

        logger.info(f"Batch processed {processed} email events")
        return processed

    async def invalidate_tenant_cache(self, tenant_id: str) -> int:
        return await self.cache.invalidate_tenant(tenant_id)

    # ====================
    # Nightly Rollup
    # ====================

    async def aggregate_nightly_metrics(self, day: Optional[date] = None) -> Optional[int]:
        """
        Roll up one day's events (yesterday by default) into daily_analytics.

        Runs under the ``nightly-aggregation`` lock; returns None when
        another instance holds it, otherwise the number of rows upserted.
        """
        day = day or (utc_now().date() - timedelta(days=1))

        token = await self.cache.acquire_lock(NIGHTLY_LOCK_NAME, ttl=NIGHTLY_LOCK_TTL, retries=1)
        if token is None:
            logger.info(f"Nightly aggregation for {day} already running elsewhere, skipping")
            return None

        try:
            aggregates = await self.repository.compute_daily_metrics(day)
            upserted = await self.repository.upsert_daily_aggregates(aggregates)
            logger.info(f"Aggregated metrics for {upserted} (tenant, campaign) pairs on {day}")
            return upserted
        finally:
            await self.cache.release_lock(NIGHTLY_LOCK_NAME, token)

    # ====================
    # Job Processing
    # ====================

    async def process_analytics_job(self, job: AnalyticsJob) -> Dict[str, Any]:
        if job.event_type == AnalyticsJobType.CAMPAIGN_COMPLETE:
            return await self._handle_campaign_complete(job)
        if job.event_type == AnalyticsJobType.DAILY_AGGREGATION:
            return await self._handle_daily_aggregation(job)
        raise UnsupportedJobError(f"Unknown analytics event type: {job.event_type}")

    async def _handle_campaign_complete(self, job: AnalyticsJob) -> Dict[str, Any]:
        if job.campaign_id:
            await self.cache.delete(CachePrefix.ANALYTICS, campaign_report_key(job.campaign_id))
        if job.tenant_id:
            await self.invalidate_tenant_cache(job.tenant_id)

        analytics = CampaignAnalytics()
        if job.campaign_id and self.campaign_repository is not None:
            campaign = await self.campaign_repository.get_campaign(job.campaign_id)
            if campaign is not None:
                analytics = campaign.analytics

        logger.info(f"Processed completion analytics for campaign {job.campaign_id}")
        return {
            "campaign_id": job.campaign_id,
            "metrics": {
                "total_sent": analytics.total_sent,
                "delivered": analytics.delivered,
                "opened": analytics.opened,
                "clicked": analytics.clicked,
                "open_rate": round(analytics.open_rate, 2),
            },
            "processed_at": utc_now().isoformat(),
        }

    async def _handle_daily_aggregation(self, job: AnalyticsJob) -> Dict[str, Any]:
        day = date.fromisoformat(job.data["day"]) if job.data.get("day") else None
        upserted = await self.aggregate_nightly_metrics(day)

        return {
            "aggregation_type": "daily",
            "day": day.isoformat() if day else None,
            "upserted": upserted,
            "skipped": upserted is None,
            "processed_at": utc_now().isoformat(),
        }


__all__ = ["AnalyticsService", "campaign_report_key", "NIGHTLY_LOCK_NAME"]
