"""
Report Service

Dashboard and campaign report queries. Chooses between pre-aggregated daily
rollups and real-time grouping over raw events, and caches results.
"""

import asyncio
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.config import CacheConfig, ReportConfig

from .analytics_service import campaign_report_key
from .cache_manager import CachePrefix
from .models import EmailEventType, PerformancePoint, calculate_rate, round_rate
from .protocols import (
    AnalyticsRepositoryProtocol,
    CacheProtocol,
    CampaignRepositoryProtocol,
    NotFoundError,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
TOP_LINKS_LIMIT = 10
TIMELINE_DAYS = 30


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def dashboard_cache_key(tenant_id: str, start: datetime, end: datetime) -> str:
    return f"dashboard:{tenant_id}:{_epoch_ms(start)}:{_epoch_ms(end)}"


def requested_days(start: datetime, end: datetime) -> int:
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


def has_aggregate_coverage(available_days: int, start: datetime, end: datetime, ratio: float = 0.8) -> bool:
    """True when daily rollups cover at least ratio of the requested days"""
    return available_days >= requested_days(start, end) * ratio


class ReportService:
    """Dashboard and campaign report queries"""

    def __init__(
        self,
        analytics_repository: AnalyticsRepositoryProtocol,
        campaign_repository: CampaignRepositoryProtocol,
        cache: CacheProtocol,
        config: Optional[ReportConfig] = None,
        cache_config: Optional[CacheConfig] = None,
    ):
        self.analytics_repository = analytics_repository
        self.campaign_repository = campaign_repository
        self.cache = cache
        self.config = config or ReportConfig()
        self.cache_config = cache_config or CacheConfig()

    # ====================
    # Dashboard
    # ====================

    async def get_optimized_dashboard_data(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> Dict[str, Any]:
        """Tenant dashboard for a date range, cached for a short TTL"""

        async def fetch() -> Dict[str, Any]:
            return await self._build_dashboard(tenant_id, start, end)

        return await self.cache.get_or_set(
            CachePrefix.ANALYTICS,
            dashboard_cache_key(tenant_id, start, end),
            fetch,
            ttl=self.cache_config.report_ttl,
        )

    async def _build_dashboard(self, tenant_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
        repo = self.analytics_repository
        (
            total_campaigns,
            total_sent,
            (avg_open_rate, avg_click_rate),
            recent,
            top,
            chart,
        ) = await asyncio.gather(
            repo.count_campaigns(tenant_id, start, end),
            repo.sum_total_sent(tenant_id, start, end),
            repo.average_rates(tenant_id, start, end),
            repo.recent_sent_campaigns(tenant_id, start, end, self.config.recent_campaigns_limit),
            repo.top_campaigns_by_open_rate(tenant_id, start, end, self.config.top_campaigns_limit),
            self.get_performance_chart_data(tenant_id, start, end),
        )

        return {
            "total_campaigns": total_campaigns,
            "total_sent": total_sent,
            "average_open_rate": round_rate(avg_open_rate),
            "average_click_rate": round_rate(avg_click_rate),
            "recent_campaigns": [
                {
                    "id": c["id"],
                    "name": c["name"],
                    "sent_at": c["sent_at"].isoformat() if c.get("sent_at") else None,
                    "open_rate": round_rate(c.get("open_rate")),
                    "click_rate": round_rate(c.get("click_rate")),
                }
                for c in recent
            ],
            "performance_chart": [point.model_dump() for point in chart],
            "top_performing_campaigns": [
                {
                    "id": c["id"],
                    "name": c["name"],
                    "open_rate": round_rate(c.get("open_rate")),
                    "click_rate": round_rate(c.get("click_rate")),
                }
                for c in top
            ],
        }

    async def get_performance_chart_data(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[PerformancePoint]:
        """
        Daily sent/opened/clicked series.

        Uses daily_analytics when it covers enough of the range, otherwise
        groups raw events. Errors degrade to an empty series.
        """
        try:
            aggregated = await self.analytics_repository.get_aggregate_series(tenant_id, start, end)
            if has_aggregate_coverage(len(aggregated), start, end, self.config.aggregate_coverage_ratio):
                return aggregated
            return await self.analytics_repository.get_realtime_series(tenant_id, start, end)
        except Exception as e:
            logger.error(f"Failed to get performance chart data for tenant {tenant_id}: {e}", exc_info=True)
            return []

    # ====================
    # Campaign Report
    # ====================

    async def get_optimized_campaign_report(self, campaign_id: str) -> Dict[str, Any]:
        """Per-campaign report, cached for a short TTL"""
        campaign = await self.campaign_repository.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")

        async def fetch() -> Dict[str, Any]:
            return await self._build_campaign_report(campaign_id, campaign.name, campaign.analytics.total_sent)

        return await self.cache.get_or_set(
            CachePrefix.ANALYTICS,
            campaign_report_key(campaign_id),
            fetch,
            ttl=self.cache_config.report_ttl,
        )

    async def _build_campaign_report(self, campaign_id: str, campaign_name: str, total_sent: int) -> Dict[str, Any]:
        repo = self.analytics_repository
        event_counts, unique_opens, unique_clicks, top_links, timeline = await asyncio.gather(
            repo.count_events_by_type(campaign_id),
            repo.count_unique_recipients(campaign_id, EmailEventType.OPENED),
            repo.count_unique_recipients(campaign_id, EmailEventType.CLICKED),
            repo.top_clicked_links(campaign_id, TOP_LINKS_LIMIT),
            repo.event_timeline(campaign_id, TIMELINE_DAYS),
        )

        metrics = {event_type.value: event_counts.get(event_type.value, 0) for event_type in EmailEventType}
        total_sent = total_sent or 0

        return {
            "campaign_id": campaign_id,
            "campaign_name": campaign_name,
            "total_sent": total_sent,
            **metrics,
            "open_rate": round_rate(calculate_rate(metrics["opened"], total_sent)),
            "click_rate": round_rate(calculate_rate(metrics["clicked"], total_sent)),
            "bounce_rate": round_rate(calculate_rate(metrics["bounced"], total_sent)),
            "unique_opens": unique_opens,
            "unique_clicks": unique_clicks,
            "top_links": top_links,
            "timeline": timeline,
        }

    async def invalidate_tenant_cache(self, tenant_id: str) -> int:
        return await self.cache.invalidate_tenant(tenant_id)


__all__ = [
    "ReportService",
    "dashboard_cache_key",
    "requested_days",
    "has_aggregate_coverage",
]
