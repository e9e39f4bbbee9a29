"""
Campaign Delivery Mocks for Component Testing

In-memory repositories and email transport that follow the repository and
transport protocols of the campaign delivery service.
"""
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from microservices.campaign_delivery_service.models import (
    Campaign,
    CampaignAnalytics,
    CampaignStatus,
    DailyAggregate,
    DailyMetrics,
    EmailBatch,
    EmailEvent,
    EmailEventType,
    PerformancePoint,
    SendResult,
    SendStatus,
    count_events_by_counter,
    utc_now,
)
from microservices.campaign_delivery_service.protocols import TransportError


class MockCampaignRepository:
    """Mock for CampaignRepository"""

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.calls: List[str] = []
        self._should_raise: Optional[Exception] = None

    def set_error(self, error: Exception):
        self._should_raise = error

    def _check(self, name: str):
        self.calls.append(name)
        if self._should_raise:
            raise self._should_raise

    def add(self, campaign: Campaign) -> Campaign:
        """Seed a campaign directly"""
        self.campaigns[campaign.id] = campaign.model_copy(deep=True)
        return campaign

    def stored(self, campaign_id: str) -> Campaign:
        return self.campaigns[campaign_id]

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return self._should_raise is None

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        self._check("create_campaign")
        self.campaigns[campaign.id] = campaign.model_copy(deep=True)
        return campaign.model_copy(deep=True)

    async def get_campaign(self, campaign_id: str, tenant_id: Optional[str] = None) -> Optional[Campaign]:
        self._check("get_campaign")
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or (tenant_id is not None and campaign.tenant_id != tenant_id):
            return None
        return campaign.model_copy(deep=True)

    async def list_campaigns(
        self,
        tenant_id: str,
        status: Optional[CampaignStatus] = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Campaign], int]:
        self._check("list_campaigns")
        matching = [
            c for c in self.campaigns.values()
            if c.tenant_id == tenant_id and (status is None or c.status == status)
        ]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        matching.sort(
            key=lambda c: getattr(c, sort_by) or (epoch if sort_by != "name" else ""),
            reverse=sort_order == "desc",
        )
        page = matching[offset:offset + limit]
        return [c.model_copy(deep=True) for c in page], len(matching)

    async def update_campaign(self, campaign_id: str, updates: Dict[str, Any]) -> Optional[Campaign]:
        self._check("update_campaign")
        campaign = self.campaigns.get(campaign_id)
        if campaign is None:
            return None
        for key, value in updates.items():
            setattr(campaign, key, value)
        campaign.updated_at = utc_now()
        return campaign.model_copy(deep=True)

    async def transition_status(
        self,
        campaign_id: str,
        from_statuses: List[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        self._check("transition_status")
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or campaign.status not in from_statuses:
            return None
        campaign.status = to_status
        for key, value in fields.items():
            setattr(campaign, key, value)
        campaign.updated_at = utc_now()
        return campaign.model_copy(deep=True)

    async def delete_campaign(self, campaign_id: str) -> bool:
        self._check("delete_campaign")
        return self.campaigns.pop(campaign_id, None) is not None

    async def get_status_counts(self, tenant_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for campaign in self.campaigns.values():
            if campaign.tenant_id == tenant_id:
                counts[campaign.status.value] += 1
        return dict(counts)

    async def get_sent_totals(self, tenant_id: str) -> Dict[str, float]:
        sent = [
            c for c in self.campaigns.values()
            if c.tenant_id == tenant_id and c.status == CampaignStatus.SENT
        ]
        if not sent:
            return {"total_sent": 0, "average_open_rate": 0.0, "average_click_rate": 0.0}
        return {
            "total_sent": sum(c.analytics.total_sent for c in sent),
            "average_open_rate": sum(c.analytics.open_rate for c in sent) / len(sent),
            "average_click_rate": sum(c.analytics.click_rate for c in sent) / len(sent),
        }

    async def list_upcoming(self, tenant_id: str, limit: int = 10) -> List[Campaign]:
        upcoming = [
            c for c in self.campaigns.values()
            if c.tenant_id == tenant_id and c.status == CampaignStatus.SCHEDULED and c.scheduled_at
        ]
        upcoming.sort(key=lambda c: c.scheduled_at)
        return [c.model_copy(deep=True) for c in upcoming[:limit]]

    async def increment_analytics(
        self, campaign_id: str, increments: Dict[str, int]
    ) -> Optional[CampaignAnalytics]:
        self._check("increment_analytics")
        campaign = self.campaigns.get(campaign_id)
        if campaign is None:
            return None
        campaign.analytics = campaign.analytics.with_increments(increments)
        return campaign.analytics.model_copy()


class MockAnalyticsRepository:
    """Mock for AnalyticsRepository backed by an in-memory event list"""

    def __init__(self, campaign_repository: Optional[MockCampaignRepository] = None):
        self.campaign_repository = campaign_repository
        self.events: List[EmailEvent] = []
        self.daily: Dict[Tuple[str, str, date], DailyMetrics] = {}
        self.aggregate_series: List[PerformancePoint] = []
        self.realtime_series: List[PerformancePoint] = []
        self.dashboard: Dict[str, Any] = {
            "count_campaigns": 0,
            "sum_total_sent": 0,
            "average_rates": (0.0, 0.0),
            "recent_sent_campaigns": [],
            "top_campaigns_by_open_rate": [],
        }
        self.series_calls: List[str] = []
        self._should_raise: Optional[Exception] = None

    def set_error(self, error: Exception):
        self._should_raise = error

    def _check(self):
        if self._should_raise:
            raise self._should_raise

    async def health_check(self) -> bool:
        return self._should_raise is None

    async def record_events(self, events: List[EmailEvent]) -> Dict[str, CampaignAnalytics]:
        self._check()
        if not events:
            return {}
        self.events.extend(events)

        by_campaign: Dict[str, List[EmailEvent]] = defaultdict(list)
        for event in events:
            if event.campaign_id:
                by_campaign[event.campaign_id].append(event)

        updated: Dict[str, CampaignAnalytics] = {}
        if self.campaign_repository is None:
            return updated
        for campaign_id in sorted(by_campaign):
            analytics = await self.campaign_repository.increment_analytics(
                campaign_id, count_events_by_counter(by_campaign[campaign_id])
            )
            if analytics is not None:
                updated[campaign_id] = analytics
        return updated

    async def get_delivered_recipients(self, campaign_id: str) -> Set[str]:
        self._check()
        return {
            e.recipient_email.lower() for e in self.events
            if e.campaign_id == campaign_id and e.event_type == EmailEventType.DELIVERED
        }

    async def compute_daily_metrics(self, day: date) -> List[DailyAggregate]:
        self._check()
        groups: Dict[Tuple[str, Optional[str]], List[EmailEvent]] = defaultdict(list)
        for event in self.events:
            if event.timestamp.date() == day:
                groups[(event.tenant_id, event.campaign_id)].append(event)

        aggregates = []
        for (tenant_id, campaign_id), events in groups.items():
            counts = count_events_by_counter(events)
            aggregates.append(
                DailyAggregate(
                    tenant_id=tenant_id,
                    campaign_id=campaign_id,
                    date=day,
                    metrics=DailyMetrics(
                        total_sent=counts.get("delivered", 0),
                        unique_opens=len({e.recipient_email for e in events if e.event_type == EmailEventType.OPENED}),
                        unique_clicks=len({e.recipient_email for e in events if e.event_type == EmailEventType.CLICKED}),
                        **counts,
                    ),
                )
            )
        return aggregates

    async def upsert_daily_aggregates(self, aggregates: List[DailyAggregate]) -> int:
        self._check()
        for agg in aggregates:
            self.daily[(agg.tenant_id, agg.campaign_id or "", agg.date)] = agg.metrics
        return len(aggregates)

    async def get_aggregate_series(self, tenant_id: str, start: datetime, end: datetime) -> List[PerformancePoint]:
        self._check()
        self.series_calls.append("aggregate")
        return list(self.aggregate_series)

    async def get_realtime_series(self, tenant_id: str, start: datetime, end: datetime) -> List[PerformancePoint]:
        self._check()
        self.series_calls.append("realtime")
        return list(self.realtime_series)

    async def count_campaigns(self, tenant_id: str, start: datetime, end: datetime) -> int:
        self._check()
        return self.dashboard["count_campaigns"]

    async def sum_total_sent(self, tenant_id: str, start: datetime, end: datetime) -> int:
        return self.dashboard["sum_total_sent"]

    async def average_rates(self, tenant_id: str, start: datetime, end: datetime) -> Tuple[float, float]:
        return self.dashboard["average_rates"]

    async def recent_sent_campaigns(self, tenant_id: str, start: datetime, end: datetime, limit: int) -> List[Dict[str, Any]]:
        return self.dashboard["recent_sent_campaigns"][:limit]

    async def top_campaigns_by_open_rate(self, tenant_id: str, start: datetime, end: datetime, limit: int) -> List[Dict[str, Any]]:
        return self.dashboard["top_campaigns_by_open_rate"][:limit]

    async def count_events_by_type(self, campaign_id: str) -> Dict[str, int]:
        self._check()
        counts: Dict[str, int] = defaultdict(int)
        for event in self.events:
            if event.campaign_id == campaign_id:
                counts[event.event_type.value] += 1
        return dict(counts)

    async def count_unique_recipients(self, campaign_id: str, event_type: EmailEventType) -> int:
        return len({
            e.recipient_email for e in self.events
            if e.campaign_id == campaign_id and e.event_type == event_type
        })

    async def top_clicked_links(self, campaign_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        clicks: Dict[str, int] = defaultdict(int)
        for event in self.events:
            url = event.event_data.get("link_url")
            if event.campaign_id == campaign_id and event.event_type == EmailEventType.CLICKED and url:
                clicks[url] += 1
        ranked = sorted(clicks.items(), key=lambda item: (-item[1], item[0]))[:limit]
        return [{"url": url, "clicks": count} for url, count in ranked]

    async def event_timeline(self, campaign_id: str, days: int = 30) -> List[Dict[str, Any]]:
        return []


class MockEmailTransport:
    """Mock for EmailTransportClient"""

    def __init__(self):
        self.batches: List[EmailBatch] = []
        self.failing_recipients: Set[str] = set()
        self.fail_calls = 0
        self._should_raise: Optional[Exception] = None
        self.healthy = True

    def set_error(self, error: Optional[Exception] = None):
        """Every send_batch call raises until clear_error()"""
        self._should_raise = error or TransportError("Provider unreachable")

    def clear_error(self):
        self._should_raise = None

    def fail_next_calls(self, count: int):
        self.fail_calls = count

    @property
    def sent_emails(self) -> List[str]:
        return [r.email for batch in self.batches for r in batch.recipients]

    async def send_batch(self, batch: EmailBatch) -> List[SendResult]:
        if self._should_raise:
            raise self._should_raise
        if self.fail_calls > 0:
            self.fail_calls -= 1
            raise TransportError("Provider timeout")

        self.batches.append(batch)
        results = []
        for index, recipient in enumerate(batch.recipients):
            if recipient.email in self.failing_recipients:
                results.append(SendResult(recipient=recipient.email, status=SendStatus.FAILED, error="Rejected"))
            else:
                results.append(
                    SendResult(id=f"msg_{len(self.batches)}_{index}", recipient=recipient.email, status=SendStatus.SENT)
                )
        return results

    async def health_check(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        pass
