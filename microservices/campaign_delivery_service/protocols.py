"""
Campaign Delivery Service Protocols

Defines interfaces for dependency injection and testing, plus the
service's exception taxonomy.
"""

from datetime import date, datetime
from typing import (
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
)

from .models import (
    Campaign,
    CampaignAnalytics,
    CampaignStatus,
    DailyAggregate,
    EmailBatch,
    EmailEvent,
    EmailEventType,
    PerformancePoint,
    SendResult,
)


# ====================
# Repository Protocols
# ====================


class CampaignRepositoryProtocol(Protocol):
    """Protocol for campaign data repository"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def health_check(self) -> bool:
        """Check repository health"""
        ...

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        """Insert a campaign"""
        ...

    async def get_campaign(
        self, campaign_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Campaign]:
        """Get campaign by ID, optionally scoped to a tenant"""
        ...

    async def list_campaigns(
        self,
        tenant_id: str,
        status: Optional[CampaignStatus] = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Campaign], int]:
        """List campaigns with filters"""
        ...

    async def update_campaign(
        self, campaign_id: str, updates: Dict[str, Any]
    ) -> Optional[Campaign]:
        """Update campaign content fields"""
        ...

    async def transition_status(
        self,
        campaign_id: str,
        from_statuses: List[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        """Atomically move a campaign to a new status if it is in one of from_statuses"""
        ...

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Delete campaign"""
        ...

    async def get_status_counts(self, tenant_id: str) -> Dict[str, int]:
        """Campaign counts by status"""
        ...

    async def get_sent_totals(self, tenant_id: str) -> Dict[str, float]:
        """Summed total_sent and average open/click rate over sent campaigns"""
        ...

    async def list_upcoming(self, tenant_id: str, limit: int = 10) -> List[Campaign]:
        """Scheduled campaigns ordered by scheduled_at"""
        ...

    async def increment_analytics(
        self, campaign_id: str, increments: Dict[str, int]
    ) -> Optional[CampaignAnalytics]:
        """Row-locked counter increment with rate recompute"""
        ...


class AnalyticsRepositoryProtocol(Protocol):
    """Protocol for event store, daily aggregates and report queries"""

    async def health_check(self) -> bool:
        ...

    # Event ingestion
    async def record_events(
        self, events: List[EmailEvent]
    ) -> Dict[str, CampaignAnalytics]:
        """Insert events and apply one analytics update per campaign, in one transaction"""
        ...

    async def get_delivered_recipients(self, campaign_id: str) -> Set[str]:
        """Recipients with a delivered event for the campaign"""
        ...

    # Nightly rollup
    async def compute_daily_metrics(self, day: date) -> List[DailyAggregate]:
        """Group one day's events by (tenant, campaign)"""
        ...

    async def upsert_daily_aggregates(self, aggregates: List[DailyAggregate]) -> int:
        """Insert or overwrite aggregates keyed by (tenant, campaign, date)"""
        ...

    # Performance series
    async def get_aggregate_series(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[PerformancePoint]:
        ...

    async def get_realtime_series(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> List[PerformancePoint]:
        ...

    # Dashboard
    async def count_campaigns(self, tenant_id: str, start: datetime, end: datetime) -> int:
        ...

    async def sum_total_sent(self, tenant_id: str, start: datetime, end: datetime) -> int:
        ...

    async def average_rates(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> Tuple[float, float]:
        ...

    async def recent_sent_campaigns(
        self, tenant_id: str, start: datetime, end: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        ...

    async def top_campaigns_by_open_rate(
        self, tenant_id: str, start: datetime, end: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        ...

    # Campaign report
    async def count_events_by_type(self, campaign_id: str) -> Dict[str, int]:
        ...

    async def count_unique_recipients(
        self, campaign_id: str, event_type: EmailEventType
    ) -> int:
        ...

    async def top_clicked_links(self, campaign_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        ...

    async def event_timeline(self, campaign_id: str, days: int = 30) -> List[Dict[str, Any]]:
        ...


# ====================
# Infrastructure Protocols
# ====================


class CacheProtocol(Protocol):
    """Protocol for the TTL cache and distributed lock"""

    async def get(self, prefix: str, key: str) -> Optional[Any]:
        ...

    async def set(self, prefix: str, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        ...

    async def delete(self, prefix: str, key: str) -> bool:
        ...

    async def get_or_set(
        self,
        prefix: str,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
        refresh_threshold: Optional[float] = None,
    ) -> Any:
        ...

    async def acquire_lock(
        self, name: str, ttl: int = 30, retries: int = 3, delay: float = 0.1
    ) -> Optional[str]:
        ...

    async def release_lock(self, name: str, token: str) -> bool:
        ...

    def lock(
        self, name: str, ttl: int = 30, retries: int = 3, delay: float = 0.1
    ) -> AsyncContextManager[str]:
        """Hold a lock for the body; raises LockNotAcquiredError when contended"""
        ...

    async def invalidate_tenant(self, tenant_id: str) -> int:
        ...


class EmailTransportProtocol(Protocol):
    """Protocol for the external batch-send provider"""

    async def send_batch(self, batch: EmailBatch) -> List[SendResult]:
        """Send one batch; raises TransportError when the call itself fails"""
        ...

    async def health_check(self) -> bool:
        ...


class EventBusProtocol(Protocol):
    """Protocol for event bus operations"""

    async def publish(self, subject: str, data: Dict[str, Any]) -> bool:
        """Publish an event to the event bus"""
        ...


# ====================
# Exceptions
# ====================


class CampaignDeliveryError(Exception):
    """Base exception for campaign delivery errors"""
    pass


class ValidationError(CampaignDeliveryError):
    """Raised when input fails validation"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(CampaignDeliveryError):
    """Raised when a campaign or tenant is not found"""
    pass


class StateConflictError(CampaignDeliveryError):
    """Raised when campaign is in invalid state for operation"""

    def __init__(self, message: str, current_status: Optional[CampaignStatus] = None):
        super().__init__(message)
        self.current_status = current_status


class TransientInfraError(CampaignDeliveryError):
    """Raised when cache, queue or store connectivity fails"""
    pass


class LockNotAcquiredError(TransientInfraError):
    """Raised when a distributed lock stays held by someone else"""

    def __init__(self, name: str):
        super().__init__(f"Could not acquire lock: {name}")
        self.name = name


class TransportError(CampaignDeliveryError):
    """Raised when the email provider call fails as a whole"""
    pass


class UnsupportedJobError(CampaignDeliveryError):
    """Raised when a worker receives a payload it does not process"""
    pass


class JobDeferred(Exception):
    """Signals a worker to put the job back in delayed without using an attempt"""

    def __init__(self, delay_ms: int, reason: str = ""):
        super().__init__(reason or f"Deferred for {delay_ms}ms")
        self.delay_ms = delay_ms
        self.reason = reason


__all__ = [
    "CampaignRepositoryProtocol",
    "AnalyticsRepositoryProtocol",
    "CacheProtocol",
    "EmailTransportProtocol",
    "EventBusProtocol",
    "CampaignDeliveryError",
    "ValidationError",
    "NotFoundError",
    "StateConflictError",
    "TransientInfraError",
    "LockNotAcquiredError",
    "TransportError",
    "UnsupportedJobError",
    "JobDeferred",
]
