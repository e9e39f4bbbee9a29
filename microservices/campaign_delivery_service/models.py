"""
Campaign Delivery Service Data Models

Canonical data structures for campaigns, delivery events, daily aggregates,
queue jobs and the action/response envelopes of the delivery service.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_rate(count: int, total: int) -> float:
    """Percentage of count over total, 0 when total is 0"""
    if total <= 0:
        return 0.0
    return count / total * 100


def round_rate(value: Optional[float]) -> float:
    return round(value or 0.0, 2)


# =============================================================================
# ENUMS
# =============================================================================

class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    REVIEW = "review"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class EmailEventType(str, Enum):
    """Delivery lifecycle event reported by the transport provider"""
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    UNSUBSCRIBED = "unsubscribed"
    COMPLAINED = "complained"


class JobState(str, Enum):
    """Queue job state"""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchJobStatus(str, Enum):
    """Status of a single recipient batch"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchProgress(str, Enum):
    """Overall progress across the batches of one send"""
    COMPLETED = "completed"
    IN_PROGRESS = "in-progress"
    FAILED_PARTIAL = "failed-partial"


class SendStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class ActionErrorCode(str, Enum):
    """Failure category carried by an action result"""
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    STATE_CONFLICT = "state_conflict"
    INTERNAL = "internal_error"


class AnalyticsJobType(str, Enum):
    CAMPAIGN_COMPLETE = "campaign-complete"
    DAILY_AGGREGATION = "daily-aggregation"


class AIJobType(str, Enum):
    CONTENT_GENERATION = "content-generation"
    SUBJECT_OPTIMIZATION = "subject-optimization"
    CAMPAIGN_INSIGHTS = "campaign-insights"


class QueueName(str, Enum):
    """Durable queues and their Redis names"""
    EMAIL = "email-processing"
    ANALYTICS = "analytics-processing"
    AI = "ai-processing"


# =============================================================================
# BASE
# =============================================================================

class BaseContract(BaseModel):
    """Base model for all contracts"""

    model_config = {
        "from_attributes": True,
    }


# =============================================================================
# CAMPAIGN MODELS
# =============================================================================

class Recipient(BaseContract):
    """One addressee of a campaign"""
    email: str = Field(..., min_length=3, max_length=320)
    name: Optional[str] = None
    personalizations: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v.strip().lower()


# Counter fields in campaign analytics, keyed by the event that increments them
EVENT_COUNTER_FIELDS = {
    EmailEventType.DELIVERED: "delivered",
    EmailEventType.OPENED: "opened",
    EmailEventType.CLICKED: "clicked",
    EmailEventType.BOUNCED: "bounced",
    EmailEventType.UNSUBSCRIBED: "unsubscribed",
    EmailEventType.COMPLAINED: "complained",
}


class CampaignAnalytics(BaseContract):
    """Per-campaign counter snapshot"""
    total_sent: int = Field(default=0, ge=0)
    delivered: int = Field(default=0, ge=0)
    opened: int = Field(default=0, ge=0)
    clicked: int = Field(default=0, ge=0)
    bounced: int = Field(default=0, ge=0)
    unsubscribed: int = Field(default=0, ge=0)
    complained: int = Field(default=0, ge=0)
    open_rate: float = 0.0
    click_rate: float = 0.0
    bounce_rate: float = 0.0
    last_updated: Optional[datetime] = None

    def with_increments(self, increments: Dict[str, int], now: Optional[datetime] = None) -> "CampaignAnalytics":
        """Return a copy with counters increased and rates recomputed"""
        values = self.model_dump()
        for counter, amount in increments.items():
            if counter not in values or counter.endswith("_rate") or counter == "last_updated":
                continue
            values[counter] = max(0, values[counter] + amount)
        updated = CampaignAnalytics(**values)
        updated.recompute_rates()
        updated.last_updated = now or utc_now()
        return updated

    def recompute_rates(self) -> None:
        self.open_rate = calculate_rate(self.opened, self.total_sent)
        self.click_rate = calculate_rate(self.clicked, self.total_sent)
        self.bounce_rate = calculate_rate(self.bounced, self.total_sent)


def count_events_by_counter(events: List["EmailEvent"]) -> Dict[str, int]:
    """Tally events into analytics counter increments"""
    counts: Dict[str, int] = {}
    for event in events:
        field_name = EVENT_COUNTER_FIELDS[event.event_type]
        counts[field_name] = counts.get(field_name, 0) + 1
    return counts


class Campaign(BaseContract):
    """Core Campaign model"""
    id: str = Field(default_factory=lambda: f"cmp_{uuid4().hex[:16]}")
    tenant_id: str
    name: str = Field(..., min_length=1, max_length=255)
    subject_line: str = Field(..., min_length=1, max_length=998)
    preview_text: Optional[str] = None
    recipients: List[Recipient] = Field(default_factory=list)
    status: CampaignStatus = Field(default=CampaignStatus.DRAFT)
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None
    analytics: CampaignAnalytics = Field(default_factory=CampaignAnalytics)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# EVENT MODELS
# =============================================================================

class EmailEvent(BaseContract):
    """Append-only delivery event"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    campaign_id: Optional[str] = None
    recipient_email: str
    event_type: EmailEventType
    event_data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class DailyMetrics(BaseContract):
    """Per-day rollup of one (tenant, campaign)"""
    total_sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    bounced: int = 0
    unsubscribed: int = 0
    complained: int = 0
    unique_opens: int = 0
    unique_clicks: int = 0


class DailyAggregate(BaseContract):
    tenant_id: str
    campaign_id: Optional[str] = None
    date: date
    metrics: DailyMetrics = Field(default_factory=DailyMetrics)


class PerformancePoint(BaseContract):
    """One day on the performance chart"""
    date: str
    sent: int = 0
    opened: int = 0
    clicked: int = 0


# =============================================================================
# QUEUE MODELS
# =============================================================================

class EmailJob(BaseContract):
    """Send a slice of a campaign's recipients"""
    kind: Literal["email"] = "email"
    campaign_id: str
    tenant_id: str
    recipients: List[Recipient] = Field(default_factory=list)
    batch_size: Optional[int] = Field(None, ge=1)
    batch_index: Optional[int] = None
    retry: bool = False


class AnalyticsJob(BaseContract):
    """Post-send analytics work"""
    kind: Literal["analytics"] = "analytics"
    campaign_id: Optional[str] = None
    tenant_id: Optional[str] = None
    event_type: AnalyticsJobType
    data: Dict[str, Any] = Field(default_factory=dict)


class AIJob(BaseContract):
    """Work item for the external AI content collaborator"""
    kind: Literal["ai"] = "ai"
    tenant_id: str
    type: AIJobType
    data: Dict[str, Any] = Field(default_factory=dict)


JobPayload = Annotated[Union[EmailJob, AnalyticsJob, AIJob], Field(discriminator="kind")]
JOB_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(JobPayload)

# Queue that owns each payload kind
PAYLOAD_QUEUES = {
    "email": QueueName.EMAIL,
    "analytics": QueueName.ANALYTICS,
    "ai": QueueName.AI,
}


class JobOptions(BaseContract):
    """Per-job submission options"""
    job_id: Optional[str] = None
    priority: int = Field(default=0, ge=0)
    delay_ms: int = Field(default=0, ge=0)
    attempts: int = Field(default=1, ge=1)
    backoff_ms: int = Field(default=0, ge=0)
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None


class Job(BaseContract):
    """Durable queue job record"""
    id: str
    name: str
    queue: str
    payload: JobPayload
    priority: int = 0
    delay_ms: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    backoff_ms: int = 0
    state: JobState = JobState.WAITING
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None
    timestamp: int
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: Optional[str] = None
    return_value: Optional[Any] = None


class JobHandle(BaseContract):
    id: str
    name: str
    queue: str


class QueueStats(BaseContract):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False


# =============================================================================
# BATCH MODELS
# =============================================================================

class BatchJob(BaseContract):
    """One recipient slice scheduled for delivery"""
    id: str
    campaign_id: str
    recipient_slice: List[Recipient] = Field(default_factory=list)
    status: BatchJobStatus = BatchJobStatus.PENDING


class BatchProcessingResult(BaseContract):
    total_batches: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    total_emails_sent: int = 0
    total_emails_failed: int = 0
    processing_time_ms: int = 0


class BatchStatus(BaseContract):
    total_batches: int = 0
    completed_batches: int = 0
    failed_batches: int = 0
    pending_batches: int = 0
    status: BatchProgress = BatchProgress.COMPLETED


class SendResult(BaseContract):
    """Outcome for one recipient of a transport batch call"""
    id: str = ""
    recipient: str
    status: SendStatus
    error: Optional[str] = None


class EmailBatch(BaseContract):
    """Payload handed to the transport for one chunk"""
    recipients: List[Recipient]
    subject: str
    from_address: str
    reply_to: Optional[str] = None
    html: Optional[str] = None
    text: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)


class RetryEligibility(BaseContract):
    eligible: bool
    reason: str
    failure_rate: float = 0.0
    last_retry_at: Optional[datetime] = None


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class ActionResult(BaseModel):
    """Envelope returned by every campaign action"""
    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ActionErrorCode] = None


class CampaignCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    subject_line: str = Field(..., min_length=1, max_length=998)
    preview_text: Optional[str] = None
    recipients: List[Recipient] = Field(default_factory=list)
    created_by: Optional[str] = None


class CampaignUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    subject_line: Optional[str] = Field(None, min_length=1, max_length=998)
    preview_text: Optional[str] = None
    recipients: Optional[List[Recipient]] = None


class CampaignListQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    status: Optional[CampaignStatus] = None
    sort_by: Literal["created_at", "updated_at", "scheduled_at", "sent_at", "name"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class ScheduleRequest(BaseModel):
    """Request to schedule a campaign"""
    scheduled_at: datetime
    timezone: str = "UTC"


class SendRequest(BaseModel):
    """Send now, or schedule when scheduled_at is in the future"""
    scheduled_at: Optional[datetime] = None


class WebhookResponse(BaseModel):
    message: str
    event_id: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    checks: Dict[str, bool] = Field(default_factory=dict)
    uptime: float
    service: str = "campaign_delivery_service"
    version: str = "1.0.0"


class LivenessResponse(BaseModel):
    """Liveness check response"""
    alive: bool
    uptime_seconds: float


class ErrorResponse(BaseModel):
    """Standard error response"""
    detail: str
    error_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


__all__ = [
    # Helpers
    "utc_now",
    "calculate_rate",
    "round_rate",
    "count_events_by_counter",
    "EVENT_COUNTER_FIELDS",
    # Enums
    "CampaignStatus",
    "EmailEventType",
    "JobState",
    "BatchJobStatus",
    "BatchProgress",
    "SendStatus",
    "ActionErrorCode",
    "AnalyticsJobType",
    "AIJobType",
    "QueueName",
    # Campaign
    "Recipient",
    "CampaignAnalytics",
    "Campaign",
    # Events
    "EmailEvent",
    "DailyMetrics",
    "DailyAggregate",
    "PerformancePoint",
    # Queue
    "EmailJob",
    "AnalyticsJob",
    "AIJob",
    "JobPayload",
    "JOB_PAYLOAD_ADAPTER",
    "PAYLOAD_QUEUES",
    "JobOptions",
    "Job",
    "JobHandle",
    "QueueStats",
    # Batches
    "BatchJob",
    "BatchProcessingResult",
    "BatchStatus",
    "SendResult",
    "EmailBatch",
    "RetryEligibility",
    # Request/Response
    "ActionResult",
    "CampaignCreateRequest",
    "CampaignUpdateRequest",
    "CampaignListQuery",
    "ScheduleRequest",
    "SendRequest",
    "WebhookResponse",
    "HealthResponse",
    "LivenessResponse",
    "ErrorResponse",
]
