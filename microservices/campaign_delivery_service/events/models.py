"""
Campaign Delivery Event Data Models

Event type definitions and data structures for campaign lifecycle events.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Event Type Definitions
# =============================================================================


class CampaignEventType(str, Enum):
    """
    Events published by campaign_delivery_service.

    Other services should reference these when subscribing.
    """
    CREATED = "campaign.created"
    SCHEDULED = "campaign.scheduled"
    SENDING = "campaign.sending"
    PAUSED = "campaign.paused"
    RESUMED = "campaign.resumed"
    CANCELLED = "campaign.cancelled"
    SENT = "campaign.sent"
    RETRY = "campaign.retry"


class CampaignStreamConfig:
    """Stream configuration for campaign_delivery_service"""
    STREAM_NAME = "campaign-stream"
    SUBJECTS = ["campaign.>"]
    MAX_MESSAGES = 100000


# =============================================================================
# Event Data Models - Published Events
# =============================================================================


class CampaignEventData(BaseModel):
    """Fields shared by every campaign event"""
    campaign_id: str = Field(..., description="Campaign ID")
    tenant_id: str = Field(..., description="Owning tenant")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignCreatedEventData(CampaignEventData):
    """campaign.created event data"""
    name: str = Field(..., description="Campaign name")
    recipient_count: int = Field(0, description="Recipients on the campaign")
    created_by: Optional[str] = Field(None, description="User who created the campaign")


class CampaignScheduledEventData(CampaignEventData):
    """campaign.scheduled event data"""
    scheduled_at: str = Field(..., description="Scheduled send time (ISO format)")
    job_id: Optional[str] = Field(None, description="Delayed start job ID")


class CampaignSendingEventData(CampaignEventData):
    """campaign.sending event data"""
    recipient_count: int = Field(..., description="Recipients queued for delivery")
    batch_count: int = Field(..., description="Batch jobs enqueued")


class CampaignPausedEventData(CampaignEventData):
    """campaign.paused event data"""
    total_sent: int = Field(0, description="Messages sent before pause")


class CampaignResumedEventData(CampaignEventData):
    """campaign.resumed event data"""
    pending_batches: int = Field(0, description="Batches still to run")


class CampaignCancelledEventData(CampaignEventData):
    """campaign.cancelled event data"""
    previous_status: str = Field(..., description="Status before cancellation")


class CampaignSentEventData(CampaignEventData):
    """campaign.sent event data"""
    total_sent: int = Field(..., description="Messages attempted")
    delivered: int = Field(0, description="Messages confirmed delivered")
    failed_batches: int = Field(0, description="Batches that exhausted their retries")


class CampaignRetryEventData(CampaignEventData):
    """campaign.retry event data"""
    failure_rate: float = Field(..., description="Failure rate that triggered the retry")
    recipient_count: int = Field(..., description="Undelivered recipients re-queued")


__all__ = [
    "CampaignEventType",
    "CampaignStreamConfig",
    "CampaignEventData",
    "CampaignCreatedEventData",
    "CampaignScheduledEventData",
    "CampaignSendingEventData",
    "CampaignPausedEventData",
    "CampaignResumedEventData",
    "CampaignCancelledEventData",
    "CampaignSentEventData",
    "CampaignRetryEventData",
]
