"""
Campaign Delivery Service Events

Event models and publisher for campaign lifecycle events.
"""

from .models import (
    CampaignEventType,
    CampaignStreamConfig,
    CampaignEventData,
    CampaignCreatedEventData,
    CampaignScheduledEventData,
    CampaignSendingEventData,
    CampaignPausedEventData,
    CampaignResumedEventData,
    CampaignCancelledEventData,
    CampaignSentEventData,
    CampaignRetryEventData,
)
from .publishers import CampaignEventPublisher

__all__ = [
    # Event Types
    "CampaignEventType",
    "CampaignStreamConfig",
    # Event Data Models
    "CampaignEventData",
    "CampaignCreatedEventData",
    "CampaignScheduledEventData",
    "CampaignSendingEventData",
    "CampaignPausedEventData",
    "CampaignResumedEventData",
    "CampaignCancelledEventData",
    "CampaignSentEventData",
    "CampaignRetryEventData",
    # Publisher
    "CampaignEventPublisher",
]
