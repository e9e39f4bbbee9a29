"""
Campaign Event Publishers

Publishes campaign lifecycle events to NATS JetStream.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .models import (
    CampaignEventType,
    CampaignCreatedEventData,
    CampaignScheduledEventData,
    CampaignSendingEventData,
    CampaignPausedEventData,
    CampaignResumedEventData,
    CampaignCancelledEventData,
    CampaignSentEventData,
    CampaignRetryEventData,
)

logger = logging.getLogger(__name__)


class CampaignEventPublisher:
    """Publisher for campaign delivery events"""

    def __init__(self, event_bus=None):
        self.event_bus = event_bus
        self.source = "campaign_delivery_service"

    async def publish(
        self,
        event_type: CampaignEventType,
        data: Dict[str, Any],
    ) -> bool:
        """
        Publish an event to NATS.

        Args:
            event_type: The event type enum
            data: Event data payload

        Returns:
            True if published successfully, False otherwise
        """
        if not self.event_bus:
            logger.debug(f"Event bus not configured, skipping publish: {event_type.value}")
            return False

        try:
            event = {
                "event_type": event_type.value,
                "source": self.source,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": data,
            }

            published = await self.event_bus.publish(event_type.value, event)
            if published:
                logger.debug(f"Published event: {event_type.value}")
            return bool(published)

        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")
            return False

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ====================
    # Campaign Lifecycle Events
    # ====================

    async def publish_campaign_created(
        self,
        campaign_id: str,
        tenant_id: str,
        name: str,
        recipient_count: int,
        created_by: Optional[str] = None,
    ) -> bool:
        """Publish campaign.created event"""
        data = CampaignCreatedEventData(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            name=name,
            recipient_count=recipient_count,
            created_by=created_by,
            timestamp=self._now(),
        )
        return await self.publish(CampaignEventType.CREATED, data.model_dump(mode="json"))

    async def publish_campaign_scheduled(
        self,
        campaign_id: str,
        tenant_id: str,
        scheduled_at: datetime,
        job_id: Optional[str] = None,
    ) -> bool:
        """Publish campaign.scheduled event"""
        data = CampaignScheduledEventData(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            scheduled_at=scheduled_at.isoformat(),
            job_id=job_id,
            timestamp=self._now(),
        )
        return await self.publish(CampaignEventType.SCHEDULED, data.model_dump(mode="json"))

    async def publish_campaign_sending(
        self,
        campaign_id: str,
        tenant_id: str,
        recipient_count: int,
        batch_count: int,
    ) -> bool:
        """Publish campaign.sending event"""
        data = CampaignSendingEventData(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            recipient_count=recipient_count,
            batch_count=batch_count,
            timestamp=self._now(),
        )
        return await self.publish(CampaignEventType.SENDING, data.model_dump(mode="json"))

    async def publish_campaign_paused(self, campaign_id: str, tenant_id: str, total_sent: int = 0) -> bool:
        """Publish campaign.paused event"""
        data = CampaignPausedEventData(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            total_sent=total_sent,
            timestamp=self._now(),
        )
        return await self.publish(CampaignEventType.PAUSED, data.model_dump(mode="json"))

    async def publish_campaign_resumed(self, campaign_id: str, tenant_id: str, pending_batches: int = 0) -> bool:
        """Publish campaign.resumed event"""
        data = CampaignResumedEventData(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            pending_batches=pending_batches,
            timestamp=self._now(),
        )
        return await self.publish(CampaignEventType.RESUMED, data.model_dump(mode="json"))

    async def publish_campaign_cancelled(self, campaign_id: str, tenant_id: str, previous_status: str) -> bool:
        """Publish campaign.cancelled event"""
        data = CampaignCancelledEventData(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            previous_status=previous_status,
            timestamp=self._now(),
        )
        return await self.publish(CampaignEventType.CANCELLED, data.model_dump(mode="json"))

    async def publish_campaign_sent(
        self,
        campaign_id: str,
        tenant_id: str,
        total_sent: int,
        delivered: int = 0,
        failed_batches: int = 0,
    ) -> bool:
        """Publish campaign.sent event"""
        data = CampaignSentEventData(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            total_sent=total_sent,
            delivered=delivered,
            failed_batches=failed_batches,
            timestamp=self._now(),
        )
        return await self.publish(CampaignEventType.SENT, data.model_dump(mode="json"))

    async def publish_campaign_retry(
        self,
        campaign_id: str,
        tenant_id: str,
        failure_rate: float,
        recipient_count: int,
    ) -> bool:
        """Publish campaign.retry event"""
        data = CampaignRetryEventData(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            failure_rate=failure_rate,
            recipient_count=recipient_count,
            timestamp=self._now(),
        )
        return await self.publish(CampaignEventType.RETRY, data.model_dump(mode="json"))


__all__ = ["CampaignEventPublisher"]
