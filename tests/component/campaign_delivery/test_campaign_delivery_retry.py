"""
Component Tests for Campaign Retries

Re-sending undelivered recipients, batch attempts running out and the
re-queue of failed batch jobs.
"""

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_delivery_service.models import (
    BatchProgress,
    CampaignStatus,
    EmailEventType,
    JobState,
    QueueName,
)
from tests.fixtures import make_email_event


def deliver(repository, campaign, *emails):
    """Record delivered events for the given recipients"""
    for email in emails:
        repository.events.append(
            make_email_event(
                EmailEventType.DELIVERED,
                tenant_id=campaign.tenant_id,
                campaign_id=campaign.id,
                recipient_email=email,
            )
        )


class TestRetryEligibility:

    @pytest.mark.asyncio
    async def test_eligible_campaign(self, campaign_service, seed_campaign, tenant_id):
        campaign = seed_campaign(tenant_id, status=CampaignStatus.SENT, total_sent=10, delivered=7)

        result = await campaign_service.check_retry_eligibility(campaign.id, tenant_id)

        assert result.success is True
        assert result.data["eligible"] is True
        assert result.data["failure_rate"] == pytest.approx(30.0)
        assert result.data["reason"] == "Campaign had 30.0% failure rate and is eligible for retry"

    @pytest.mark.asyncio
    async def test_sending_campaign_not_eligible(self, campaign_service, seed_campaign, tenant_id):
        campaign = seed_campaign(tenant_id, status=CampaignStatus.SENDING)

        result = await campaign_service.check_retry_eligibility(campaign.id, tenant_id)

        assert result.data["eligible"] is False
        assert result.data["reason"] == "Campaign is currently being sent"


class TestRetryCampaign:
    """Re-send to recipients without a delivered event"""

    @pytest.mark.asyncio
    async def test_retry_resends_only_undelivered(
        self,
        campaign_service,
        seed_campaign,
        queue_driver,
        mock_campaign_repository,
        mock_analytics_repository,
        mock_transport,
        mock_event_bus,
        tenant_id,
    ):
        """Test delivered recipients are not mailed twice and total_sent is unchanged"""
        # Given
        campaign = seed_campaign(
            tenant_id, status=CampaignStatus.SENT, recipient_count=4, total_sent=4, delivered=2
        )
        deliver(mock_analytics_repository, campaign, "user0@example.com", "user1@example.com")

        # When
        result = await campaign_service.retry_campaign(campaign.id, tenant_id)

        # Then
        assert result.success is True
        assert result.message == "Campaign retry initiated"
        assert result.data["retry_count"] == 2
        assert len(result.data["batch_job_ids"]) == 1
        stored = mock_campaign_repository.stored(campaign.id)
        assert stored.status == CampaignStatus.SENDING
        assert stored.last_retry_at is not None
        mock_event_bus.assert_event_published("campaign.retry", {"campaign_id": campaign.id, "recipient_count": 2})

        # When
        await queue_driver.drain()

        # Then
        stored = mock_campaign_repository.stored(campaign.id)
        assert stored.status == CampaignStatus.SENT
        assert mock_transport.sent_emails == ["user2@example.com", "user3@example.com"]
        assert stored.analytics.total_sent == 4

    @pytest.mark.asyncio
    async def test_minimal_failures_rejected(self, campaign_service, seed_campaign, tenant_id, assertions):
        campaign = seed_campaign(tenant_id, status=CampaignStatus.SENT, total_sent=100, delivered=98)

        result = await campaign_service.retry_campaign(campaign.id, tenant_id)

        assertions.assert_action_failed(result, "validation_error")
        assert result.message == "Campaign had minimal failures (< 5%)"

    @pytest.mark.asyncio
    async def test_unsent_campaign_is_a_conflict(self, campaign_service, seed_campaign, tenant_id, assertions):
        campaign = seed_campaign(tenant_id, status=CampaignStatus.DRAFT)

        result = await campaign_service.retry_campaign(campaign.id, tenant_id)

        assertions.assert_action_failed(result, "state_conflict")
        assert result.message == "Campaign has not been sent yet"

    @pytest.mark.asyncio
    async def test_everyone_delivered(
        self, campaign_service, seed_campaign, mock_analytics_repository, tenant_id, assertions
    ):
        # Given analytics lag behind the event store
        campaign = seed_campaign(
            tenant_id, status=CampaignStatus.SENT, recipient_count=2, total_sent=2, delivered=1
        )
        deliver(mock_analytics_repository, campaign, "user0@example.com", "USER1@example.com")

        # When
        result = await campaign_service.retry_campaign(campaign.id, tenant_id)

        # Then
        assertions.assert_action_failed(result, "validation_error")
        assert result.message == "All recipients have already been delivered"


class TestFailedBatches:
    """Batch jobs that run out of attempts"""

    @pytest.mark.asyncio
    async def test_exhausted_batches_finish_campaign_then_retry(
        self,
        campaign_service,
        seed_campaign,
        queue_driver,
        batch_processor,
        mock_campaign_repository,
        mock_transport,
        mock_event_bus,
        tenant_id,
    ):
        """Test a provider outage fails the batches, and a later retry delivers them"""
        # Given the provider is down for the whole send
        campaign = seed_campaign(tenant_id, status=CampaignStatus.REVIEW, recipient_count=4)
        mock_transport.set_error()
        send = await campaign_service.send_campaign(campaign.id, tenant_id)

        # When every attempt is used up
        await queue_driver.run_until_idle()

        # Then the campaign is sent with failed batches
        stored = mock_campaign_repository.stored(campaign.id)
        assert stored.status == CampaignStatus.SENT
        assert stored.analytics.total_sent == 0
        status = await batch_processor.get_campaign_batch_status(campaign.id)
        assert status.status == BatchProgress.FAILED_PARTIAL
        assert status.failed_batches == 2
        for job_id in send.data["batch_job_ids"]:
            job = await campaign_service.queue_manager.get_job(QueueName.EMAIL, job_id)
            assert job.state == JobState.FAILED
            assert job.attempts_made == 3
        mock_event_bus.assert_event_published("campaign.sent", {"campaign_id": campaign.id, "failed_batches": 2})

        # When the provider recovers and the failed batches are retried
        mock_transport.clear_error()
        result = await campaign_service.retry_failed_batches(campaign.id, tenant_id)

        # Then
        assert result.success is True
        assert result.message == "Retry scheduled for 2 failed batches"
        assert sorted(result.data["retried_job_ids"]) == sorted(send.data["batch_job_ids"])
        assert mock_campaign_repository.stored(campaign.id).status == CampaignStatus.SENDING

        await queue_driver.drain()

        stored = mock_campaign_repository.stored(campaign.id)
        assert stored.status == CampaignStatus.SENT
        assert stored.analytics.total_sent == 4
        assert len(mock_transport.sent_emails) == 4

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_on_next_attempt(
        self, campaign_service, seed_campaign, queue_driver, mock_campaign_repository, mock_transport, tenant_id
    ):
        # Given
        campaign = seed_campaign(tenant_id, status=CampaignStatus.REVIEW, recipient_count=2)
        mock_transport.fail_next_calls(1)
        await campaign_service.send_campaign(campaign.id, tenant_id)

        # When
        await queue_driver.run_until_idle()

        # Then
        stored = mock_campaign_repository.stored(campaign.id)
        assert stored.status == CampaignStatus.SENT
        assert stored.analytics.total_sent == 2

    @pytest.mark.asyncio
    async def test_no_failed_batches(self, campaign_service, seed_campaign, tenant_id, assertions):
        campaign = seed_campaign(tenant_id, status=CampaignStatus.SENT)

        result = await campaign_service.retry_failed_batches(campaign.id, tenant_id)

        assertions.assert_action_failed(result, "validation_error")
        assert result.message == "No failed batches found for this campaign"
