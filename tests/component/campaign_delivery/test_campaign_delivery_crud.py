"""
Component Tests for Campaign CRUD and Review

Create, read, list, update, delete and submit-for-review through
CampaignService with in-memory backends.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_delivery_service.campaign_service import campaign_lock_name
from microservices.campaign_delivery_service.models import (
    CampaignListQuery,
    CampaignStatus,
    QueueName,
    Recipient,
)
from tests.contracts.campaign_delivery.data_contract import (
    CampaignCreateRequestBuilder,
    make_update_request,
)


class TestCreateCampaign:

    @pytest.mark.asyncio
    async def test_create_draft(self, campaign_service, mock_campaign_repository, mock_event_bus, tenant_id):
        """Test a new campaign is stored in draft and announced"""
        # Given
        request = CampaignCreateRequestBuilder().with_name("Autumn Digest").with_recipients(3).build()

        # When
        result = await campaign_service.create_campaign(tenant_id, request)

        # Then
        assert result.success is True
        assert result.message == "Campaign created successfully"
        assert result.data["status"] == "draft"
        assert result.data["tenant_id"] == tenant_id
        stored = mock_campaign_repository.stored(result.data["id"])
        assert stored.name == "Autumn Digest"
        assert len(stored.recipients) == 3
        mock_event_bus.assert_event_published(
            "campaign.created", {"campaign_id": stored.id, "recipient_count": 3}
        )

    @pytest.mark.asyncio
    async def test_create_survives_event_bus_outage(self, campaign_service, mock_event_bus, tenant_id):
        mock_event_bus.set_error(ConnectionError("nats down"))
        result = await campaign_service.create_campaign(tenant_id, CampaignCreateRequestBuilder().build())
        assert result.success is True

    @pytest.mark.asyncio
    async def test_store_failure_is_internal(self, campaign_service, mock_campaign_repository, tenant_id, assertions):
        mock_campaign_repository.set_error(RuntimeError("db down"))

        result = await campaign_service.create_campaign(tenant_id, CampaignCreateRequestBuilder().build())

        assertions.assert_action_failed(result, "internal_error")
        assert result.message == "Failed to create campaign"


class TestGetAndList:

    @pytest.mark.asyncio
    async def test_get_own_campaign(self, campaign_service, seed_campaign, tenant_id):
        campaign = seed_campaign(tenant_id)
        result = await campaign_service.get_campaign(campaign.id, tenant_id)
        assert result.success is True
        assert result.data["id"] == campaign.id

    @pytest.mark.asyncio
    async def test_other_tenant_not_found(self, campaign_service, seed_campaign, tenant_id, assertions):
        """Test campaigns are invisible across tenants"""
        campaign = seed_campaign(tenant_id)

        result = await campaign_service.get_campaign(campaign.id, "ten_someone_else")

        assertions.assert_action_failed(result, "not_found")
        assert result.message == "Campaign not found"

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, campaign_service, seed_campaign, tenant_id):
        # Given
        for name in ("Charlie", "Alpha", "Bravo"):
            seed_campaign(tenant_id, name=name)
        seed_campaign(tenant_id, name="Sent One", status=CampaignStatus.SENT)
        seed_campaign("ten_other", name="Foreign")

        # When
        result = await campaign_service.list_campaigns(
            tenant_id,
            CampaignListQuery(status=CampaignStatus.DRAFT, sort_by="name", sort_order="asc", limit=2),
        )

        # Then
        assert result.success is True
        assert [c["name"] for c in result.data["campaigns"]] == ["Alpha", "Bravo"]
        assert result.data["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}

    @pytest.mark.asyncio
    async def test_list_second_page(self, campaign_service, seed_campaign, tenant_id):
        for name in ("Charlie", "Alpha", "Bravo"):
            seed_campaign(tenant_id, name=name)

        result = await campaign_service.list_campaigns(
            tenant_id, CampaignListQuery(page=2, limit=2, sort_by="name", sort_order="asc")
        )

        assert [c["name"] for c in result.data["campaigns"]] == ["Charlie"]

    @pytest.mark.asyncio
    async def test_empty_list(self, campaign_service, tenant_id):
        result = await campaign_service.list_campaigns(tenant_id)
        assert result.data["campaigns"] == []
        assert result.data["pagination"]["total_pages"] == 0

    @pytest.mark.asyncio
    async def test_stats(self, campaign_service, seed_campaign, tenant_id):
        # Given
        seed_campaign(tenant_id)
        seed_campaign(tenant_id, status=CampaignStatus.SCHEDULED)
        sent = seed_campaign(tenant_id, status=CampaignStatus.SENT, total_sent=100, delivered=90)

        # When
        result = await campaign_service.get_campaign_stats(tenant_id)

        # Then
        assert result.data["total"] == 3
        assert (result.data["draft"], result.data["scheduled"], result.data["sent"]) == (1, 1, 1)
        assert result.data["total_emails_sent"] == sent.analytics.total_sent

    @pytest.mark.asyncio
    async def test_upcoming_ordered_by_schedule(self, campaign_service, seed_campaign, tenant_id):
        now = datetime.now(timezone.utc)
        late = seed_campaign(tenant_id, status=CampaignStatus.SCHEDULED, scheduled_at=now + timedelta(days=2))
        soon = seed_campaign(tenant_id, status=CampaignStatus.SCHEDULED, scheduled_at=now + timedelta(hours=1))
        seed_campaign(tenant_id)

        result = await campaign_service.get_upcoming_campaigns(tenant_id)

        assert [c["id"] for c in result.data] == [soon.id, late.id]


class TestUpdateCampaign:

    @pytest.mark.asyncio
    async def test_partial_update(self, campaign_service, seed_campaign, tenant_id):
        # Given
        campaign = seed_campaign(tenant_id)

        # When
        result = await campaign_service.update_campaign(
            campaign.id, tenant_id, make_update_request(subject_line="New subject")
        )

        # Then
        assert result.success is True
        assert result.data["subject_line"] == "New subject"
        assert result.data["name"] == campaign.name

    @pytest.mark.asyncio
    async def test_replace_recipients(self, campaign_service, seed_campaign, mock_campaign_repository, tenant_id):
        campaign = seed_campaign(tenant_id)

        await campaign_service.update_campaign(
            campaign.id, tenant_id, make_update_request(recipients=[Recipient(email="only@example.com")])
        )

        assert [r.email for r in mock_campaign_repository.stored(campaign.id).recipients] == ["only@example.com"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,message",
        [
            (CampaignStatus.SENT, "Cannot update a sent campaign"),
            (CampaignStatus.SENDING, "Cannot update a campaign that is currently being sent"),
        ],
    )
    async def test_frozen_statuses(self, campaign_service, seed_campaign, tenant_id, assertions, status, message):
        campaign = seed_campaign(tenant_id, status=status)

        result = await campaign_service.update_campaign(campaign.id, tenant_id, make_update_request(name="X"))

        assertions.assert_action_failed(result, "state_conflict")
        assert result.message == message

    @pytest.mark.asyncio
    async def test_contended_lock(self, campaign_service, seed_campaign, cache, tenant_id, assertions):
        """Test a concurrent modification is reported as a conflict"""
        # Given
        campaign = seed_campaign(tenant_id)
        await cache.acquire_lock(campaign_lock_name(campaign.id))

        # When
        result = await campaign_service.update_campaign(campaign.id, tenant_id, make_update_request(name="X"))

        # Then
        assertions.assert_action_failed(result, "state_conflict")
        assert result.message == "Campaign is being modified by another request, please retry shortly"


class TestDeleteCampaign:

    @pytest.mark.asyncio
    async def test_delete_draft(self, campaign_service, seed_campaign, mock_campaign_repository, tenant_id):
        campaign = seed_campaign(tenant_id)

        result = await campaign_service.delete_campaign(campaign.id, tenant_id)

        assert result.success is True
        assert campaign.id not in mock_campaign_repository.campaigns

    @pytest.mark.asyncio
    async def test_delete_scheduled_cancels_job(self, campaign_service, seed_campaign, queue_manager, tenant_id):
        # Given
        campaign = seed_campaign(tenant_id, status=CampaignStatus.SCHEDULED)
        await queue_manager.schedule_email_campaign(
            campaign.id, tenant_id, datetime.now(timezone.utc) + timedelta(hours=1)
        )

        # When
        result = await campaign_service.delete_campaign(campaign.id, tenant_id)

        # Then
        assert result.success is True
        assert (await queue_manager.get_queue_stats(QueueName.EMAIL)).delayed == 0

    @pytest.mark.asyncio
    async def test_delete_sending_rejected(self, campaign_service, seed_campaign, tenant_id, assertions):
        campaign = seed_campaign(tenant_id, status=CampaignStatus.SENDING)
        result = await campaign_service.delete_campaign(campaign.id, tenant_id)
        assertions.assert_action_failed(result, "state_conflict")


class TestSubmitForReview:

    @pytest.mark.asyncio
    async def test_draft_to_review(self, campaign_service, seed_campaign, mock_campaign_repository, tenant_id):
        campaign = seed_campaign(tenant_id)

        result = await campaign_service.submit_for_review(campaign.id, tenant_id)

        assert result.success is True
        assert result.message == "Campaign submitted for review"
        assert mock_campaign_repository.stored(campaign.id).status == CampaignStatus.REVIEW

    @pytest.mark.asyncio
    async def test_only_drafts_can_be_submitted(self, campaign_service, seed_campaign, tenant_id, assertions):
        campaign = seed_campaign(tenant_id, status=CampaignStatus.REVIEW)

        result = await campaign_service.submit_for_review(campaign.id, tenant_id)

        assertions.assert_action_failed(result, "state_conflict")
        assert result.message == "Cannot submit campaign with status: review"

    @pytest.mark.asyncio
    async def test_missing_campaign(self, campaign_service, tenant_id, assertions):
        result = await campaign_service.submit_for_review("cmp_missing", tenant_id)
        assertions.assert_action_failed(result, "not_found")
