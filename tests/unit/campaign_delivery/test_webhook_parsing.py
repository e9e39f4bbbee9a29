"""
Unit Tests for Provider Webhook Parsing

Tests mapping of provider payloads to EmailEvents and the tag/header
fallbacks used to find tenant and campaign.
"""

import pytest
from datetime import datetime, timezone
from uuid import UUID

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_delivery_service.models import EmailEventType
from microservices.campaign_delivery_service.webhook_processor import (
    PROVIDER_EVENT_TYPES,
    extract_ids,
    extract_recipient,
    process_webhook,
)
from tests.contracts.campaign_delivery.data_contract import PROVIDER_TYPES
from tests.fixtures import make_resend_payload


class TestExtractIds:
    """Tenant and campaign resolution"""

    def test_object_tags(self):
        data = {"tags": [{"name": "tenant", "value": "ten_1"}, {"name": "campaign", "value": "cmp_1"}]}
        assert extract_ids(data) == ("ten_1", "cmp_1")

    def test_string_tags(self):
        data = {"tags": ["tenant:ten_1", "campaign:cmp_1"]}
        assert extract_ids(data) == ("ten_1", "cmp_1")

    def test_colon_in_tag_name(self):
        """Test {"name": "tenant:abc"} style tags"""
        data = {"tags": [{"name": "tenant:ten_1"}]}
        assert extract_ids(data) == ("ten_1", None)

    def test_mapping_tags(self):
        assert extract_ids({"tags": {"tenant": "ten_1", "campaign": "cmp_1"}}) == ("ten_1", "cmp_1")

    def test_header_dict_fallback(self):
        data = {"headers": {"X-Tenant-ID": "ten_h", "X-Campaign-ID": "cmp_h"}}
        assert extract_ids(data) == ("ten_h", "cmp_h")

    def test_header_list_fallback(self):
        data = {
            "headers": [
                {"name": "X-Tenant-ID", "value": "ten_h"},
                {"name": "X-Campaign-ID", "value": "cmp_h"},
            ]
        }
        assert extract_ids(data) == ("ten_h", "cmp_h")

    def test_tags_take_precedence_over_headers(self):
        # Given
        data = {
            "tags": ["tenant:ten_tag"],
            "headers": {"X-Tenant-ID": "ten_header", "X-Campaign-ID": "cmp_header"},
        }

        # When
        tenant_id, campaign_id = extract_ids(data)

        # Then
        assert tenant_id == "ten_tag"
        assert campaign_id == "cmp_header"

    def test_nothing_found(self):
        assert extract_ids({}) == (None, None)


class TestExtractRecipient:
    """Recipient resolution"""

    def test_first_of_list_lowercased(self):
        assert extract_recipient({"to": ["User@Example.COM", "other@example.com"]}) == "user@example.com"

    def test_object_list(self):
        assert extract_recipient({"to": [{"email": "a@example.com"}]}) == "a@example.com"

    def test_plain_string(self):
        assert extract_recipient({"to": "b@example.com"}) == "b@example.com"

    def test_email_field_fallback(self):
        assert extract_recipient({"to": [], "email": "c@example.com"}) == "c@example.com"

    def test_missing(self):
        assert extract_recipient({"to": []}) is None


class TestProcessWebhook:
    """Payload -> EmailEvent"""

    def test_event_type_table(self):
        """Test the mapped provider types"""
        assert PROVIDER_EVENT_TYPES == PROVIDER_TYPES

    def test_delivered_event(self):
        # Given
        payload = make_resend_payload("email.delivered")

        # When
        event = process_webhook(payload)

        # Then
        assert event is not None
        assert event.event_type == EmailEventType.DELIVERED
        assert event.tenant_id == "ten_test"
        assert event.campaign_id == "cmp_test"
        assert event.recipient_email == "user0@example.com"
        assert event.event_data["message_id"] == "re_msg_123"
        assert event.timestamp == datetime(2026, 3, 1, 10, 15, tzinfo=timezone.utc)

    def test_event_id_is_fresh_uuid(self):
        first = process_webhook(make_resend_payload())
        second = process_webhook(make_resend_payload())
        assert UUID(first.id).version == 4
        assert first.id != second.id

    def test_click_link_url(self):
        event = process_webhook(make_resend_payload("email.clicked", click={"link": "https://example.com/a"}))
        assert event.event_type == EmailEventType.CLICKED
        assert event.event_data["link_url"] == "https://example.com/a"

    def test_bounce_detail_kept(self):
        bounce = {"type": "hard", "message": "Mailbox does not exist"}
        event = process_webhook(make_resend_payload("email.bounced", bounce=bounce))
        assert event.event_type == EmailEventType.BOUNCED
        assert event.event_data["bounce"] == bounce

    def test_unknown_type_dropped(self):
        assert process_webhook(make_resend_payload("email.sent")) is None

    def test_missing_tenant_dropped(self):
        assert process_webhook(make_resend_payload(tenant_id=None)) is None

    def test_missing_recipient_dropped(self):
        assert process_webhook(make_resend_payload(to=[])) is None

    def test_missing_campaign_kept(self):
        """Test events without a campaign are still recorded"""
        event = process_webhook(make_resend_payload(campaign_id=None))
        assert event is not None
        assert event.campaign_id is None

    def test_recipient_object_list(self):
        event = process_webhook(make_resend_payload(to=[{"email": "Reader@Example.com"}]))
        assert event.recipient_email == "reader@example.com"

    def test_bad_timestamp_uses_now(self):
        # Given
        payload = make_resend_payload(created_at="yesterday-ish")
        before = datetime.now(timezone.utc)

        # When
        event = process_webhook(payload)

        # Then
        assert event.timestamp >= before

    @pytest.mark.parametrize("payload", [{}, {"type": "email.delivered"}, {"type": "email.delivered", "data": None}])
    def test_degenerate_payloads(self, payload):
        assert process_webhook(payload) is None
