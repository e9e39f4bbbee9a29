"""
Shared Test Fixtures

Centralized factories used across all test layers.

Structure:
    - common.py: Base ID generators
    - delivery_fixtures.py: Campaign, event and webhook factories
"""

# Common utilities
from .common import (
    make_tenant_id,
    make_campaign_id,
)

# Campaign delivery factories
from .delivery_fixtures import (
    make_recipients,
    make_campaign,
    make_email_event,
    make_resend_payload,
)

__all__ = [
    "make_tenant_id",
    "make_campaign_id",
    "make_recipients",
    "make_campaign",
    "make_email_event",
    "make_resend_payload",
]
