"""
Webhook Processor

Turns provider webhook payloads into EmailEvents.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple
from uuid import uuid4

from .models import EmailEvent, EmailEventType, utc_now

logger = logging.getLogger(__name__)

PROVIDER_EVENT_TYPES = {
    "email.delivered": EmailEventType.DELIVERED,
    "email.opened": EmailEventType.OPENED,
    "email.clicked": EmailEventType.CLICKED,
    "email.bounced": EmailEventType.BOUNCED,
    "email.complained": EmailEventType.COMPLAINED,
    "email.unsubscribed": EmailEventType.UNSUBSCRIBED,
}

TENANT_HEADER = "x-tenant-id"
CAMPAIGN_HEADER = "x-campaign-id"


def _tag_pairs(tags: Any) -> Iterable[Tuple[str, str]]:
    """Yield (name, value) from "name:value" strings, {name, value} objects or a mapping"""
    if isinstance(tags, dict):
        for name, value in tags.items():
            yield str(name), str(value)
        return
    for tag in tags or []:
        if isinstance(tag, str):
            name, _, value = tag.partition(":")
            yield name, value
        elif isinstance(tag, dict):
            name = tag.get("name", "")
            value = tag.get("value", "")
            # {"name": "tenant:abc"} carries both parts in the name
            if not value and ":" in name:
                name, _, value = name.partition(":")
            yield str(name), str(value)


def _header_map(headers: Any) -> Dict[str, str]:
    if isinstance(headers, dict):
        return {str(k).lower(): str(v) for k, v in headers.items()}
    result = {}
    for header in headers or []:
        if isinstance(header, dict) and "name" in header:
            result[str(header["name"]).lower()] = str(header.get("value", ""))
    return result


def extract_ids(data: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Resolve (tenant_id, campaign_id) from tags first, then headers"""
    tenant_id = campaign_id = None
    for name, value in _tag_pairs(data.get("tags")):
        if not value:
            continue
        if name == "tenant" and tenant_id is None:
            tenant_id = value
        elif name == "campaign" and campaign_id is None:
            campaign_id = value

    headers = _header_map(data.get("headers"))
    tenant_id = tenant_id or headers.get(TENANT_HEADER) or None
    campaign_id = campaign_id or headers.get(CAMPAIGN_HEADER) or None
    return tenant_id, campaign_id


def extract_recipient(data: Dict[str, Any]) -> Optional[str]:
    to = data.get("to")
    first = to[0] if isinstance(to, list) and to else to
    if isinstance(first, dict):
        first = first.get("email")
    email = first or data.get("email")
    return email.strip().lower() if isinstance(email, str) and email.strip() else None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable webhook timestamp {value!r}, using now")
    return utc_now()


def _link_url(data: Dict[str, Any]) -> Optional[str]:
    link = data.get("link")
    if isinstance(link, str):
        return link
    click = data.get("click")
    if isinstance(click, dict) and isinstance(click.get("link"), str):
        return click["link"]
    return None


def process_webhook(payload: Dict[str, Any]) -> Optional[EmailEvent]:
    """
    Map a provider payload to an EmailEvent.

    Returns None, dropping the event, when the type is unknown or the
    tenant id or recipient email cannot be resolved.
    """
    event_type = PROVIDER_EVENT_TYPES.get(payload.get("type"))
    if event_type is None:
        logger.warning(f"Unknown webhook event type: {payload.get('type')}")
        return None

    data = payload.get("data") or {}
    tenant_id, campaign_id = extract_ids(data)
    if not tenant_id:
        logger.warning("No tenant ID found in webhook data")
        return None

    recipient = extract_recipient(data)
    if not recipient:
        logger.warning(f"No recipient email in {payload.get('type')} webhook")
        return None

    event_data: Dict[str, Any] = {
        "message_id": data.get("email_id"),
        "created_at": data.get("created_at"),
    }
    for key in ("user_agent", "ip", "subject"):
        if data.get(key) is not None:
            event_data[key] = data[key]
    link_url = _link_url(data)
    if link_url:
        event_data["link_url"] = link_url
    if data.get("bounce") is not None:
        event_data["bounce"] = data["bounce"]

    return EmailEvent(
        id=str(uuid4()),
        tenant_id=tenant_id,
        campaign_id=campaign_id,
        recipient_email=recipient,
        event_type=event_type,
        event_data=event_data,
        timestamp=_parse_timestamp(data.get("created_at")),
    )


__all__ = ["process_webhook", "extract_ids", "extract_recipient", "PROVIDER_EVENT_TYPES"]
