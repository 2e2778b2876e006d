"""
Event vocabulary shared by plans, message events and the timeout machinery.

Two naming schemes coexist:
  - MessageEventType: what the email provider reports and what is stored on
    MessageEvent rows ("open", "click", ...).
  - CampaignEvent:    what plan transitions react to ("opened", "clicked", ...).

Timeout events ("no_open", "no_click") are the same string in both schemes.
"""
from __future__ import annotations

from enum import Enum


class CampaignEvent(str, Enum):
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    BLOCKED = "blocked"
    SPAMREPORT = "spamreport"
    UNSUBSCRIBED = "unsubscribed"
    # synthetic
    NO_OPEN = "no_open"
    NO_CLICK = "no_click"


class MessageEventType(str, Enum):
    DELIVERED = "delivered"
    OPEN = "open"
    CLICK = "click"
    BOUNCE = "bounce"
    DROPPED = "dropped"
    DEFERRED = "deferred"
    SPAM_REPORT = "spam_report"
    UNSUBSCRIBE = "unsubscribe"
    NO_OPEN = "no_open"
    NO_CLICK = "no_click"


TIMEOUT_EVENT_TYPES: frozenset[str] = frozenset({
    CampaignEvent.NO_OPEN.value,
    CampaignEvent.NO_CLICK.value,
})

_PROVIDER_TO_CAMPAIGN = {
    MessageEventType.OPEN.value: CampaignEvent.OPENED.value,
    MessageEventType.CLICK.value: CampaignEvent.CLICKED.value,
    MessageEventType.DELIVERED.value: CampaignEvent.DELIVERED.value,
    MessageEventType.BOUNCE.value: CampaignEvent.BOUNCED.value,
    MessageEventType.DROPPED.value: CampaignEvent.BLOCKED.value,
    MessageEventType.SPAM_REPORT.value: CampaignEvent.SPAMREPORT.value,
    MessageEventType.UNSUBSCRIBE.value: CampaignEvent.UNSUBSCRIBED.value,
}


def is_timeout_event(event_type: str) -> bool:
    return str(getattr(event_type, "value", event_type)) in TIMEOUT_EVENT_TYPES


def real_event_for(timeout_event_type: str) -> str:
    """no_open -> open, no_click -> click."""
    value = str(getattr(timeout_event_type, "value", timeout_event_type))
    return value[len("no_"):] if value.startswith("no_") else value


def normalize_event_type(raw_type: str) -> str:
    """Map a provider event type onto the plan transition vocabulary."""
    value = str(getattr(raw_type, "value", raw_type))
    return _PROVIDER_TO_CAMPAIGN.get(value, value)

_CAMPAIGN_TO_PROVIDER = {v: k for k, v in _PROVIDER_TO_CAMPAIGN.items()}


def provider_event_type(event_type: str) -> str:
    """Inverse of normalize_event_type; MessageEvent rows are stored in provider vocabulary."""
    value = str(getattr(event_type, "value", event_type))
    return _CAMPAIGN_TO_PROVIDER.get(value, value)
