"""
Core data models for the campaign execution engine.
These are the records shared by the dispatcher, scheduler, workers and stores.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CampaignStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class OutboundState(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class ScheduledActionType(str, Enum):
    TIMEOUT = "timeout"
    SEND = "send"


class ScheduledActionStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    FAILED = "failed"


class SenderValidationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Contact & sender identity
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    """The person a campaign reaches out to."""
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    lead_id: Optional[str] = None
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None

    def address_for(self, channel: str) -> Optional[str]:
        value = getattr(channel, "value", channel)
        address = self.email if value == "email" else self.phone if value == "sms" else None
        return address.strip() if address and address.strip() else None


class SenderIdentity(BaseModel):
    """A from-address a tenant has registered for outbound email."""
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    lead_id: Optional[str] = None
    from_email: str
    from_name: str = ""
    validation_status: SenderValidationStatus = SenderValidationStatus.PENDING

    @property
    def is_verified(self) -> bool:
        return self.validation_status == SenderValidationStatus.VERIFIED

    @property
    def formatted_from(self) -> str:
        return f"{self.from_name} <{self.from_email}>" if self.from_name else self.from_email


class Suppression(BaseModel):
    """An address that must never be contacted. tenant_id=None means global."""
    id: str = Field(default_factory=_new_id)
    tenant_id: Optional[str] = None
    channel: str = "email"
    address: str
    reason: str = "unsubscribed"
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Campaign state
# ──────────────────────────────────────────────────────────────

class ContactCampaign(BaseModel):
    """
    One contact's run through a plan. current_node_id only moves through the
    transition engine's compare-and-set; last_message_id anchors wait-node timers.
    """
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    contact_id: str
    lead_id: Optional[str] = None
    plan_json: dict[str, Any] = {}
    current_node_id: Optional[str] = None
    status: CampaignStatus = CampaignStatus.PENDING
    last_message_id: Optional[str] = None
    current_node_entered_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_running(self) -> bool:
        return self.status == CampaignStatus.ACTIVE


class CampaignTransitionRecord(BaseModel):
    """Immutable audit entry for one node advancement."""
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    campaign_id: str
    from_node_id: str
    to_node_id: str
    event_type: str
    event_ref: Optional[str] = None             # MessageEvent id or job id
    occurred_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Outbound messages
# ──────────────────────────────────────────────────────────────

class MessageContent(BaseModel):
    subject: str = ""
    body: str = ""
    to: str = ""


class OutboundMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    campaign_id: str
    contact_id: str
    node_id: str
    channel: str = "email"
    sender_identity_id: Optional[str] = None
    dedupe_key: str
    content: MessageContent = Field(default_factory=MessageContent)
    state: OutboundState = OutboundState.QUEUED
    provider_message_id: Optional[str] = None
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None
    error_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Scheduled actions & message events
# ──────────────────────────────────────────────────────────────

class ScheduledAction(BaseModel):
    """Durable twin of a delayed queue job. queue_job_id is unique."""
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    campaign_id: str
    action_type: ScheduledActionType = ScheduledActionType.TIMEOUT
    scheduled_at: datetime
    status: ScheduledActionStatus = ScheduledActionStatus.SCHEDULED
    payload: dict[str, Any] = {}
    queue_job_id: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def job_name(self) -> str:
        return "timeout" if self.action_type == ScheduledActionType.TIMEOUT else "execute"


class MessageEvent(BaseModel):
    """Append-only provider event (or synthetic timeout event) for an outbound message."""
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    message_id: str
    type: str
    event_at: datetime = Field(default_factory=_utcnow)
    data: dict[str, Any] = {}

    @property
    def is_synthetic(self) -> bool:
        return bool(self.data.get("synthetic"))


# ──────────────────────────────────────────────────────────────
#  Job payloads (camelCase on the wire)
# ──────────────────────────────────────────────────────────────

class _JobPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_job_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TimeoutJobPayload(_JobPayload):
    tenant_id: str
    campaign_id: str
    node_id: str
    message_id: str
    event_type: str
    scheduled_at: datetime


class SendJobPayload(_JobPayload):
    tenant_id: str
    campaign_id: str
    contact_id: str
    node_id: str
    action_type: str = "send"
    metadata: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Operation results
# ──────────────────────────────────────────────────────────────

class DispatchResult(BaseModel):
    success: bool = False
    outbound_message_id: Optional[str] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None            # validation | configuration | transport | in_flight
    skipped: bool = False
    skip_reason: Optional[str] = None
    deduplicated: bool = False
    timeouts_scheduled: list[str] = []
    scheduling_errors: list[str] = []


class ScheduleReport(BaseModel):
    scheduled: list[str] = []                   # queue job ids
    skipped: list[dict[str, Any]] = []          # {event_type, job_id, reason}
    errors: list[dict[str, Any]] = []           # {event_type, error}

    @property
    def ok(self) -> bool:
        return not self.errors


class TransitionResult(BaseModel):
    transitioned: bool = False
    reason: Optional[str] = None
    event_type: str = ""
    from_node_id: Optional[str] = None
    to_node_id: Optional[str] = None
    completed: bool = False
    enter_errors: list[str] = []


class TimeoutJobResult(BaseModel):
    success: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    synthetic_event_id: Optional[str] = None
    from_node_id: Optional[str] = None
    to_node_id: Optional[str] = None


class ExecuteResult(BaseModel):
    success: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    node_id: Optional[str] = None
    dispatch: Optional[DispatchResult] = None


class RecoveryResult(BaseModel):
    total: int = 0
    recovered: int = 0
    failed: int = 0
    expired: int = 0


class IngestResult(BaseModel):
    event_id: Optional[str] = None
    event_type: str = ""
    recorded: bool = False
    suppressed: bool = False
    reason: Optional[str] = None
    transition: Optional[TransitionResult] = None
