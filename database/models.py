"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — plan documents, job
    payloads and event data are stored as JSON on every dialect.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Idempotency lives in unique constraints: (tenant_id, dedupe_key) on
    outbound_messages and queue_job_id on scheduled_actions.
  - Every tenant-owned table carries tenant_id and is queried with it.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, DateTime, Text, Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Contacts & sender identities
# ──────────────────────────────────────────────────────────────

class ContactRow(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lead_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_contacts_tenant", "tenant_id"),
    )


class SenderIdentityRow(Base):
    __tablename__ = "sender_identities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lead_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    from_email: Mapped[str] = mapped_column(String(320), nullable=False)
    from_name: Mapped[str] = mapped_column(String(256), default="")
    validation_status: Mapped[str] = mapped_column(String(32), default="pending")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_sender_identities_tenant", "tenant_id", "validation_status"),
        Index("ix_sender_identities_lead", "tenant_id", "lead_id"),
    )


class SuppressionRow(Base):
    __tablename__ = "suppressions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)    # NULL = global
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    address: Mapped[str] = mapped_column(String(320), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), default="unsubscribed")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_suppressions_lookup", "channel", "address"),
    )


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class ContactCampaignRow(Base):
    __tablename__ = "contact_campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lead_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    plan_json: Mapped[Any] = mapped_column(JSON, default=dict)
    current_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    last_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    current_node_entered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_contact_campaigns_tenant_status", "tenant_id", "status"),
        Index("ix_contact_campaigns_contact", "tenant_id", "contact_id"),
    )


class CampaignTransitionRow(Base):
    __tablename__ = "campaign_transitions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    from_node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    to_node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_ref: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_campaign_transitions_campaign", "tenant_id", "campaign_id", "occurred_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Outbound messages
# ──────────────────────────────────────────────────────────────

class OutboundMessageRow(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), default="email")
    sender_identity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    dedupe_key: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[Any] = mapped_column(JSON, default=dict)
    state: Mapped[str] = mapped_column(String(16), default="queued")
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "dedupe_key", name="uq_outbound_messages_dedupe"),
        Index("ix_outbound_messages_campaign", "tenant_id", "campaign_id"),
        Index("ix_outbound_messages_provider_id", "provider_message_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Scheduled actions & message events
# ──────────────────────────────────────────────────────────────

class ScheduledActionRow(Base):
    __tablename__ = "scheduled_actions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(16), default="timeout")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="scheduled")
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    queue_job_id: Mapped[str] = mapped_column(String(256), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("queue_job_id", name="uq_scheduled_actions_job_id"),
        Index("ix_scheduled_actions_status", "status", "scheduled_at"),
        Index("ix_scheduled_actions_campaign", "tenant_id", "campaign_id"),
    )


class MessageEventRow(Base):
    __tablename__ = "message_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    data: Mapped[Any] = mapped_column(JSON, default=dict)

    __table_args__ = (
        Index("ix_message_events_message_type", "tenant_id", "message_id", "type"),
    )
