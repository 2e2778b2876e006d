"""
SqlCampaignStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Idempotency is enforced by the database:
  - (tenant_id, dedupe_key) unique on outbound_messages
  - queue_job_id unique on scheduled_actions
IntegrityError on either is surfaced as DuplicateRecordError.

JSON columns are filtered Python-side (JSON path queries are not portable).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import DuplicateRecordError
from database.models import (
    Base, CampaignTransitionRow, ContactCampaignRow, ContactRow, MessageEventRow,
    OutboundMessageRow, ScheduledActionRow, SenderIdentityRow, SuppressionRow,
)
from database.session import session_scope
from database.store_base import BaseCampaignStore, LinkCallback
from models.schemas import (
    CampaignTransitionRecord, Contact, ContactCampaign, MessageEvent,
    OutboundMessage, ScheduledAction, ScheduledActionStatus, SenderIdentity,
    Suppression,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_column(value: Any) -> Any:
    """Python value → column value (enums unwrapped, models dumped, datetimes in UTC)."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    return value


def _from_column(value: Any) -> Any:
    # SQLite hands back naive datetimes; everything stored is UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_kwargs(row_cls: type[Base], model: BaseModel) -> dict[str, Any]:
    columns = row_cls.__table__.columns.keys()
    data = model.model_dump()
    return {k: _to_column(v) for k, v in data.items() if k in columns}


def _row_data(row: Base) -> dict[str, Any]:
    return {c: _from_column(getattr(row, c)) for c in row.__table__.columns.keys()}


class SqlCampaignStore(BaseCampaignStore):
    """
    Persistent campaign store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.

    The store is bound to the engine behind `session_factory`; whoever built
    the engine disposes it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    async def _add(self, row: Base) -> None:
        async with self._session() as db:
            db.add(row)

    async def _update(self, row_cls, where, **fields) -> int:
        values = {k: _to_column(v) for k, v in fields.items()}
        if "updated_at" in row_cls.__table__.columns.keys():
            values.setdefault("updated_at", _utcnow())
        async with self._session() as db:
            result = await db.execute(update(row_cls).where(where).values(**values))
            return result.rowcount or 0

    # ── Contacts ───────────────────────────────────────────

    async def upsert_contact(self, contact: Contact) -> Contact:
        async with self._session() as db:
            existing = await db.get(ContactRow, contact.id)
            values = _row_kwargs(ContactRow, contact)
            if existing:
                for k, v in values.items():
                    setattr(existing, k, v)
            else:
                db.add(ContactRow(**values))
        return contact

    async def get_contact(self, tenant_id: str, contact_id: str) -> Optional[Contact]:
        async with self._session() as db:
            row = await db.get(ContactRow, contact_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return Contact.model_validate(_row_data(row))

    # ── Sender identities ──────────────────────────────────

    async def upsert_sender_identity(self, identity: SenderIdentity) -> SenderIdentity:
        async with self._session() as db:
            existing = await db.get(SenderIdentityRow, identity.id)
            values = _row_kwargs(SenderIdentityRow, identity)
            if existing:
                for k, v in values.items():
                    setattr(existing, k, v)
            else:
                db.add(SenderIdentityRow(**values))
        return identity

    async def get_sender_identity(self, tenant_id: str, identity_id: str) -> Optional[SenderIdentity]:
        async with self._session() as db:
            row = await db.get(SenderIdentityRow, identity_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return SenderIdentity.model_validate(_row_data(row))

    async def list_sender_identities(self, tenant_id: str, lead_id: Optional[str] = None,
                                     verified_only: bool = False) -> list[SenderIdentity]:
        conditions = [SenderIdentityRow.tenant_id == tenant_id]
        if lead_id is not None:
            conditions.append(SenderIdentityRow.lead_id == lead_id)
        if verified_only:
            conditions.append(SenderIdentityRow.validation_status == "verified")
        async with self._session() as db:
            stmt = (
                select(SenderIdentityRow)
                .where(and_(*conditions))
                .order_by(SenderIdentityRow.created_at, SenderIdentityRow.id)
            )
            result = await db.execute(stmt)
            return [SenderIdentity.model_validate(_row_data(r)) for r in result.scalars().all()]

    # ── Suppressions ───────────────────────────────────────

    async def add_suppression(self, suppression: Suppression) -> Suppression:
        await self._add(SuppressionRow(**_row_kwargs(SuppressionRow, suppression)))
        return suppression

    async def is_suppressed(self, tenant_id: str, channel: str, address: str) -> bool:
        async with self._session() as db:
            stmt = (
                select(SuppressionRow.id)
                .where(and_(
                    SuppressionRow.channel == channel,
                    SuppressionRow.address == address,
                    or_(SuppressionRow.tenant_id == tenant_id, SuppressionRow.tenant_id.is_(None)),
                ))
                .limit(1)
            )
            result = await db.execute(stmt)
            return result.scalar_one_or_none() is not None

    # ── Campaigns ──────────────────────────────────────────

    async def create_campaign(self, campaign: ContactCampaign) -> ContactCampaign:
        await self._add(ContactCampaignRow(**_row_kwargs(ContactCampaignRow, campaign)))
        return campaign

    async def get_campaign(self, tenant_id: str, campaign_id: str) -> Optional[ContactCampaign]:
        async with self._session() as db:
            row = await db.get(ContactCampaignRow, campaign_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return ContactCampaign.model_validate(_row_data(row))

    async def update_campaign(self, tenant_id: str, campaign_id: str, **fields) -> None:
        await self._update(
            ContactCampaignRow,
            and_(ContactCampaignRow.id == campaign_id, ContactCampaignRow.tenant_id == tenant_id),
            **fields,
        )

    async def advance_campaign(
        self, tenant_id: str, campaign_id: str,
        expected_node_id: str, to_node_id: str,
        record: CampaignTransitionRecord, **fields,
    ) -> bool:
        values = {k: _to_column(v) for k, v in fields.items()}
        async with self._session() as db:
            stmt = (
                update(ContactCampaignRow)
                .where(and_(
                    ContactCampaignRow.id == campaign_id,
                    ContactCampaignRow.tenant_id == tenant_id,
                    ContactCampaignRow.current_node_id == expected_node_id,
                ))
                .values(**values, current_node_id=to_node_id, updated_at=_utcnow())
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                return False
            db.add(CampaignTransitionRow(**_row_kwargs(CampaignTransitionRow, record)))
        return True

    async def list_transitions(self, tenant_id: str, campaign_id: str) -> list[CampaignTransitionRecord]:
        async with self._session() as db:
            stmt = (
                select(CampaignTransitionRow)
                .where(and_(
                    CampaignTransitionRow.tenant_id == tenant_id,
                    CampaignTransitionRow.campaign_id == campaign_id,
                ))
                .order_by(CampaignTransitionRow.occurred_at, CampaignTransitionRow.id)
            )
            result = await db.execute(stmt)
            return [CampaignTransitionRecord.model_validate(_row_data(r)) for r in result.scalars().all()]

    # ── Outbound messages ──────────────────────────────────

    async def insert_outbound_message(self, message: OutboundMessage) -> OutboundMessage:
        try:
            async with self._session() as db:
                db.add(OutboundMessageRow(**_row_kwargs(OutboundMessageRow, message)))
                await db.flush()
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"Outbound message already exists for dedupe key {message.dedupe_key}",
                key=message.dedupe_key,
            ) from e
        return message

    async def get_outbound_message(self, tenant_id: str, message_id: str) -> Optional[OutboundMessage]:
        async with self._session() as db:
            row = await db.get(OutboundMessageRow, message_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return OutboundMessage.model_validate(_row_data(row))

    async def get_outbound_by_dedupe_key(self, tenant_id: str, dedupe_key: str) -> Optional[OutboundMessage]:
        async with self._session() as db:
            stmt = select(OutboundMessageRow).where(and_(
                OutboundMessageRow.tenant_id == tenant_id,
                OutboundMessageRow.dedupe_key == dedupe_key,
            ))
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return OutboundMessage.model_validate(_row_data(row)) if row else None

    async def update_outbound_message(self, tenant_id: str, message_id: str, **fields) -> None:
        await self._update(
            OutboundMessageRow,
            and_(OutboundMessageRow.id == message_id, OutboundMessageRow.tenant_id == tenant_id),
            **fields,
        )

    # ── Scheduled actions ──────────────────────────────────

    async def insert_scheduled_action(
        self, action: ScheduledAction, link: Optional[LinkCallback] = None,
    ) -> ScheduledAction:
        """
        Insert and flush the row, then await link() before commit. Any
        exception from link() propagates out of the session scope, which
        rolls the insert back.
        """
        async with self._session() as db:
            db.add(ScheduledActionRow(**_row_kwargs(ScheduledActionRow, action)))
            try:
                await db.flush()
            except IntegrityError as e:
                raise DuplicateRecordError(
                    f"Scheduled action already exists for job {action.queue_job_id}",
                    key=action.queue_job_id,
                ) from e
            if link is not None:
                await link()
        return action

    async def get_scheduled_action_by_job_id(self, queue_job_id: str) -> Optional[ScheduledAction]:
        async with self._session() as db:
            stmt = select(ScheduledActionRow).where(ScheduledActionRow.queue_job_id == queue_job_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return ScheduledAction.model_validate(_row_data(row)) if row else None

    async def update_scheduled_action(self, action_id: str, **fields) -> None:
        await self._update(ScheduledActionRow, ScheduledActionRow.id == action_id, **fields)

    async def list_scheduled_actions(self, status: str, limit: int = 100,
                                     offset: int = 0) -> list[ScheduledAction]:
        async with self._session() as db:
            stmt = (
                select(ScheduledActionRow)
                .where(ScheduledActionRow.status == _to_column(status))
                .order_by(ScheduledActionRow.scheduled_at, ScheduledActionRow.id)
                .offset(offset)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [ScheduledAction.model_validate(_row_data(r)) for r in result.scalars().all()]

    async def cancel_scheduled_actions(self, tenant_id: str, campaign_id: str) -> int:
        return await self._update(
            ScheduledActionRow,
            and_(
                ScheduledActionRow.tenant_id == tenant_id,
                ScheduledActionRow.campaign_id == campaign_id,
                ScheduledActionRow.status == ScheduledActionStatus.SCHEDULED.value,
            ),
            status=ScheduledActionStatus.CANCELED,
        )

    # ── Message events ─────────────────────────────────────

    async def add_message_event(self, event: MessageEvent) -> MessageEvent:
        await self._add(MessageEventRow(**_row_kwargs(MessageEventRow, event)))
        return event

    async def find_message_event(self, tenant_id: str, message_id: str, event_type: str,
                                 synthetic: Optional[bool] = None) -> Optional[MessageEvent]:
        async with self._session() as db:
            stmt = (
                select(MessageEventRow)
                .where(and_(
                    MessageEventRow.tenant_id == tenant_id,
                    MessageEventRow.message_id == message_id,
                    MessageEventRow.type == _to_column(event_type),
                ))
                .order_by(MessageEventRow.event_at)
            )
            result = await db.execute(stmt)
            for row in result.scalars():
                event = MessageEvent.model_validate(_row_data(row))
                if synthetic is None or event.is_synthetic == synthetic:
                    return event
        return None

    async def list_message_events(self, tenant_id: str, message_id: str) -> list[MessageEvent]:
        async with self._session() as db:
            stmt = (
                select(MessageEventRow)
                .where(and_(
                    MessageEventRow.tenant_id == tenant_id,
                    MessageEventRow.message_id == message_id,
                ))
                .order_by(MessageEventRow.event_at)
            )
            result = await db.execute(stmt)
            return [MessageEvent.model_validate(_row_data(r)) for r in result.scalars().all()]
