"""
InMemoryCampaignStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlCampaignStore, including the
    unique constraints (dedupe key, queue job id) and compare-and-set advance
  - Safe under asyncio: every check-then-write happens without an await
    in between
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from core.errors import DuplicateRecordError
from database.store_base import BaseCampaignStore, LinkCallback
from models.schemas import (
    CampaignTransitionRecord, Contact, ContactCampaign, MessageEvent,
    OutboundMessage, ScheduledAction, ScheduledActionStatus, SenderIdentity,
    Suppression,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCampaignStore(BaseCampaignStore):
    """
    Full-featured in-memory store with the same interface as SqlCampaignStore.
    Models are copied on the way in and out so callers never share state with the store.
    """

    def __init__(self):
        self._contacts: dict[str, Contact] = {}
        self._senders: dict[str, SenderIdentity] = {}
        self._suppressions: list[Suppression] = []
        self._campaigns: dict[str, ContactCampaign] = {}
        self._transitions: list[CampaignTransitionRecord] = []
        self._messages: dict[str, OutboundMessage] = {}
        self._actions: dict[str, ScheduledAction] = {}
        self._events: list[MessageEvent] = []

        # Indexes
        self._dedupe_index: dict[tuple[str, str], str] = {}    # (tenant, dedupe_key) → message id
        self._job_index: dict[str, str] = {}                   # queue_job_id → action id
        logger.info("inmemory_store_initialized")

    # ── Contacts ──────────────────────────────────────────

    async def upsert_contact(self, contact: Contact) -> Contact:
        self._contacts[contact.id] = contact.model_copy(deep=True)
        return contact

    async def get_contact(self, tenant_id: str, contact_id: str) -> Optional[Contact]:
        contact = self._contacts.get(contact_id)
        if contact is None or contact.tenant_id != tenant_id:
            return None
        return contact.model_copy(deep=True)

    # ── Sender identities ─────────────────────────────────

    async def upsert_sender_identity(self, identity: SenderIdentity) -> SenderIdentity:
        self._senders[identity.id] = identity.model_copy(deep=True)
        return identity

    async def get_sender_identity(self, tenant_id: str, identity_id: str) -> Optional[SenderIdentity]:
        identity = self._senders.get(identity_id)
        if identity is None or identity.tenant_id != tenant_id:
            return None
        return identity.model_copy(deep=True)

    async def list_sender_identities(self, tenant_id: str, lead_id: Optional[str] = None,
                                     verified_only: bool = False) -> list[SenderIdentity]:
        return [
            s.model_copy(deep=True) for s in self._senders.values()
            if s.tenant_id == tenant_id
            and (lead_id is None or s.lead_id == lead_id)
            and (not verified_only or s.is_verified)
        ]

    # ── Suppressions ──────────────────────────────────────

    async def add_suppression(self, suppression: Suppression) -> Suppression:
        self._suppressions.append(suppression.model_copy(deep=True))
        return suppression

    async def is_suppressed(self, tenant_id: str, channel: str, address: str) -> bool:
        return any(
            s.channel == channel and s.address == address
            and (s.tenant_id is None or s.tenant_id == tenant_id)
            for s in self._suppressions
        )

    # ── Campaigns ─────────────────────────────────────────

    async def create_campaign(self, campaign: ContactCampaign) -> ContactCampaign:
        self._campaigns[campaign.id] = campaign.model_copy(deep=True)
        return campaign

    async def get_campaign(self, tenant_id: str, campaign_id: str) -> Optional[ContactCampaign]:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None or campaign.tenant_id != tenant_id:
            return None
        return campaign.model_copy(deep=True)

    async def update_campaign(self, tenant_id: str, campaign_id: str, **fields) -> None:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None or campaign.tenant_id != tenant_id:
            return
        self._campaigns[campaign_id] = campaign.model_copy(
            update={**fields, "updated_at": _utcnow()},
        )

    async def advance_campaign(
        self, tenant_id: str, campaign_id: str,
        expected_node_id: str, to_node_id: str,
        record: CampaignTransitionRecord, **fields,
    ) -> bool:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None or campaign.tenant_id != tenant_id:
            return False
        if campaign.current_node_id != expected_node_id:
            return False
        self._campaigns[campaign_id] = campaign.model_copy(
            update={**fields, "current_node_id": to_node_id, "updated_at": _utcnow()},
        )
        self._transitions.append(record.model_copy(deep=True))
        return True

    async def list_transitions(self, tenant_id: str, campaign_id: str) -> list[CampaignTransitionRecord]:
        return [
            t.model_copy(deep=True) for t in self._transitions
            if t.tenant_id == tenant_id and t.campaign_id == campaign_id
        ]

    # ── Outbound messages ─────────────────────────────────

    async def insert_outbound_message(self, message: OutboundMessage) -> OutboundMessage:
        key = (message.tenant_id, message.dedupe_key)
        if key in self._dedupe_index:
            raise DuplicateRecordError(
                f"Outbound message already exists for dedupe key {message.dedupe_key}",
                key=message.dedupe_key,
            )
        self._messages[message.id] = message.model_copy(deep=True)
        self._dedupe_index[key] = message.id
        return message

    async def get_outbound_message(self, tenant_id: str, message_id: str) -> Optional[OutboundMessage]:
        message = self._messages.get(message_id)
        if message is None or message.tenant_id != tenant_id:
            return None
        return message.model_copy(deep=True)

    async def get_outbound_by_dedupe_key(self, tenant_id: str, dedupe_key: str) -> Optional[OutboundMessage]:
        message_id = self._dedupe_index.get((tenant_id, dedupe_key))
        return await self.get_outbound_message(tenant_id, message_id) if message_id else None

    async def update_outbound_message(self, tenant_id: str, message_id: str, **fields) -> None:
        message = self._messages.get(message_id)
        if message is None or message.tenant_id != tenant_id:
            return
        self._messages[message_id] = message.model_copy(update=fields)

    # ── Scheduled actions ─────────────────────────────────

    async def insert_scheduled_action(
        self, action: ScheduledAction, link: Optional[LinkCallback] = None,
    ) -> ScheduledAction:
        if action.queue_job_id in self._job_index:
            raise DuplicateRecordError(
                f"Scheduled action already exists for job {action.queue_job_id}",
                key=action.queue_job_id,
            )
        self._actions[action.id] = action.model_copy(deep=True)
        self._job_index[action.queue_job_id] = action.id

        if link is not None:
            try:
                await link()
            except Exception:
                # Roll back the insert so no orphan record survives a failed enqueue
                self._actions.pop(action.id, None)
                self._job_index.pop(action.queue_job_id, None)
                raise
        return action

    async def get_scheduled_action_by_job_id(self, queue_job_id: str) -> Optional[ScheduledAction]:
        action_id = self._job_index.get(queue_job_id)
        action = self._actions.get(action_id) if action_id else None
        return action.model_copy(deep=True) if action else None

    async def update_scheduled_action(self, action_id: str, **fields) -> None:
        action = self._actions.get(action_id)
        if action is None:
            return
        self._actions[action_id] = action.model_copy(
            update={**fields, "updated_at": _utcnow()},
        )

    async def list_scheduled_actions(self, status: str, limit: int = 100,
                                     offset: int = 0) -> list[ScheduledAction]:
        value = getattr(status, "value", status)
        matching = sorted(
            (a for a in self._actions.values() if a.status == value),
            key=lambda a: (a.scheduled_at, a.id),
        )
        return [a.model_copy(deep=True) for a in matching[offset:offset + limit]]

    async def cancel_scheduled_actions(self, tenant_id: str, campaign_id: str) -> int:
        count = 0
        for action in list(self._actions.values()):
            if (action.tenant_id == tenant_id and action.campaign_id == campaign_id
                    and action.status == ScheduledActionStatus.SCHEDULED):
                await self.update_scheduled_action(action.id, status=ScheduledActionStatus.CANCELED)
                count += 1
        return count

    # ── Message events ────────────────────────────────────

    async def add_message_event(self, event: MessageEvent) -> MessageEvent:
        self._events.append(event.model_copy(deep=True))
        return event

    async def find_message_event(self, tenant_id: str, message_id: str, event_type: str,
                                 synthetic: Optional[bool] = None) -> Optional[MessageEvent]:
        value = getattr(event_type, "value", event_type)
        for event in self._events:
            if (event.tenant_id == tenant_id and event.message_id == message_id
                    and event.type == value
                    and (synthetic is None or event.is_synthetic == synthetic)):
                return event.model_copy(deep=True)
        return None

    async def list_message_events(self, tenant_id: str, message_id: str) -> list[MessageEvent]:
        return [
            e.model_copy(deep=True) for e in self._events
            if e.tenant_id == tenant_id and e.message_id == message_id
        ]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "contacts": len(self._contacts),
            "sender_identities": len(self._senders),
            "suppressions": len(self._suppressions),
            "campaigns": len(self._campaigns),
            "transitions": len(self._transitions),
            "outbound_messages": len(self._messages),
            "scheduled_actions": len(self._actions),
            "message_events": len(self._events),
        }
