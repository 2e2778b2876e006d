"""
Abstract Campaign Store — Interface for all storage backends.

Implementations:
  - SqlCampaignStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryCampaignStore (dict-based, single-process, no persistence)

Every tenant-owned lookup takes tenant_id explicitly. Two operations carry the
engine's consistency guarantees and must be honoured by every backend:

  insert_scheduled_action(action, link)
      inserts the row, awaits `link()` (the enqueue) inside the same unit of
      work, and leaves no row behind if `link()` raises.

  advance_campaign(tenant_id, campaign_id, expected_node_id, to_node_id, record)
      compare-and-set on current_node_id; writes the audit record only when
      the swap wins.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from models.schemas import (
    CampaignTransitionRecord, Contact, ContactCampaign, MessageEvent,
    OutboundMessage, ScheduledAction, SenderIdentity, Suppression,
)

LinkCallback = Callable[[], Awaitable[Any]]


class BaseCampaignStore(ABC):
    """Interface that all campaign store backends must implement."""

    # ── Contacts ──────────────────────────────────────────────

    @abstractmethod
    async def upsert_contact(self, contact: Contact) -> Contact:
        ...

    @abstractmethod
    async def get_contact(self, tenant_id: str, contact_id: str) -> Optional[Contact]:
        ...

    # ── Sender identities ─────────────────────────────────────

    @abstractmethod
    async def upsert_sender_identity(self, identity: SenderIdentity) -> SenderIdentity:
        ...

    @abstractmethod
    async def get_sender_identity(self, tenant_id: str, identity_id: str) -> Optional[SenderIdentity]:
        ...

    @abstractmethod
    async def list_sender_identities(self, tenant_id: str, lead_id: Optional[str] = None,
                                     verified_only: bool = False) -> list[SenderIdentity]:
        ...

    # ── Suppressions ──────────────────────────────────────────

    @abstractmethod
    async def add_suppression(self, suppression: Suppression) -> Suppression:
        ...

    @abstractmethod
    async def is_suppressed(self, tenant_id: str, channel: str, address: str) -> bool:
        """Match a tenant-level or global (tenant_id=None) suppression on exact address."""
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    async def create_campaign(self, campaign: ContactCampaign) -> ContactCampaign:
        ...

    @abstractmethod
    async def get_campaign(self, tenant_id: str, campaign_id: str) -> Optional[ContactCampaign]:
        ...

    @abstractmethod
    async def update_campaign(self, tenant_id: str, campaign_id: str, **fields) -> None:
        ...

    @abstractmethod
    async def advance_campaign(
        self, tenant_id: str, campaign_id: str,
        expected_node_id: str, to_node_id: str,
        record: CampaignTransitionRecord, **fields,
    ) -> bool:
        """Swap current_node_id if it still equals expected_node_id. True if this call won."""
        ...

    @abstractmethod
    async def list_transitions(self, tenant_id: str, campaign_id: str) -> list[CampaignTransitionRecord]:
        ...

    # ── Outbound messages ─────────────────────────────────────

    @abstractmethod
    async def insert_outbound_message(self, message: OutboundMessage) -> OutboundMessage:
        """Raises DuplicateRecordError if (tenant_id, dedupe_key) exists."""
        ...

    @abstractmethod
    async def get_outbound_message(self, tenant_id: str, message_id: str) -> Optional[OutboundMessage]:
        ...

    @abstractmethod
    async def get_outbound_by_dedupe_key(self, tenant_id: str, dedupe_key: str) -> Optional[OutboundMessage]:
        ...

    @abstractmethod
    async def update_outbound_message(self, tenant_id: str, message_id: str, **fields) -> None:
        ...

    # ── Scheduled actions ─────────────────────────────────────

    @abstractmethod
    async def insert_scheduled_action(
        self, action: ScheduledAction, link: Optional[LinkCallback] = None,
    ) -> ScheduledAction:
        """Raises DuplicateRecordError if queue_job_id exists; rolls back if link() raises."""
        ...

    @abstractmethod
    async def get_scheduled_action_by_job_id(self, queue_job_id: str) -> Optional[ScheduledAction]:
        ...

    @abstractmethod
    async def update_scheduled_action(self, action_id: str, **fields) -> None:
        ...

    @abstractmethod
    async def list_scheduled_actions(self, status: str, limit: int = 100,
                                     offset: int = 0) -> list[ScheduledAction]:
        """Actions in `status`, oldest scheduled_at first."""
        ...

    @abstractmethod
    async def cancel_scheduled_actions(self, tenant_id: str, campaign_id: str) -> int:
        """Mark every still-scheduled action of a campaign canceled. Returns the count."""
        ...

    # ── Message events ────────────────────────────────────────

    @abstractmethod
    async def add_message_event(self, event: MessageEvent) -> MessageEvent:
        ...

    @abstractmethod
    async def find_message_event(self, tenant_id: str, message_id: str, event_type: str,
                                 synthetic: Optional[bool] = None) -> Optional[MessageEvent]:
        ...

    @abstractmethod
    async def list_message_events(self, tenant_id: str, message_id: str) -> list[MessageEvent]:
        ...
