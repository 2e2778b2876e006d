"""
Dedupe & idempotency guard for outbound sends.

A dedupe key identifies one logical send: tenant, campaign, contact, node and
channel. The outbound_messages row for a key is claimed (state=queued) before
the transport is called, so a redelivered job can never send twice:

  sent    → reuse the stored provider message id
  failed  → surface the stored error, no automatic re-send
  queued  → another worker holds the send ("in flight")
  none    → proceed and claim
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from core.errors import DuplicateRecordError
from database.store_base import BaseCampaignStore
from models.schemas import OutboundMessage, OutboundState

logger = structlog.get_logger()


def _escape(component: str) -> str:
    return str(component).replace("%", "%25").replace(":", "%3A")


def build_dedupe_key(tenant_id: str, campaign_id: str, contact_id: str,
                     node_id: str, channel: str) -> str:
    """tenant:campaign:contact:node:channel, with ':' and '%' escaped per component."""
    channel = getattr(channel, "value", channel)
    return ":".join(_escape(p) for p in (tenant_id, campaign_id, contact_id, node_id, channel))


class DedupeOutcome(str, Enum):
    PROCEED = "proceed"
    ALREADY_SENT = "already_sent"
    PREVIOUSLY_FAILED = "previously_failed"
    IN_FLIGHT = "in_flight"


@dataclass
class DedupeDecision:
    outcome: DedupeOutcome
    message: Optional[OutboundMessage] = None

    @property
    def should_send(self) -> bool:
        return self.outcome == DedupeOutcome.PROCEED


class DedupeGuard:

    def __init__(self, store: BaseCampaignStore):
        self.store = store

    async def check(self, tenant_id: str, dedupe_key: str) -> DedupeDecision:
        existing = await self.store.get_outbound_by_dedupe_key(tenant_id, dedupe_key)
        if existing is None:
            return DedupeDecision(DedupeOutcome.PROCEED)

        if existing.state == OutboundState.SENT:
            outcome = DedupeOutcome.ALREADY_SENT
        elif existing.state == OutboundState.FAILED:
            outcome = DedupeOutcome.PREVIOUSLY_FAILED
        else:
            outcome = DedupeOutcome.IN_FLIGHT

        logger.info("dedupe_hit",
                    tenant_id=tenant_id,
                    dedupe_key=dedupe_key,
                    state=getattr(existing.state, "value", existing.state),
                    outcome=outcome.value)
        return DedupeDecision(outcome, existing)

    async def claim(self, message: OutboundMessage) -> DedupeDecision:
        """
        Insert the queued row. Losing the unique-constraint race means another
        worker claimed the key first; that is reported as in flight.
        """
        try:
            await self.store.insert_outbound_message(message)
        except DuplicateRecordError:
            logger.info("dedupe_claim_conflict",
                        tenant_id=message.tenant_id,
                        dedupe_key=message.dedupe_key)
            existing = await self.store.get_outbound_by_dedupe_key(message.tenant_id, message.dedupe_key)
            return DedupeDecision(DedupeOutcome.IN_FLIGHT, existing)
        return DedupeDecision(DedupeOutcome.PROCEED, message)
