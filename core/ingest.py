"""
Event Ingestor — entry point for real provider events (webhooks, pollers).

Each event is appended to the message's event log in provider vocabulary and
then handed to the transition engine, normalized to plan vocabulary, against
the campaign's current node. Events for anything but the campaign's latest
message are recorded but never move the campaign.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from channels.suppression import SuppressionService
from core.errors import DispatchValidationError, PlanValidationError, StateIntegrityError
from core.transitions import TransitionEngine
from database.store_base import BaseCampaignStore
from models.events import (
    MessageEventType, is_timeout_event, normalize_event_type, provider_event_type,
)
from models.plan import load_plan
from models.schemas import CampaignStatus, IngestResult, MessageEvent

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventIngestor:

    def __init__(
        self,
        store: BaseCampaignStore,
        transitions: TransitionEngine,
        suppression: Optional[SuppressionService] = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.transitions = transitions
        self.suppression = suppression or SuppressionService(store)
        self._now = now_fn

    async def record_event(
        self,
        tenant_id: str,
        message_id: str,
        raw_type: str,
        event_at: Optional[datetime] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> IngestResult:
        if is_timeout_event(raw_type):
            raise DispatchValidationError(f"'{raw_type}' is produced by the timeout worker, not ingested")

        stored_type = provider_event_type(raw_type)
        event_type = normalize_event_type(stored_type)
        log = logger.bind(tenant_id=tenant_id, message_id=message_id, event_type=event_type)

        message = await self.store.get_outbound_message(tenant_id, message_id)
        if message is None:
            log.warning("event_for_unknown_message", raw_type=raw_type)
            return IngestResult(event_type=event_type, reason="message_not_found")

        event = MessageEvent(
            tenant_id=tenant_id,
            message_id=message_id,
            type=stored_type,
            event_at=event_at or self._now(),
            data={k: v for k, v in (data or {}).items() if k != "synthetic"},
        )
        await self.store.add_message_event(event)
        result = IngestResult(event_id=event.id, event_type=event_type, recorded=True)
        log.info("message_event_recorded", event_id=event.id, campaign_id=message.campaign_id)

        if stored_type == MessageEventType.UNSUBSCRIBE.value and message.content.to:
            await self.suppression.suppress(tenant_id, message.channel, message.content.to,
                                            reason="unsubscribed")
            result.suppressed = True

        campaign = await self.store.get_campaign(tenant_id, message.campaign_id)
        if campaign is None:
            raise StateIntegrityError(f"Campaign {message.campaign_id} not found",
                                      campaign_id=message.campaign_id)
        if campaign.status != CampaignStatus.ACTIVE or not campaign.current_node_id:
            result.reason = "campaign_not_active"
            return result
        if campaign.last_message_id != message_id:
            log.info("event_absorbed_not_latest_message", last_message_id=campaign.last_message_id)
            result.reason = "stale_message"
            return result

        try:
            plan = load_plan(campaign.plan_json)
        except PlanValidationError as e:
            raise StateIntegrityError(
                f"Stored plan for campaign {campaign.id} is invalid: {e.message}",
                campaign_id=campaign.id,
            ) from e

        result.transition = await self.transitions.process_transition(
            tenant_id, campaign.id, event_type, campaign.current_node_id, plan,
            event_ref=event.id,
        )
        result.reason = result.transition.reason
        return result
