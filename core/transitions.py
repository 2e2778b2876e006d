"""
Plan Transition Engine — moves a contact from one node to the next.

process_transition() is the single seam used by both real-event ingestion and
the timeout worker. Node advancement is a compare-and-set on the campaign's
current_node_id, so two workers racing on one campaign cannot both advance it;
the loser (and any event that arrives for a node the campaign has already left)
is absorbed without error.

After a successful advance the target node is entered:
  send node          → schedule an `execute` job (re-enters the dispatcher)
  wait/timeout node  → schedule the node's timeouts against the last message
  terminal node      → nothing; the campaign is marked completed
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from core.errors import StateIntegrityError
from core.scheduler import TimeoutScheduler
from database.store_base import BaseCampaignStore
from models.events import normalize_event_type
from models.plan import Plan, SendNode
from models.schemas import (
    CampaignStatus, CampaignTransitionRecord, ContactCampaign, TransitionResult,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionEngine:

    def __init__(
        self,
        store: BaseCampaignStore,
        scheduler: TimeoutScheduler,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.scheduler = scheduler
        self._now = now_fn

    async def process_transition(
        self,
        tenant_id: str,
        campaign_id: str,
        event_type: str,
        current_node_id: str,
        plan: Plan,
        event_ref: Optional[str] = None,
    ) -> TransitionResult:
        event_type = normalize_event_type(event_type)
        log = logger.bind(tenant_id=tenant_id, campaign_id=campaign_id,
                          node_id=current_node_id, event_type=event_type)

        node = plan.get_node(current_node_id)
        if node is None:
            log.error("transition_node_missing_from_plan")
            raise StateIntegrityError(
                f"Node '{current_node_id}' not found in plan for campaign {campaign_id}",
                campaign_id=campaign_id,
            )

        result = TransitionResult(event_type=event_type, from_node_id=current_node_id)

        transition = node.find_transition(event_type)
        if transition is None:
            log.info("transition_absorbed_no_match")
            result.reason = "no_matching_transition"
            return result

        campaign = await self.store.get_campaign(tenant_id, campaign_id)
        if campaign is None:
            log.error("transition_campaign_missing")
            raise StateIntegrityError(f"Campaign {campaign_id} not found", campaign_id=campaign_id)

        if campaign.status != CampaignStatus.ACTIVE:
            log.info("transition_absorbed_campaign_inactive",
                     status=getattr(campaign.status, "value", campaign.status))
            result.reason = "campaign_not_active"
            return result

        if campaign.current_node_id != current_node_id:
            log.info("transition_absorbed_stale_node", stored_node_id=campaign.current_node_id)
            result.reason = "stale_node"
            return result

        target = plan.get_node(transition.to)
        if target is None:
            raise StateIntegrityError(
                f"Transition target '{transition.to}' not found in plan for campaign {campaign_id}",
                campaign_id=campaign_id,
            )

        now = self._now()
        fields: dict[str, Any] = {"current_node_entered_at": now}
        if target.is_terminal:
            fields.update(status=CampaignStatus.COMPLETED, completed_at=now)

        record = CampaignTransitionRecord(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            from_node_id=current_node_id,
            to_node_id=target.id,
            event_type=event_type,
            event_ref=event_ref,
            occurred_at=now,
        )
        won = await self.store.advance_campaign(
            tenant_id, campaign_id, current_node_id, target.id, record, **fields,
        )
        if not won:
            log.info("transition_absorbed_lost_race")
            result.reason = "stale_node"
            return result

        result.transitioned = True
        result.to_node_id = target.id
        result.completed = target.is_terminal
        log.info("campaign_transitioned",
                 to_node_id=target.id,
                 event_ref=event_ref,
                 completed=target.is_terminal)

        campaign = campaign.model_copy(update={"current_node_id": target.id, **fields})
        result.enter_errors = await self.enter_node(campaign, target, plan)
        return result

    async def enter_node(self, campaign: ContactCampaign, node: Any, plan: Plan) -> list[str]:
        """Schedule whatever the node needs next. Errors are logged and returned."""
        log = logger.bind(tenant_id=campaign.tenant_id, campaign_id=campaign.id, node_id=node.id)
        if node.is_terminal and not isinstance(node, SendNode):
            log.info("campaign_reached_terminal_node")
            return []

        try:
            if isinstance(node, SendNode):
                report = await self.scheduler.schedule_send(
                    campaign.tenant_id, campaign.id, campaign.contact_id, node, plan,
                    base_time=self._now(),
                )
                return [f"{e['event_type']}: {e['error']}" for e in report.errors]

            if not campaign.last_message_id:
                log.warning("wait_node_without_message", action=node.action)
                return ["no message to anchor timeouts"]

            report = await self.scheduler.schedule_node_timeouts(
                campaign.tenant_id, campaign.id, node, plan, campaign.last_message_id,
                base_time=self._now(),
            )
            return [f"{e['event_type']}: {e['error']}" for e in report.errors]
        except Exception as e:
            log.error("enter_node_failed", error=str(e))
            return [str(e)]
