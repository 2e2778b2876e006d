"""
Campaign Executor — campaign lifecycle and `execute` job handling.

  create_campaign   validate the plan document and persist a pending campaign
  start_campaign    enter the plan's start node
  execute           run the node named by an `execute` job (send nodes dispatch)
  cancel_campaign   stop the campaign and cancel its scheduled actions

Execute job payload: {tenantId, campaignId, contactId, nodeId, actionType, metadata}
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError

from config.settings import EngineConfig
from core.dispatcher import MessageDispatcher
from core.errors import DispatchValidationError, PlanValidationError, StateIntegrityError
from core.transitions import TransitionEngine
from database.store_base import BaseCampaignStore
from models.plan import Plan, SendNode, load_plan
from models.schemas import (
    CampaignStatus, ContactCampaign, ExecuteResult, ScheduledActionStatus,
    SendJobPayload,
)

logger = structlog.get_logger()

# Dispatch outcomes after which the campaign cannot progress
_TERMINAL_ERROR_KINDS = {"validation", "configuration", "transport"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignExecutor:

    def __init__(
        self,
        store: BaseCampaignStore,
        dispatcher: MessageDispatcher,
        transitions: TransitionEngine,
        engine_config: Optional[EngineConfig] = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.transitions = transitions
        self.engine_config = engine_config or EngineConfig()
        self._now = now_fn

    # ── Lifecycle ─────────────────────────────────────────────

    async def create_campaign(self, tenant_id: str, contact_id: str, plan: Any,
                              lead_id: Optional[str] = None) -> ContactCampaign:
        """Raises PlanValidationError if the plan document is rejected."""
        validated = load_plan(plan, self.engine_config.reject_duplicate_transitions)
        campaign = ContactCampaign(
            tenant_id=tenant_id,
            contact_id=contact_id,
            lead_id=lead_id,
            plan_json=validated.to_json_dict(),
        )
        await self.store.create_campaign(campaign)
        logger.info("campaign_created",
                    tenant_id=tenant_id,
                    campaign_id=campaign.id,
                    contact_id=contact_id,
                    start_node_id=validated.start_node_id,
                    nodes=len(validated.nodes))
        return campaign

    async def start_campaign(self, tenant_id: str, campaign_id: str) -> ContactCampaign:
        campaign = await self._load_campaign(tenant_id, campaign_id)
        if campaign.status != CampaignStatus.PENDING:
            logger.warning("campaign_start_ignored",
                           tenant_id=tenant_id,
                           campaign_id=campaign_id,
                           status=getattr(campaign.status, "value", campaign.status))
            return campaign

        plan = self._plan_of(campaign)
        start = plan.start_node
        now = self._now()
        fields: dict[str, Any] = {
            "current_node_id": start.id,
            "status": CampaignStatus.ACTIVE,
            "started_at": now,
            "current_node_entered_at": now,
        }
        if start.is_terminal and not isinstance(start, SendNode):
            fields.update(status=CampaignStatus.COMPLETED, completed_at=now)

        await self.store.update_campaign(tenant_id, campaign_id, **fields)
        campaign = campaign.model_copy(update=fields)
        logger.info("campaign_started",
                    tenant_id=tenant_id,
                    campaign_id=campaign_id,
                    start_node_id=start.id)

        errors = await self.transitions.enter_node(campaign, start, plan)
        if errors:
            logger.error("campaign_start_node_not_entered",
                         tenant_id=tenant_id,
                         campaign_id=campaign_id,
                         errors=errors)
        return campaign

    async def cancel_campaign(self, tenant_id: str, campaign_id: str) -> int:
        """Mark the campaign canceled; already-queued jobs for it will skip when they fire."""
        await self._load_campaign(tenant_id, campaign_id)
        await self.store.update_campaign(
            tenant_id, campaign_id,
            status=CampaignStatus.CANCELED, completed_at=self._now(),
        )
        canceled = await self.store.cancel_scheduled_actions(tenant_id, campaign_id)
        logger.info("campaign_canceled",
                    tenant_id=tenant_id,
                    campaign_id=campaign_id,
                    scheduled_actions_canceled=canceled)
        return canceled

    # ── Execute jobs ──────────────────────────────────────────

    async def execute(self, payload: dict[str, Any], job_id: Optional[str] = None) -> ExecuteResult:
        try:
            job = SendJobPayload.model_validate(payload)
        except ValidationError as e:
            raise DispatchValidationError(f"Malformed execute job payload: {e}") from e

        log = logger.bind(tenant_id=job.tenant_id, campaign_id=job.campaign_id,
                          node_id=job.node_id, job_id=job_id)

        action = await self.store.get_scheduled_action_by_job_id(job_id) if job_id else None
        if action is not None and action.status == ScheduledActionStatus.CANCELED:
            log.info("execute_skipped_canceled")
            return ExecuteResult(skipped=True, reason="canceled", node_id=job.node_id)

        campaign = await self._load_campaign(job.tenant_id, job.campaign_id)
        if campaign.status in (CampaignStatus.CANCELED, CampaignStatus.FAILED):
            status = getattr(campaign.status, "value", campaign.status)
            log.info("execute_skipped_campaign_inactive", status=status)
            await self._finish(action, ScheduledActionStatus.CANCELED)
            return ExecuteResult(skipped=True, reason=f"campaign_{status}", node_id=job.node_id)

        plan = self._plan_of(campaign)
        node = plan.get_node(job.node_id)
        if node is None:
            await self._finish(action, ScheduledActionStatus.FAILED)
            raise StateIntegrityError(
                f"Node '{job.node_id}' not found in plan for campaign {job.campaign_id}",
                campaign_id=job.campaign_id,
            )

        if campaign.current_node_id != job.node_id:
            log.info("execute_skipped_stale_node", current_node_id=campaign.current_node_id)
            await self._finish(action, ScheduledActionStatus.COMPLETED)
            return ExecuteResult(skipped=True, reason="stale_node", node_id=job.node_id)

        if not isinstance(node, SendNode):
            log.info("execute_non_send_node", action=node.action)
            await self._finish(action, ScheduledActionStatus.COMPLETED)
            return ExecuteResult(success=True, skipped=True, reason="not_a_send_node", node_id=node.id)

        contact = await self.store.get_contact(job.tenant_id, job.contact_id)
        if contact is None:
            await self._finish(action, ScheduledActionStatus.FAILED)
            raise StateIntegrityError(f"Contact {job.contact_id} not found", campaign_id=job.campaign_id)

        result = await self.dispatcher.dispatch(
            job.tenant_id, job.campaign_id, contact, node, plan, lead_id=campaign.lead_id,
        )

        if result.error_kind in _TERMINAL_ERROR_KINDS:
            await self._finish(action, ScheduledActionStatus.FAILED)
            await self.store.update_campaign(job.tenant_id, job.campaign_id, status=CampaignStatus.FAILED)
            log.error("campaign_failed_on_dispatch", error_kind=result.error_kind, error=result.error)
        else:
            await self._finish(action, ScheduledActionStatus.COMPLETED)

        return ExecuteResult(
            success=result.success,
            skipped=result.skipped,
            reason=result.skip_reason or result.error_kind,
            node_id=node.id,
            dispatch=result,
        )

    # ── Helpers ───────────────────────────────────────────────

    async def _load_campaign(self, tenant_id: str, campaign_id: str) -> ContactCampaign:
        campaign = await self.store.get_campaign(tenant_id, campaign_id)
        if campaign is None:
            logger.error("campaign_not_found", tenant_id=tenant_id, campaign_id=campaign_id)
            raise StateIntegrityError(f"Campaign {campaign_id} not found", campaign_id=campaign_id)
        return campaign

    @staticmethod
    def _plan_of(campaign: ContactCampaign) -> Plan:
        if not campaign.plan_json:
            raise StateIntegrityError(f"Campaign {campaign.id} has no plan", campaign_id=campaign.id)
        try:
            return load_plan(campaign.plan_json)
        except PlanValidationError as e:
            raise StateIntegrityError(
                f"Stored plan for campaign {campaign.id} is invalid: {e.message}",
                campaign_id=campaign.id,
            ) from e

    async def _finish(self, action, status: ScheduledActionStatus) -> None:
        if action is not None and action.status == ScheduledActionStatus.SCHEDULED:
            await self.store.update_scheduled_action(action.id, status=status)
