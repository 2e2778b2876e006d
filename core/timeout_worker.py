"""
Timeout Worker — handles fired `timeout` jobs.

When a timeout's timer fires the worker first runs the supersession check: if
the real event the timeout stands in for (open for no_open, click for
no_click) has been recorded for the message, the timeout is dropped. Otherwise
a synthetic MessageEvent is written and handed to the transition engine with
the node the timeout was scheduled for; if the campaign has moved on since,
the engine absorbs it.

Job payload: {tenantId, campaignId, nodeId, messageId, eventType, scheduledAt}
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError

from core.errors import DispatchValidationError, PlanValidationError, StateIntegrityError
from core.transitions import TransitionEngine
from database.store_base import BaseCampaignStore
from models.events import is_timeout_event, real_event_for
from models.plan import load_plan
from models.schemas import (
    MessageEvent, ScheduledAction, ScheduledActionStatus, TimeoutJobPayload,
    TimeoutJobResult,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeoutWorker:

    def __init__(
        self,
        store: BaseCampaignStore,
        transitions: TransitionEngine,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.transitions = transitions
        self._now = now_fn

    @staticmethod
    def parse_payload(payload: dict[str, Any]) -> TimeoutJobPayload:
        try:
            parsed = TimeoutJobPayload.model_validate(payload)
        except ValidationError as e:
            raise DispatchValidationError(f"Malformed timeout job payload: {e}") from e
        if not is_timeout_event(parsed.event_type):
            raise DispatchValidationError(f"'{parsed.event_type}' is not a timeout event type")
        return parsed

    async def process(self, payload: dict[str, Any], job_id: Optional[str] = None) -> TimeoutJobResult:
        job = self.parse_payload(payload)
        log = logger.bind(tenant_id=job.tenant_id, campaign_id=job.campaign_id,
                          node_id=job.node_id, message_id=job.message_id,
                          event_type=job.event_type, job_id=job_id)

        action = await self.store.get_scheduled_action_by_job_id(job_id) if job_id else None
        if action is not None and action.status == ScheduledActionStatus.CANCELED:
            log.info("timeout_skipped_canceled")
            return TimeoutJobResult(skipped=True, reason="canceled")

        # Supersession: the real event already happened
        real_type = real_event_for(job.event_type)
        real_event = await self.store.find_message_event(
            job.tenant_id, job.message_id, real_type, synthetic=False,
        )
        if real_event is not None:
            log.info("timeout_superseded_by_real_event", real_event_id=real_event.id)
            await self._finish(action, ScheduledActionStatus.COMPLETED)
            return TimeoutJobResult(success=True, skipped=True, reason="real_event_exists")

        event = await self._synthetic_event(job, job_id, log)

        campaign = await self.store.get_campaign(job.tenant_id, job.campaign_id)
        if campaign is None or not campaign.plan_json:
            log.error("timeout_campaign_or_plan_missing", campaign_found=campaign is not None)
            await self._finish(action, ScheduledActionStatus.FAILED)
            raise StateIntegrityError(
                f"Campaign {job.campaign_id} or its plan not found",
                campaign_id=job.campaign_id,
            )
        try:
            plan = load_plan(campaign.plan_json)
        except PlanValidationError as e:
            await self._finish(action, ScheduledActionStatus.FAILED)
            raise StateIntegrityError(
                f"Stored plan for campaign {job.campaign_id} is invalid: {e.message}",
                campaign_id=job.campaign_id,
            ) from e

        try:
            transition = await self.transitions.process_transition(
                job.tenant_id, job.campaign_id, job.event_type, job.node_id, plan,
                event_ref=event.id,
            )
        except StateIntegrityError:
            await self._finish(action, ScheduledActionStatus.FAILED)
            raise

        await self._finish(action, ScheduledActionStatus.COMPLETED)
        log.info("timeout_processed",
                 synthetic_event_id=event.id,
                 transitioned=transition.transitioned,
                 to_node_id=transition.to_node_id,
                 reason=transition.reason)
        return TimeoutJobResult(
            success=True,
            skipped=not transition.transitioned,
            reason=transition.reason,
            synthetic_event_id=event.id,
            from_node_id=job.node_id,
            to_node_id=transition.to_node_id,
        )

    async def _synthetic_event(self, job: TimeoutJobPayload, job_id: Optional[str], log) -> MessageEvent:
        existing = await self.store.find_message_event(
            job.tenant_id, job.message_id, job.event_type, synthetic=True,
        )
        if existing is not None:
            log.info("synthetic_event_reused", synthetic_event_id=existing.id)
            return existing

        fired_at = self._now()
        drift_ms = int((fired_at - job.scheduled_at).total_seconds() * 1000)
        event = MessageEvent(
            tenant_id=job.tenant_id,
            message_id=job.message_id,
            type=job.event_type,
            event_at=fired_at,
            data={
                "synthetic": True,
                "triggeredBy": "timeout",
                "originalJobId": job_id,
                "scheduledAt": job.scheduled_at.isoformat(),
                "actualFiredAt": fired_at.isoformat(),
                "driftMs": drift_ms,
            },
        )
        await self.store.add_message_event(event)
        log.info("synthetic_event_created", synthetic_event_id=event.id, drift_ms=drift_ms)
        return event

    async def _finish(self, action: Optional[ScheduledAction], status: ScheduledActionStatus) -> None:
        if action is not None and action.status == ScheduledActionStatus.SCHEDULED:
            await self.store.update_scheduled_action(action.id, status=status)
