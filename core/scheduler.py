"""
Timeout Scheduler — turns a node's timeout transitions into delayed jobs.

For every timeout event type a node reacts to (no_open, no_click) one
ScheduledAction row and one delayed `timeout` job are created under the same
deterministic job id. Row insert and enqueue form one unit of work: if the
enqueue fails the row is rolled back, so no orphan record survives.

Also schedules `execute` jobs for send nodes, honouring the node's
schedule.delay / schedule.at and the plan's quiet hours.
"""
from __future__ import annotations

import hashlib
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from config.settings import EngineConfig
from core.errors import DuplicateRecordError
from database.store_base import BaseCampaignStore
from job_queue.message_queue import JobExistsError, MessageQueue
from models.plan import Plan, SendNode, Transition
from models.schemas import (
    ScheduleReport, ScheduledAction, ScheduledActionType, SendJobPayload,
    TimeoutJobPayload,
)
from utils.durations import apply_quiet_hours, calculate_schedule_time, parse_iso_duration

logger = structlog.get_logger()

TIMEOUT_JOB = "timeout"
EXECUTE_JOB = "execute"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short_hash(*parts: str) -> str:
    return hashlib.sha256(":".join(parts).encode()).hexdigest()[:8]


def generate_timeout_job_id(campaign_id: str, node_id: str, event_type: str, message_id: str) -> str:
    """Pure function of its tuple; the hash suffix keeps ids distinct when parts contain '_'."""
    event_type = getattr(event_type, "value", event_type)
    suffix = _short_hash(campaign_id, node_id, event_type, message_id)
    return f"timeout_{campaign_id}_{node_id}_{event_type}_{message_id}_{suffix}"


def generate_send_job_id(campaign_id: str, node_id: str) -> str:
    return f"send_{campaign_id}_{node_id}_{_short_hash(campaign_id, node_id)}"


def _parse_at(value: str) -> datetime:
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


class TimeoutScheduler:

    def __init__(
        self,
        store: BaseCampaignStore,
        queue: MessageQueue,
        engine_config: Optional[EngineConfig] = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.queue = queue
        self.engine_config = engine_config or EngineConfig()
        self._now = now_fn

    # ── Timeouts ──────────────────────────────────────────────

    def resolve_duration(self, transition: Transition, plan: Plan) -> timedelta:
        """
        Explicit `after` → plan defaults.timers → engine default.
        The first configured value is authoritative; ValueError if it does not parse.
        """
        candidates = (
            transition.after,
            plan.defaults.timers.for_event(transition.on),
            self.engine_config.default_timer(transition.on),
        )
        raw = next((c for c in candidates if c), None)
        if raw is None:
            raise ValueError(f"No duration configured for {transition.on}")
        return parse_iso_duration(raw)

    async def schedule_node_timeouts(
        self,
        tenant_id: str,
        campaign_id: str,
        node: Any,
        plan: Plan,
        message_id: str,
        base_time: Optional[datetime] = None,
    ) -> ScheduleReport:
        """Schedule one timeout job per timeout event type the node's transitions reference."""
        report = ScheduleReport()
        base = base_time or self._now()

        for transition in node.timeout_transitions():
            event_type = transition.on
            try:
                duration = self.resolve_duration(transition, plan)
            except ValueError as e:
                logger.error("timeout_duration_invalid",
                             tenant_id=tenant_id,
                             campaign_id=campaign_id,
                             node_id=node.id,
                             event_type=event_type,
                             error=str(e))
                report.errors.append({"event_type": event_type, "error": str(e)})
                continue

            try:
                status, job_id = await self.schedule_timeout_job(
                    tenant_id, campaign_id, node.id, message_id, event_type, base + duration,
                )
            except Exception as e:
                logger.error("timeout_schedule_failed",
                             tenant_id=tenant_id,
                             campaign_id=campaign_id,
                             node_id=node.id,
                             event_type=event_type,
                             error=str(e))
                report.errors.append({"event_type": event_type, "error": str(e)})
                continue

            if status == "scheduled":
                report.scheduled.append(job_id)
            else:
                report.skipped.append({"event_type": event_type, "job_id": job_id, "reason": status})

        logger.info("node_timeouts_scheduled",
                    tenant_id=tenant_id,
                    campaign_id=campaign_id,
                    node_id=node.id,
                    message_id=message_id,
                    scheduled=len(report.scheduled),
                    skipped=len(report.skipped),
                    errors=len(report.errors))
        return report

    async def schedule_timeout_job(
        self,
        tenant_id: str,
        campaign_id: str,
        node_id: str,
        message_id: str,
        event_type: str,
        scheduled_at: datetime,
    ) -> tuple[str, str]:
        """
        Returns (status, job_id) with status one of scheduled | non_positive_delay |
        already_scheduled. Enqueue failures propagate after the row is rolled back.
        """
        event_type = getattr(event_type, "value", event_type)
        job_id = generate_timeout_job_id(campaign_id, node_id, event_type, message_id)
        delay_ms = int((scheduled_at - self._now()).total_seconds() * 1000)

        if delay_ms <= 0:
            logger.warning("timeout_skipped_non_positive_delay",
                           tenant_id=tenant_id,
                           campaign_id=campaign_id,
                           node_id=node_id,
                           event_type=event_type,
                           scheduled_at=scheduled_at.isoformat(),
                           delay_ms=delay_ms)
            return "non_positive_delay", job_id

        payload = TimeoutJobPayload(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            node_id=node_id,
            message_id=message_id,
            event_type=event_type,
            scheduled_at=scheduled_at,
        )
        action = ScheduledAction(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            action_type=ScheduledActionType.TIMEOUT,
            scheduled_at=scheduled_at,
            payload={"nodeId": node_id, "messageId": message_id, "eventType": event_type},
            queue_job_id=job_id,
        )
        status = await self._record_and_enqueue(action, TIMEOUT_JOB, payload.to_job_dict(), delay_ms)
        return status, job_id

    # ── Sends ─────────────────────────────────────────────────

    def send_time(self, node: SendNode, plan: Plan, base_time: Optional[datetime] = None) -> datetime:
        base = base_time or self._now()
        schedule = node.schedule
        if schedule.at:
            try:
                moment = _parse_at(schedule.at)
            except ValueError:
                logger.warning("schedule_at_invalid_using_delay", node_id=node.id, at=schedule.at)
            else:
                if plan.quiet_hours:
                    moment = apply_quiet_hours(moment, plan.timezone, plan.quiet_hours)
                return moment
        return calculate_schedule_time(schedule.delay, plan.timezone, plan.quiet_hours, base)

    async def schedule_send(
        self,
        tenant_id: str,
        campaign_id: str,
        contact_id: str,
        node: SendNode,
        plan: Plan,
        base_time: Optional[datetime] = None,
        triggered_by: str = "transition",
    ) -> ScheduleReport:
        """Record and enqueue the `execute` job for a send node."""
        report = ScheduleReport()
        job_id = generate_send_job_id(campaign_id, node.id)
        run_at = self.send_time(node, plan, base_time)
        delay_ms = max(0, int((run_at - self._now()).total_seconds() * 1000))

        payload = SendJobPayload(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            contact_id=contact_id,
            node_id=node.id,
            metadata={"triggeredBy": triggered_by, "scheduledAt": run_at.isoformat()},
        )
        action = ScheduledAction(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            action_type=ScheduledActionType.SEND,
            scheduled_at=run_at,
            payload={"nodeId": node.id, "contactId": contact_id},
            queue_job_id=job_id,
        )
        status = await self._record_and_enqueue(action, EXECUTE_JOB, payload.to_job_dict(), delay_ms)
        if status == "scheduled":
            report.scheduled.append(job_id)
        else:
            report.skipped.append({"event_type": "send", "job_id": job_id, "reason": status})

        logger.info("send_scheduled",
                    tenant_id=tenant_id,
                    campaign_id=campaign_id,
                    node_id=node.id,
                    job_id=job_id,
                    status=status,
                    run_at=run_at.isoformat(),
                    triggered_by=triggered_by)
        return report

    # ── Atomic record + enqueue ───────────────────────────────

    async def _record_and_enqueue(self, action: ScheduledAction, job_name: str,
                                  job_payload: dict[str, Any], delay_ms: int) -> str:
        async def enqueue():
            try:
                await self.queue.enqueue(job_name, job_payload, job_id=action.queue_job_id,
                                         delay_ms=delay_ms)
            except JobExistsError:
                # The job survived an earlier attempt whose row did not; keep the new row
                logger.info("queue_job_already_exists",
                            job_id=action.queue_job_id,
                            campaign_id=action.campaign_id)

        try:
            await self.store.insert_scheduled_action(action, link=enqueue)
        except DuplicateRecordError:
            logger.info("scheduled_action_already_exists",
                        job_id=action.queue_job_id,
                        campaign_id=action.campaign_id)
            return "already_scheduled"
        return "scheduled"
