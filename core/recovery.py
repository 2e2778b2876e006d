"""
Startup Recovery — re-arms scheduled actions whose queue job was lost.

ScheduledAction rows are the durable record of every delayed job. On startup
each `scheduled` row is checked against the queue; if its job id is unknown
(Redis flushed, key expired, queue swapped) the job is re-enqueued under the
same id, or the row is marked expired when it is too far overdue to matter.
A known job id is left alone: a job read by a worker that died before acking
it is still pending in the stream and is reclaimed by the consumers.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from config.settings import RecoveryConfig
from database.store_base import BaseCampaignStore
from job_queue.message_queue import JobExistsError, MessageQueue
from models.schemas import (
    RecoveryResult, ScheduledAction, ScheduledActionStatus, ScheduledActionType,
    SendJobPayload, TimeoutJobPayload,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def rebuild_job_payload(action: ScheduledAction) -> dict[str, Any]:
    """Reconstruct the queue payload a scheduled action was enqueued with."""
    data = action.payload or {}
    if action.action_type == ScheduledActionType.TIMEOUT:
        return TimeoutJobPayload(
            tenant_id=action.tenant_id,
            campaign_id=action.campaign_id,
            node_id=data["nodeId"],
            message_id=data["messageId"],
            event_type=data["eventType"],
            scheduled_at=action.scheduled_at,
        ).to_job_dict()
    return SendJobPayload(
        tenant_id=action.tenant_id,
        campaign_id=action.campaign_id,
        contact_id=data["contactId"],
        node_id=data["nodeId"],
        metadata={"triggeredBy": "recovery", "scheduledAt": action.scheduled_at.isoformat()},
    ).to_job_dict()


class StartupRecovery:

    def __init__(
        self,
        store: BaseCampaignStore,
        queue: MessageQueue,
        recovery_config: Optional[RecoveryConfig] = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.queue = queue
        self.config = recovery_config or RecoveryConfig()
        self._now = now_fn

    async def recover_scheduled_actions(self) -> RecoveryResult:
        result = RecoveryResult()
        if not self.config.enabled:
            logger.info("recovery_disabled")
            return result

        now = self._now()
        expiry = timedelta(hours=self.config.expiry_threshold_hours)
        offset = 0

        while True:
            batch = await self.store.list_scheduled_actions(
                ScheduledActionStatus.SCHEDULED.value,
                limit=self.config.batch_size,
                offset=offset,
            )
            if not batch:
                break

            expired_in_batch = 0
            for action in batch:
                result.total += 1
                outcome = await self._recover_one(action, now, expiry)
                if outcome == "recovered":
                    result.recovered += 1
                elif outcome == "expired":
                    result.expired += 1
                    expired_in_batch += 1
                elif outcome == "failed":
                    result.failed += 1

            # Expired rows leave the scheduled set, so the window shifts by fewer rows
            offset += len(batch) - expired_in_batch
            if len(batch) < self.config.batch_size:
                break

        logger.info("recovery_complete",
                    total=result.total,
                    recovered=result.recovered,
                    expired=result.expired,
                    failed=result.failed)
        return result

    async def _recover_one(self, action: ScheduledAction, now: datetime, expiry: timedelta) -> str:
        log = logger.bind(tenant_id=action.tenant_id, campaign_id=action.campaign_id,
                          job_id=action.queue_job_id,
                          action_type=getattr(action.action_type, "value", action.action_type))
        scheduled_at = action.scheduled_at
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)

        try:
            if await self.queue.has_job(action.queue_job_id):
                return "present"

            if now - scheduled_at > expiry:
                await self.store.update_scheduled_action(action.id, status=ScheduledActionStatus.EXPIRED)
                log.warning("scheduled_action_expired", scheduled_at=scheduled_at.isoformat())
                return "expired"

            delay_ms = max(0, int((scheduled_at - now).total_seconds() * 1000))
            await self.queue.enqueue(action.job_name, rebuild_job_payload(action),
                                     job_id=action.queue_job_id, delay_ms=delay_ms)
        except JobExistsError:
            return "present"
        except Exception as e:
            log.error("scheduled_action_recovery_failed", error=str(e))
            return "failed"

        log.info("scheduled_action_recovered", delay_ms=delay_ms)
        return "recovered"
