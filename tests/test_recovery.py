"""Tests for startup recovery of scheduled actions whose queue job was lost."""
from datetime import timedelta

import pytest

from config.settings import RecoveryConfig
from conftest import TENANT
from core.recovery import StartupRecovery, rebuild_job_payload
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import ScheduledAction, ScheduledActionStatus, ScheduledActionType


def _timeout_action(job_id, scheduled_at, campaign_id="c1"):
    return ScheduledAction(
        tenant_id=TENANT, campaign_id=campaign_id, action_type=ScheduledActionType.TIMEOUT,
        scheduled_at=scheduled_at, queue_job_id=job_id,
        payload={"nodeId": "N1", "messageId": "m1", "eventType": "no_open"},
    )


class BrokenQueue(InMemoryMessageQueue):
    async def enqueue(self, *args, **kwargs):
        raise ConnectionError("redis unavailable")


class TestRebuildJobPayload:
    def test_timeout_payload(self, clock):
        payload = rebuild_job_payload(_timeout_action("j1", clock()))
        assert payload == {
            "tenantId": TENANT, "campaignId": "c1", "nodeId": "N1", "messageId": "m1",
            "eventType": "no_open", "scheduledAt": payload["scheduledAt"],
        }
        assert payload["scheduledAt"].startswith("2024-03-04T15:00:00")

    def test_send_payload(self, clock):
        action = ScheduledAction(
            tenant_id=TENANT, campaign_id="c1", action_type=ScheduledActionType.SEND,
            scheduled_at=clock(), queue_job_id="j2",
            payload={"contactId": "contact-1", "nodeId": "N2"},
        )
        payload = rebuild_job_payload(action)
        assert payload["contactId"] == "contact-1"
        assert payload["nodeId"] == "N2"
        assert payload["actionType"] == "send"
        assert payload["metadata"]["triggeredBy"] == "recovery"


class TestRecoverScheduledActions:
    @pytest.mark.asyncio
    async def test_jobs_still_in_queue_are_left_alone(self, sent_campaign, recovery, queue):
        before = queue.delayed_jobs
        result = await recovery.recover_scheduled_actions()

        assert result.total == 1
        assert result.recovered == 0
        assert queue.delayed_jobs == before

    @pytest.mark.asyncio
    async def test_lost_job_is_re_enqueued_under_same_id(self, sent_campaign, recovery, store, queue, clock):
        [original] = queue.delayed_jobs
        queue.forget(original.job_id)
        clock.advance(hours=1)

        result = await recovery.recover_scheduled_actions()

        assert result.recovered == 1
        [job] = queue.delayed_jobs
        assert job.job_id == original.job_id
        assert job.name == "timeout"
        assert job.payload["eventType"] == "no_open"
        assert job.payload["messageId"] == sent_campaign.last_message_id
        # remaining delay, not the full window
        assert job.run_at_dt == original.run_at_dt

    @pytest.mark.asyncio
    async def test_recovered_timeout_still_fires(self, sent_campaign, recovery, timeout_worker,
                                                 store, queue, clock):
        [original] = queue.delayed_jobs
        queue.forget(original.job_id)
        await recovery.recover_scheduled_actions()

        clock.advance(hours=72)
        await queue.promote_delayed(clock())
        job = queue.ready_nowait()
        result = await timeout_worker.process(job.payload, job_id=job.job_id)
        assert result.to_node_id == "N2"

    @pytest.mark.asyncio
    async def test_slightly_overdue_job_runs_now(self, store, recovery, queue, clock):
        await store.insert_scheduled_action(_timeout_action("j1", clock() - timedelta(hours=2)))
        result = await recovery.recover_scheduled_actions()

        assert result.recovered == 1
        assert queue.ready_nowait().job_id == "j1"

    @pytest.mark.asyncio
    async def test_long_overdue_job_expires(self, store, recovery, queue, clock):
        await store.insert_scheduled_action(_timeout_action("j1", clock() - timedelta(hours=25)))
        result = await recovery.recover_scheduled_actions()

        assert result.expired == 1
        assert result.recovered == 0
        action = await store.get_scheduled_action_by_job_id("j1")
        assert action.status == ScheduledActionStatus.EXPIRED
        assert queue.ready_nowait() is None

    @pytest.mark.asyncio
    async def test_paginates_across_expired_rows(self, store, recovery, queue, clock):
        for i in range(2):
            await store.insert_scheduled_action(
                _timeout_action(f"old{i}", clock() - timedelta(days=3, minutes=i)))
        for i in range(3):
            await store.insert_scheduled_action(
                _timeout_action(f"new{i}", clock() + timedelta(hours=i + 1)))

        result = await recovery.recover_scheduled_actions()

        assert (result.total, result.expired, result.recovered) == (5, 2, 3)
        assert sorted(j.job_id for j in queue.delayed_jobs) == ["new0", "new1", "new2"]

    @pytest.mark.asyncio
    async def test_ignores_non_scheduled_rows(self, store, recovery, queue, clock):
        action = _timeout_action("j1", clock() + timedelta(hours=1))
        await store.insert_scheduled_action(action)
        await store.update_scheduled_action(action.id, status=ScheduledActionStatus.COMPLETED)

        result = await recovery.recover_scheduled_actions()
        assert result.total == 0
        assert queue.delayed_jobs == []

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_counted(self, store, clock):
        await store.insert_scheduled_action(_timeout_action("j1", clock() + timedelta(hours=1)))
        recovery = StartupRecovery(store, BrokenQueue(now_fn=clock), now_fn=clock)

        result = await recovery.recover_scheduled_actions()

        assert result.failed == 1
        action = await store.get_scheduled_action_by_job_id("j1")
        assert action.status == ScheduledActionStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_disabled(self, store, queue, clock):
        await store.insert_scheduled_action(_timeout_action("j1", clock() + timedelta(hours=1)))
        recovery = StartupRecovery(store, queue, RecoveryConfig(enabled=False), now_fn=clock)

        result = await recovery.recover_scheduled_actions()
        assert result.total == 0
        assert queue.delayed_jobs == []
