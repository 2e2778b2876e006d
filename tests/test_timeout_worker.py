"""Tests for the timeout worker: supersession, synthetic events and transition hand-off."""
from datetime import timedelta

import pytest

from conftest import TENANT, fire_due_jobs
from core.errors import DispatchValidationError, StateIntegrityError
from models.schemas import MessageEvent, ScheduledActionStatus


@pytest.fixture
def timeout_job(queue):
    def _get():
        jobs = [j for j in queue.delayed_jobs if j.name == "timeout"]
        assert len(jobs) == 1
        return jobs[0]
    return _get


class TestTimeoutFires:
    @pytest.mark.asyncio
    async def test_no_real_event_transitions_via_synthetic_event(self, sent_campaign, timeout_worker, store,
                                                                 queue, clock, timeout_job):
        job = timeout_job()
        clock.advance(hours=72, seconds=5)
        assert [j.job_id for j in await fire_due_jobs(queue, clock)] == [job.job_id]

        result = await timeout_worker.process(job.payload, job_id=job.job_id)

        assert result.success and not result.skipped
        assert (result.from_node_id, result.to_node_id) == ("N1", "N2")

        event = await store.find_message_event(TENANT, sent_campaign.last_message_id, "no_open", synthetic=True)
        assert event.id == result.synthetic_event_id
        assert event.data["triggeredBy"] == "timeout"
        assert event.data["originalJobId"] == job.job_id
        assert event.data["driftMs"] == 5000

        campaign = await store.get_campaign(TENANT, sent_campaign.id)
        assert campaign.current_node_id == "N2"
        transitions = await store.list_transitions(TENANT, sent_campaign.id)
        assert transitions[-1].event_ref == event.id

        action = await store.get_scheduled_action_by_job_id(job.job_id)
        assert action.status == ScheduledActionStatus.COMPLETED

        # N2 is a send node: its execute job is queued
        send_job = queue.ready_nowait()
        assert send_job.name == "execute"
        assert send_job.payload["nodeId"] == "N2"

    @pytest.mark.asyncio
    async def test_real_event_supersedes_timeout(self, sent_campaign, timeout_worker, store, clock, timeout_job):
        await store.add_message_event(MessageEvent(
            tenant_id=TENANT, message_id=sent_campaign.last_message_id, type="open"))
        job = timeout_job()
        clock.advance(hours=72)

        result = await timeout_worker.process(job.payload, job_id=job.job_id)

        assert result.skipped
        assert result.reason == "real_event_exists"
        assert await store.find_message_event(
            TENANT, sent_campaign.last_message_id, "no_open") is None
        campaign = await store.get_campaign(TENANT, sent_campaign.id)
        assert campaign.current_node_id == "N1"
        action = await store.get_scheduled_action_by_job_id(job.job_id)
        assert action.status == ScheduledActionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_synthetic_event_of_real_type_does_not_supersede(self, sent_campaign, timeout_worker, store,
                                                                   clock, timeout_job):
        await store.add_message_event(MessageEvent(
            tenant_id=TENANT, message_id=sent_campaign.last_message_id, type="open",
            data={"synthetic": True}))
        clock.advance(hours=72)
        result = await timeout_worker.process(timeout_job().payload, job_id=timeout_job().job_id)
        assert result.to_node_id == "N2"

    @pytest.mark.asyncio
    async def test_redelivered_job_reuses_synthetic_event(self, sent_campaign, timeout_worker, store,
                                                          clock, timeout_job):
        job = timeout_job()
        clock.advance(hours=72)
        first = await timeout_worker.process(job.payload, job_id=job.job_id)
        second = await timeout_worker.process(job.payload, job_id=job.job_id)

        assert second.synthetic_event_id == first.synthetic_event_id
        assert second.skipped
        assert second.reason == "stale_node"
        events = await store.list_message_events(TENANT, sent_campaign.last_message_id)
        assert [e.type for e in events] == ["no_open"]
        assert len(await store.list_transitions(TENANT, sent_campaign.id)) == 1

    @pytest.mark.asyncio
    async def test_canceled_action_skips(self, sent_campaign, timeout_worker, store, timeout_job):
        job = timeout_job()
        await store.cancel_scheduled_actions(TENANT, sent_campaign.id)
        result = await timeout_worker.process(job.payload, job_id=job.job_id)
        assert result.skipped
        assert result.reason == "canceled"
        assert await store.list_message_events(TENANT, sent_campaign.last_message_id) == []

    @pytest.mark.asyncio
    async def test_campaign_not_active_absorbs(self, sent_campaign, timeout_worker, store, clock, timeout_job):
        from models.schemas import CampaignStatus
        await store.update_campaign(TENANT, sent_campaign.id, status=CampaignStatus.FAILED)
        clock.advance(hours=72)
        result = await timeout_worker.process(timeout_job().payload, job_id=timeout_job().job_id)
        assert result.reason == "campaign_not_active"
        assert (await store.get_campaign(TENANT, sent_campaign.id)).current_node_id == "N1"


class TestTimeoutPayloadAndIntegrity:
    @pytest.mark.asyncio
    async def test_malformed_payload_rejected(self, timeout_worker):
        with pytest.raises(DispatchValidationError):
            await timeout_worker.process({"tenantId": TENANT, "campaignId": "c1"})

    @pytest.mark.asyncio
    async def test_non_timeout_event_type_rejected(self, timeout_worker, clock):
        payload = {
            "tenantId": TENANT, "campaignId": "c1", "nodeId": "N1", "messageId": "m1",
            "eventType": "opened", "scheduledAt": clock().isoformat(),
        }
        with pytest.raises(DispatchValidationError) as exc:
            await timeout_worker.process(payload)
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_missing_campaign_is_state_integrity_error(self, timeout_worker, scheduler, store, clock):
        status, job_id = await scheduler.schedule_timeout_job(
            TENANT, "ghost", "N1", "m1", "no_open", clock() + timedelta(hours=1))
        assert status == "scheduled"
        payload = {
            "tenantId": TENANT, "campaignId": "ghost", "nodeId": "N1", "messageId": "m1",
            "eventType": "no_open", "scheduledAt": (clock() + timedelta(hours=1)).isoformat(),
        }
        with pytest.raises(StateIntegrityError):
            await timeout_worker.process(payload, job_id=job_id)

        action = await store.get_scheduled_action_by_job_id(job_id)
        assert action.status == ScheduledActionStatus.FAILED

    @pytest.mark.asyncio
    async def test_node_missing_from_plan_is_state_integrity_error(self, sent_campaign, timeout_worker,
                                                                   clock, timeout_job):
        payload = dict(timeout_job().payload, nodeId="N99")
        clock.advance(hours=72)
        with pytest.raises(StateIntegrityError):
            await timeout_worker.process(payload)
