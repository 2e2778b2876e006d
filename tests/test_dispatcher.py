"""
Tests for the message dispatcher.

Covers:
  - validation, unsupported channel and suppression outcomes
  - sender identity resolution order
  - dedupe (sent / failed / in flight) and the single-send guarantee
  - transport failure handling
  - timeout scheduling after a successful send
"""
from datetime import timedelta

import pytest
import pytest_asyncio

from channels.base import TransportError
from conftest import TENANT, make_plan
from core.dedupe import build_dedupe_key
from models.plan import load_plan
from models.schemas import (
    ContactCampaign, OutboundState, ScheduledActionStatus, SenderIdentity,
    SenderValidationStatus,
)


@pytest.fixture
def plan(plan_dict):
    return load_plan(plan_dict)


@pytest_asyncio.fixture
async def campaign(store, contact, plan):
    campaign = ContactCampaign(id="camp-1", tenant_id=TENANT, contact_id=contact.id,
                               plan_json=plan.to_json_dict(), current_node_id="N1")
    await store.create_campaign(campaign)
    return campaign


class TestDispatchSuccess:
    @pytest.mark.asyncio
    async def test_sends_and_records(self, dispatcher, store, transport, contact, sender, plan, campaign, clock):
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)

        assert result.success
        assert result.provider_message_id == "pm_1"
        assert len(transport.sent) == 1
        sent = transport.sent[0]
        assert sent["from"] == "Acme Sales <sales@acme.test>"
        assert sent["to"] == "Dana.Reyes@example.com"
        assert sent["subject"] == "Quick question"
        assert sent["correlation_id"] == build_dedupe_key(TENANT, "camp-1", contact.id, "N1", "email")

        message = await store.get_outbound_message(TENANT, result.outbound_message_id)
        assert message.state == OutboundState.SENT
        assert message.provider_message_id == "pm_1"
        assert message.sent_at == clock()
        assert message.sender_identity_id == sender.id

        stored = await store.get_campaign(TENANT, campaign.id)
        assert stored.last_message_id == message.id

    @pytest.mark.asyncio
    async def test_schedules_node_timeouts_from_sent_at(self, dispatcher, store, queue, contact, sender,
                                                        plan, campaign, clock):
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)

        assert len(result.timeouts_scheduled) == 1
        job_id = result.timeouts_scheduled[0]
        assert job_id.startswith(f"timeout_camp-1_N1_no_open_{result.outbound_message_id}_")

        action = await store.get_scheduled_action_by_job_id(job_id)
        assert action.status == ScheduledActionStatus.SCHEDULED
        assert action.scheduled_at == clock() + timedelta(hours=72)

        job = await queue.get_job(job_id)
        assert job.name == "timeout"
        assert job.payload["eventType"] == "no_open"
        assert job.payload["messageId"] == result.outbound_message_id

    @pytest.mark.asyncio
    async def test_second_dispatch_reuses_sent_message(self, dispatcher, transport, contact, sender, plan, campaign):
        first = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        second = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)

        assert len(transport.sent) == 1
        assert second.success
        assert second.deduplicated
        assert second.outbound_message_id == first.outbound_message_id
        assert second.provider_message_id == "pm_1"
        # timeouts already exist under the same job id
        assert second.timeouts_scheduled == []
        assert second.scheduling_errors == []

    @pytest.mark.asyncio
    async def test_dedupe_hit_heals_missing_timeouts(self, dispatcher, store, scheduler, contact, sender,
                                                     plan, campaign, monkeypatch):
        async def crash(*args, **kwargs):
            raise RuntimeError("worker died")

        monkeypatch.setattr(scheduler, "schedule_node_timeouts", crash)
        first = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert first.success
        assert first.scheduling_errors == ["worker died"]
        monkeypatch.undo()

        retry = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert retry.deduplicated
        assert len(retry.timeouts_scheduled) == 1


class TestDispatchRejections:
    @pytest.mark.asyncio
    async def test_non_send_node_is_validation_error(self, dispatcher, contact, sender, plan, campaign):
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N3"), plan)
        assert not result.success
        assert result.error_kind == "validation"

    @pytest.mark.asyncio
    async def test_blank_subject_is_validation_error(self, dispatcher, transport, contact, sender, campaign):
        plan_dict = make_plan()
        plan_dict["nodes"][0]["subject"] = "   "
        plan = load_plan(plan_dict)
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert result.error_kind == "validation"
        assert "subject" in result.error
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_missing_body_is_validation_error(self, dispatcher, contact, sender, campaign):
        plan_dict = make_plan()
        del plan_dict["nodes"][0]["body"]
        plan = load_plan(plan_dict)
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert result.error_kind == "validation"

    @pytest.mark.asyncio
    async def test_contact_without_email_is_validation_error(self, dispatcher, store, contact, sender, plan, campaign):
        no_email = contact.model_copy(update={"email": None})
        result = await dispatcher.dispatch(TENANT, campaign.id, no_email, plan.get_node("N1"), plan)
        assert result.error_kind == "validation"
        assert await store.get_outbound_by_dedupe_key(
            TENANT, build_dedupe_key(TENANT, "camp-1", contact.id, "N1", "email")) is None

    @pytest.mark.asyncio
    async def test_sms_node_is_skipped(self, dispatcher, transport, contact, sender, campaign):
        plan_dict = make_plan()
        plan_dict["nodes"][0]["channel"] = "sms"
        plan = load_plan(plan_dict)
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert result.skipped
        assert result.skip_reason == "channel_not_supported"
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_unsubscribed_contact_is_skipped(self, dispatcher, suppression, transport, contact,
                                                   sender, plan, campaign):
        await suppression.suppress(TENANT, "email", "dana.reyes@EXAMPLE.com")
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert result.skipped
        assert result.skip_reason == "unsubscribed"
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_global_suppression_applies_to_every_tenant(self, dispatcher, suppression, transport,
                                                              contact, sender, plan, campaign):
        await suppression.suppress(None, "email", contact.email, reason="spamreport")
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert result.skip_reason == "unsubscribed"

    @pytest.mark.asyncio
    async def test_no_verified_sender_is_configuration_error(self, dispatcher, store, transport, contact,
                                                             plan, campaign):
        await store.upsert_sender_identity(SenderIdentity(
            id="sender-pending", tenant_id=TENANT, from_email="x@acme.test"))
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert result.error_kind == "configuration"
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_explicit_unverified_sender_is_configuration_error(self, dispatcher, store, contact,
                                                                     sender, campaign):
        await store.upsert_sender_identity(SenderIdentity(
            id="sender-pending", tenant_id=TENANT, from_email="x@acme.test"))
        plan = load_plan(make_plan(senderIdentityId="sender-pending"))
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert result.error_kind == "configuration"
        assert "not verified" in result.error


class TestSenderResolution:
    @pytest_asyncio.fixture
    async def identities(self, store):
        for identity_id, lead_id in (("s-any", None), ("s-lead", "lead-1"), ("s-plan", None), ("s-node", None)):
            await store.upsert_sender_identity(SenderIdentity(
                id=identity_id, tenant_id=TENANT, lead_id=lead_id,
                from_email=f"{identity_id}@acme.test",
                validation_status=SenderValidationStatus.VERIFIED,
            ))

    @pytest.mark.asyncio
    async def test_node_override_wins(self, dispatcher, transport, contact, identities, campaign):
        plan_dict = make_plan(senderIdentityId="s-plan")
        plan_dict["nodes"][0]["senderIdentityId"] = "s-node"
        plan = load_plan(plan_dict)
        await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert transport.sent[0]["from"] == "s-node@acme.test"

    @pytest.mark.asyncio
    async def test_plan_default_next(self, dispatcher, transport, contact, identities, campaign):
        plan = load_plan(make_plan(senderIdentityId="s-plan"))
        await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert transport.sent[0]["from"] == "s-plan@acme.test"

    @pytest.mark.asyncio
    async def test_lead_bound_identity_before_any(self, dispatcher, transport, contact, identities, plan, campaign):
        await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan, lead_id="lead-1")
        assert transport.sent[0]["from"] == "s-lead@acme.test"


class TestTransportFailure:
    @pytest.mark.asyncio
    async def test_failure_recorded_and_not_resent(self, dispatcher, store, queue, transport, contact,
                                                   sender, plan, campaign):
        transport.fail_with = TransportError("SendGrid rejected send (400): bad from", "email")
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)

        assert not result.success
        assert result.error_kind == "transport"
        message = await store.get_outbound_message(TENANT, result.outbound_message_id)
        assert message.state == OutboundState.FAILED
        assert "bad from" in message.last_error
        assert await queue.queue_length("campaign:delayed") == 0

        transport.fail_with = None
        again = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert again.error_kind == "transport"
        assert again.deduplicated
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_queued_row_reports_in_flight(self, dispatcher, store, transport, contact, sender, plan, campaign):
        from models.schemas import MessageContent, OutboundMessage
        await store.insert_outbound_message(OutboundMessage(
            tenant_id=TENANT, campaign_id="camp-1", contact_id=contact.id, node_id="N1",
            dedupe_key=build_dedupe_key(TENANT, "camp-1", contact.id, "N1", "email"),
            content=MessageContent(),
        ))
        result = await dispatcher.dispatch(TENANT, campaign.id, contact, plan.get_node("N1"), plan)
        assert result.skipped
        assert result.skip_reason == "in_flight"
        assert transport.sent == []
