"""Shared test fixtures for the campaign engine."""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio

from channels.base import Transport, TransportError
from channels.suppression import SuppressionService
from config.settings import EngineConfig, RecoveryConfig
from core.dispatcher import MessageDispatcher
from core.executor import CampaignExecutor
from core.ingest import EventIngestor
from core.recovery import StartupRecovery
from core.scheduler import TimeoutScheduler
from core.timeout_worker import TimeoutWorker
from core.transitions import TransitionEngine
from database.store_memory import InMemoryCampaignStore
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import Contact, SenderIdentity, SenderValidationStatus

TENANT = "tenant-1"


class FrozenClock:
    """Injectable now_fn; tests move time explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTransport(Transport):
    """Records every send; fail_with makes the next sends raise."""

    def __init__(self):
        super().__init__()
        self.sent: list[dict[str, Any]] = []
        self.fail_with: Optional[TransportError] = None

    async def _do_send(self, from_address, to, subject, html, correlation_id, custom_args):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({
            "from": from_address,
            "to": to,
            "subject": subject,
            "html": html,
            "correlation_id": correlation_id,
            "custom_args": custom_args,
        })
        return f"pm_{len(self.sent)}"


# ──────────────────────────────────────────────────────────────
#  Plans
# ──────────────────────────────────────────────────────────────

def make_plan(**overrides) -> dict[str, Any]:
    """
    N1 send ──opened──▶ N3 stop
       └──no_open (PT72H)──▶ N2 send ──clicked──▶ N3 stop
                                └──no_click (PT24H)──▶ N4 stop
    """
    plan = {
        "version": "1.0",
        "timezone": "UTC",
        "startNodeId": "N1",
        "nodes": [
            {
                "id": "N1", "action": "send", "channel": "email",
                "subject": "Quick question", "body": "<p>Hi there</p>",
                "transitions": [
                    {"on": "opened", "to": "N3", "within": "PT72H"},
                    {"on": "no_open", "to": "N2", "after": "PT72H"},
                ],
            },
            {
                "id": "N2", "action": "send", "channel": "email",
                "subject": "Following up", "body": "<p>Just checking in</p>",
                "transitions": [
                    {"on": "clicked", "to": "N3", "within": "PT24H"},
                    {"on": "no_click", "to": "N4", "after": "PT24H"},
                ],
            },
            {"id": "N3", "action": "stop"},
            {"id": "N4", "action": "stop"},
        ],
    }
    plan.update(overrides)
    return plan


@pytest.fixture
def plan_dict() -> dict[str, Any]:
    return make_plan()


# ──────────────────────────────────────────────────────────────
#  Engine wiring
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryCampaignStore:
    return InMemoryCampaignStore()


@pytest.fixture
def queue(clock) -> InMemoryMessageQueue:
    # Never connected: no background promoter, tests call promote_delayed() themselves
    return InMemoryMessageQueue(now_fn=clock, retry_backoff_base=1)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def scheduler(store, queue, engine_config, clock) -> TimeoutScheduler:
    return TimeoutScheduler(store, queue, engine_config, now_fn=clock)


@pytest.fixture
def suppression(store) -> SuppressionService:
    return SuppressionService(store)


@pytest.fixture
def dispatcher(store, transport, scheduler, suppression, clock) -> MessageDispatcher:
    return MessageDispatcher(store, transport, scheduler, suppression, now_fn=clock)


@pytest.fixture
def transitions(store, scheduler, clock) -> TransitionEngine:
    return TransitionEngine(store, scheduler, now_fn=clock)


@pytest.fixture
def timeout_worker(store, transitions, clock) -> TimeoutWorker:
    return TimeoutWorker(store, transitions, now_fn=clock)


@pytest.fixture
def executor(store, dispatcher, transitions, engine_config, clock) -> CampaignExecutor:
    return CampaignExecutor(store, dispatcher, transitions, engine_config, now_fn=clock)


@pytest.fixture
def ingestor(store, transitions, suppression, clock) -> EventIngestor:
    return EventIngestor(store, transitions, suppression, now_fn=clock)


@pytest.fixture
def recovery(store, queue, clock) -> StartupRecovery:
    return StartupRecovery(store, queue, RecoveryConfig(batch_size=2), now_fn=clock)


# ──────────────────────────────────────────────────────────────
#  Seed data
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def contact(store) -> Contact:
    contact = Contact(id="contact-1", tenant_id=TENANT, lead_id="lead-1",
                      name="Dana Reyes", email="Dana.Reyes@example.com")
    await store.upsert_contact(contact)
    return contact


@pytest_asyncio.fixture
async def sender(store) -> SenderIdentity:
    identity = SenderIdentity(id="sender-1", tenant_id=TENANT, from_email="sales@acme.test",
                              from_name="Acme Sales",
                              validation_status=SenderValidationStatus.VERIFIED)
    await store.upsert_sender_identity(identity)
    return identity


@pytest_asyncio.fixture
async def started_campaign(executor, contact, sender, plan_dict):
    """An active campaign sitting on N1 with its execute job ready on the queue."""
    campaign = await executor.create_campaign(TENANT, contact.id, plan_dict, lead_id="lead-1")
    return await executor.start_campaign(TENANT, campaign.id)


@pytest_asyncio.fixture
async def sent_campaign(started_campaign, executor, queue, store):
    """N1 has been sent; its no_open timeout job is parked on the delayed set."""
    job = queue.ready_nowait()
    result = await executor.execute(job.payload, job_id=job.job_id)
    assert result.success
    return await store.get_campaign(TENANT, started_campaign.id)


async def fire_due_jobs(queue: InMemoryMessageQueue, clock: FrozenClock) -> list:
    """Promote everything due at the current clock and drain the ready queue."""
    await queue.promote_delayed(clock())
    jobs = []
    while (job := queue.ready_nowait()) is not None:
        jobs.append(job)
    return jobs
