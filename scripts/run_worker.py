#!/usr/bin/env python3
"""
Campaign Worker — runs the job consumer and delayed-job promoter.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --config config/settings.yaml --name worker-1
    python scripts/run_worker.py --skip-recovery

Startup order:
  1. load settings (.env first, then YAML with ${VAR} substitution)
  2. build store, queue and transport from settings
  3. create tables when the sql store is configured
  4. run startup recovery for scheduled actions whose job was lost
  5. consume until SIGINT / SIGTERM
"""
from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from dataclasses import dataclass
from typing import Optional

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog  # noqa: E402
from dotenv import load_dotenv  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine  # noqa: E402

from channels.base import Transport  # noqa: E402
from channels.email_transport import SendGridTransport  # noqa: E402
from channels.suppression import SuppressionService  # noqa: E402
from config.settings import Settings, load_settings  # noqa: E402
from core.dispatcher import MessageDispatcher  # noqa: E402
from core.executor import CampaignExecutor  # noqa: E402
from core.ingest import EventIngestor  # noqa: E402
from core.recovery import StartupRecovery  # noqa: E402
from core.scheduler import TimeoutScheduler  # noqa: E402
from core.timeout_worker import TimeoutWorker  # noqa: E402
from core.transitions import TransitionEngine  # noqa: E402
from database.session import build_engine, build_session_factory, close_db, init_db  # noqa: E402
from database.store_base import BaseCampaignStore  # noqa: E402
from database.store_factory import create_store  # noqa: E402
from job_queue.consumer import CampaignJobConsumer, DelayedJobPromoter  # noqa: E402
from job_queue.message_queue import MessageQueue, create_message_queue  # noqa: E402

logger = structlog.get_logger()


@dataclass
class EngineServices:
    """Every collaborator of one worker process, wired once at startup."""
    settings: Settings
    store: BaseCampaignStore
    queue: MessageQueue
    transport: Transport
    scheduler: TimeoutScheduler
    dispatcher: MessageDispatcher
    transitions: TransitionEngine
    timeout_worker: TimeoutWorker
    executor: CampaignExecutor
    ingestor: EventIngestor
    recovery: StartupRecovery
    engine: Optional[AsyncEngine] = None  # set when the sql store is built here


def build_services(
    settings: Settings,
    store: Optional[BaseCampaignStore] = None,
    queue: Optional[MessageQueue] = None,
    transport: Optional[Transport] = None,
) -> EngineServices:
    engine = None
    if store is None:
        session_factory = None
        if settings.database.store_backend == "sql":
            engine = build_engine(settings.database.url, echo=settings.debug)
            session_factory = build_session_factory(engine)
        store = create_store(settings.database, session_factory=session_factory)
    queue = queue or create_message_queue(settings.queue)
    transport = transport or SendGridTransport.from_config(settings.email)

    suppression = SuppressionService(store)
    scheduler = TimeoutScheduler(store, queue, settings.engine)
    dispatcher = MessageDispatcher(store, transport, scheduler, suppression)
    transitions = TransitionEngine(store, scheduler)
    return EngineServices(
        settings=settings,
        store=store,
        queue=queue,
        transport=transport,
        scheduler=scheduler,
        dispatcher=dispatcher,
        transitions=transitions,
        timeout_worker=TimeoutWorker(store, transitions),
        executor=CampaignExecutor(store, dispatcher, transitions, settings.engine),
        ingestor=EventIngestor(store, transitions, suppression),
        recovery=StartupRecovery(store, queue, settings.recovery),
        engine=engine,
    )


async def run_worker(config_path: Optional[str] = None, consumer_name: str = "",
                     skip_recovery: bool = False) -> None:
    load_dotenv()
    settings = load_settings(config_path)
    services = build_services(settings)

    if services.engine is not None:
        await init_db(services.engine)

    await services.queue.connect()
    if settings.recovery.enabled and not skip_recovery:
        await services.recovery.recover_scheduled_actions()

    consumer = CampaignJobConsumer(
        services.timeout_worker, services.executor, services.queue,
        consumer_group=settings.queue.consumer_group,
        consumer_name=consumer_name,
        concurrency=settings.queue.consumer_concurrency,
    )
    promoter = DelayedJobPromoter(services.queue, interval_seconds=settings.queue.delayed_promote_interval)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass

    await consumer.start_background()
    await promoter.start_background()
    logger.info("campaign_worker_started",
                app=settings.app_name,
                store_backend=settings.database.store_backend,
                queue_backend=type(services.queue).__name__,
                consumer_name=consumer_name or None)

    try:
        await stop.wait()
    finally:
        await consumer.stop()
        await promoter.stop()
        await services.queue.close()
        await services.transport.close()
        if services.engine is not None:
            await close_db(services.engine)
        logger.info("campaign_worker_stopped")


def main():
    parser = argparse.ArgumentParser(description="Campaign engine worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--name", default="", help="Consumer name within the consumer group")
    parser.add_argument("--skip-recovery", action="store_true", help="Do not re-arm lost jobs at startup")
    args = parser.parse_args()

    asyncio.run(run_worker(args.config, consumer_name=args.name, skip_recovery=args.skip_recovery))


if __name__ == "__main__":
    main()
