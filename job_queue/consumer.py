"""
Queue Consumer — Pulls campaign jobs from the queue and routes them.

Runs as one or more async tasks inside the worker process.
For horizontal scaling, deploy multiple processes with the same consumer_group;
Redis Streams hands each entry to one consumer at a time.
Handlers run as tasks, at most `concurrency` per worker. Entries a dead
worker read but never acked are reclaimed after the visibility timeout.

Topology:
  ┌──────────────┐        ┌─────────────────┐       ┌────────────┐
  │ Scheduler    │──pub──▶│ delayed (sorted │       │  Consumer  │
  │ Recovery     │        │  set of job ids)│       │  Worker(s) │
  └──────────────┘        └────────┬────────┘       └─────┬──────┘
                                   │ promote              │
                                   ▼                      │
                          ┌─────────────────┐             │
                          │ ready queue     │────────────▶│
                          │ (Redis Stream)  │             │
                          └─────────────────┘             │
                                   ▲  retry (backoff)     │
                                   └──────────────────────┤
                          ┌─────────────────┐             │
                          │  DLQ            │◀── exhaust / terminal error
                          └─────────────────┘

Routing:
  timeout  → TimeoutWorker.process
  execute  → CampaignExecutor.execute
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from core.errors import EngineError
from core.scheduler import EXECUTE_JOB, TIMEOUT_JOB
from job_queue.message_queue import MessageQueue, QueueJob

logger = structlog.get_logger()


class CampaignJobConsumer:
    """
    Consumes jobs from the ready queue and invokes the matching worker.

    Usage:
        consumer = CampaignJobConsumer(timeout_worker, executor, queue)
        await consumer.start()             # blocks, runs forever
        await consumer.start_background()  # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        timeout_worker,  # type: core.timeout_worker.TimeoutWorker
        executor,        # type: core.executor.CampaignExecutor
        queue: MessageQueue,
        consumer_group: str = "campaign-workers",
        consumer_name: str = "",
        concurrency: int = 5,
    ):
        self.timeout_worker = timeout_worker
        self.executor = executor
        self.queue = queue
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.concurrency = concurrency
        self._tasks: list[asyncio.Task] = []
        self._running = False

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        self._running = True
        logger.info("campaign_consumer_starting",
                    group=self.consumer_group,
                    concurrency=self.concurrency)

        await self.queue.consume(
            handler=self.handle_job,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
            concurrency=self.concurrency,
        )

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self._running = False
        self.queue._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("campaign_consumer_stopped")

    async def handle_job(self, job: QueueJob) -> Optional[Any]:
        """
        Process a single job.

        Returns the worker's structured result. Non-retryable EngineErrors
        dead-letter the job immediately; any other exception propagates so the
        queue retries it with backoff.
        """
        logger.info("processing_job",
                    job_id=job.job_id,
                    name=job.name,
                    attempt=job.attempt)

        try:
            if job.name == TIMEOUT_JOB:
                result = await self.timeout_worker.process(job.payload, job_id=job.job_id)
            elif job.name == EXECUTE_JOB:
                result = await self.executor.execute(job.payload, job_id=job.job_id)
            else:
                logger.error("unknown_job_name", job_id=job.job_id, name=job.name)
                await self.queue.dead_letter(job, f"Unknown job name '{job.name}'")
                return None
        except EngineError as e:
            if e.retryable:
                logger.warning("job_retryable_error",
                               job_id=job.job_id,
                               error_kind=e.kind,
                               error=e.message)
                raise
            logger.error("job_terminal_error",
                         job_id=job.job_id,
                         name=job.name,
                         error_kind=e.kind,
                         error=e.message,
                         **e.context)
            await self.queue.dead_letter(job, f"{e.kind}: {e.message}")
            return None
        except Exception as e:
            logger.error("job_processing_error",
                         job_id=job.job_id,
                         error=str(e),
                         exc_info=True)
            raise  # route to nack

        logger.info("job_processed",
                    job_id=job.job_id,
                    name=job.name,
                    skipped=getattr(result, "skipped", False),
                    reason=getattr(result, "reason", None))
        return result


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves delayed/retry jobs
    whose run_at has arrived into the ready queue.

    For Redis: ZRANGEBYSCORE + ZREM claim + XADD.
    For in-memory: already handled inside InMemoryMessageQueue.
    """

    def __init__(self, queue: MessageQueue, interval_seconds: float = 5):
        self.queue = queue
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
