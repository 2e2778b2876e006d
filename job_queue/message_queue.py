"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  campaign:jobs        — Jobs ready to run now (Redis Stream, consumer groups)
  campaign:delayed     — Jobs with a future run_at (sorted set scored by run_at)
  campaign:dlq         — Dead-letter stream for permanently failed jobs
  campaign:job:<id>    — Job registry; one key per job id (SET NX), so a
                         deterministic job id can only be enqueued once

Job names:
  execute   — run a plan node for a contact (send job)
  timeout   — a timeout transition's timer fired

Message Schema:
  {
      "job_id":        deterministic or random job identifier,
      "name":          execute | timeout,
      "payload":       JSON object (camelCase job payload),
      "attempt":       current attempt number (for retries),
      "max_attempts":  ceiling before DLQ,
      "run_at":        ISO timestamp when the job should execute,
      "created_at":    ISO timestamp when the job was enqueued,
      "metadata":      arbitrary extra data (retry / dlq bookkeeping),
  }
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobExistsError(Exception):
    """A job with this id is already known to the queue."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} already exists")


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    """A unit of work on the queue."""
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""
    attempt: int = 0
    max_attempts: int = 3
    run_at: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.run_at:
            self.run_at = self.created_at

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["payload"] = json.dumps(d["payload"])
        d["metadata"] = json.dumps(d["metadata"])
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def run_at_dt(self) -> datetime:
        target = datetime.fromisoformat(self.run_at)
        return target if target.tzinfo else target.replace(tzinfo=timezone.utc)

    @property
    def exhausted(self) -> bool:
        return self.attempt + 1 >= self.max_attempts

    def next_retry_job(self, backoff_seconds: int = 60, now: Optional[datetime] = None) -> QueueJob:
        """Create a copy with incremented attempt and backoff delay."""
        now = now or _utcnow()
        retry_at = now + timedelta(
            seconds=backoff_seconds * (2 ** self.attempt)  # exponential backoff
        )
        return QueueJob(
            name=self.name,
            payload=self.payload,
            job_id=self.job_id,  # same job_id across retries for tracing
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            run_at=retry_at.isoformat(),
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": now.isoformat()},
        )


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    READY = "campaign:jobs"
    DELAYED = "campaign:delayed"
    DLQ = "campaign:dlq"
    JOB_PREFIX = "campaign:job:"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, max_attempts: int = 3, retry_backoff_base: int = 60,
                 now_fn: Callable[[], datetime] = _utcnow):
        self.max_attempts = max_attempts
        self.retry_backoff_base = retry_backoff_base
        self._now = now_fn

    def _build_job(self, name: str, payload: dict[str, Any], job_id: Optional[str],
                   delay_ms: int, max_attempts: Optional[int]) -> QueueJob:
        now = self._now()
        return QueueJob(
            name=name,
            payload=payload,
            job_id=job_id or "",
            max_attempts=max_attempts or self.max_attempts,
            run_at=(now + timedelta(milliseconds=max(0, delay_ms))).isoformat(),
            created_at=now.isoformat(),
        )

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def enqueue(self, name: str, payload: dict[str, Any], job_id: Optional[str] = None,
                      delay_ms: int = 0, max_attempts: Optional[int] = None) -> QueueJob:
        """
        Add a job. delay_ms > 0 parks it on the delayed set until run_at.
        Raises JobExistsError if job_id is already registered.
        """
        ...

    @abstractmethod
    async def has_job(self, job_id: str) -> bool:
        """True if the job id is still registered (delayed, ready, running or finished)."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        ...

    @abstractmethod
    async def consume(
        self,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
        concurrency: int = 1,
    ):
        """
        Start consuming ready jobs. Blocks and runs handler for each job,
        at most `concurrency` at a time. A handler exception routes the job
        through nack(). In-flight handlers are drained on stop.
        """
        ...

    @staticmethod
    async def _start_bounded(semaphore: asyncio.Semaphore, in_flight: set[asyncio.Task],
                             fn: Callable[..., Any], *args) -> None:
        """Wait for a free slot, then run fn(*args) as a task holding it."""
        await semaphore.acquire()
        task = asyncio.create_task(fn(*args))
        in_flight.add(task)
        task.add_done_callback(in_flight.discard)
        task.add_done_callback(lambda _: semaphore.release())

    @staticmethod
    async def _drain(in_flight: set[asyncio.Task], timeout: float = 30.0) -> None:
        if not in_flight:
            return
        _, pending = await asyncio.wait(set(in_flight), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("consumer_drain_timeout", abandoned=len(pending))

    @abstractmethod
    async def nack(self, job: QueueJob, error: str = ""):
        """Negative-acknowledge — route to retry or DLQ."""
        ...

    @abstractmethod
    async def dead_letter(self, job: QueueJob, reason: str):
        """Move a job straight to the DLQ, skipping remaining attempts."""
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of pending jobs in a queue."""
        ...

    @abstractmethod
    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        """Move delayed jobs whose run_at has arrived to the ready queue."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Ready queue uses a Redis Stream with consumer groups
    - Delayed queue uses a Redis Sorted Set of job ids (ZRANGEBYSCORE for promotion)
    - Job bodies live under campaign:job:<id>, created with SET NX
    - DLQ uses a Redis Stream for inspection
    - An entry is acked only after its handler (or nack) finished. Entries a
      dead consumer left pending longer than the visibility timeout are taken
      over with XAUTOCLAIM and run again.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 job_id_ttl_seconds: int = 30 * 24 * 3600,
                 visibility_timeout_seconds: int = 300,
                 reclaim_interval_seconds: float = 30, **kwargs):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._job_ttl = job_id_ttl_seconds
        self._visibility_timeout_ms = int(visibility_timeout_seconds * 1000)
        self._reclaim_interval = reclaim_interval_seconds
        self._redis = None
        self._running = False

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def enqueue(self, name: str, payload: dict[str, Any], job_id: Optional[str] = None,
                      delay_ms: int = 0, max_attempts: Optional[int] = None) -> QueueJob:
        job = self._build_job(name, payload, job_id, delay_ms, max_attempts)
        key = Queues.JOB_PREFIX + job.job_id

        created = await self._redis.set(key, json.dumps(job.to_dict()), nx=True, ex=self._job_ttl)
        if not created:
            raise JobExistsError(job.job_id)

        try:
            if delay_ms > 0:
                await self._redis.zadd(Queues.DELAYED, {job.job_id: job.run_at_dt.timestamp()})
            else:
                await self._redis.xadd(Queues.READY, job.to_dict())
        except Exception:
            await self._redis.delete(key)
            raise

        logger.info("job_enqueued",
                    name=name,
                    job_id=job.job_id,
                    delay_ms=delay_ms,
                    run_at=job.run_at)
        return job

    async def has_job(self, job_id: str) -> bool:
        return bool(await self._redis.exists(Queues.JOB_PREFIX + job_id))

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        raw = await self._redis.get(Queues.JOB_PREFIX + job_id)
        return QueueJob.from_dict(json.loads(raw)) if raw else None

    async def consume(
        self,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
        concurrency: int = 1,
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(Queues.READY, consumer_group)
        self._running = True
        semaphore = asyncio.Semaphore(concurrency)
        in_flight: set[asyncio.Task] = set()
        last_reclaim: Optional[float] = None
        logger.info("consumer_started",
                    queue=Queues.READY,
                    group=consumer_group,
                    consumer=consumer_name,
                    concurrency=concurrency)

        try:
            while self._running:
                try:
                    entries: list[tuple[str, dict[str, Any]]] = []
                    if last_reclaim is None or time.monotonic() - last_reclaim >= self._reclaim_interval:
                        last_reclaim = time.monotonic()
                        entries.extend(await self.reclaim_stale(consumer_group, consumer_name, batch_size))

                    messages = await self._redis.xreadgroup(
                        groupname=consumer_group,
                        consumername=consumer_name,
                        streams={Queues.READY: ">"},
                        count=batch_size,
                        block=2000,  # block 2s waiting for messages
                    )
                    for _, stream_messages in messages or []:
                        entries.extend(stream_messages)

                    for message_id, fields in entries:
                        await self._start_bounded(semaphore, in_flight, self._process_entry,
                                                  handler, consumer_group, message_id, fields)

                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error("consumer_error", queue=Queues.READY, error=str(e))
                    await asyncio.sleep(1)
        finally:
            await self._drain(in_flight)

    async def _process_entry(self, handler: Callable[[QueueJob], Any], consumer_group: str,
                             message_id: str, fields: dict[str, Any]):
        job = QueueJob.from_dict(fields)
        try:
            await handler(job)
        except Exception as e:
            logger.error("job_handler_error",
                         job_id=job.job_id,
                         error=str(e))
            try:
                await self.nack(job, str(e))
            except Exception as nack_error:
                # Left pending; the entry is reclaimed after the visibility timeout
                logger.error("job_nack_failed",
                             job_id=job.job_id,
                             message_id=message_id,
                             error=str(nack_error))
                return

        await self._redis.xack(Queues.READY, consumer_group, message_id)
        logger.debug("job_acked",
                     job_id=job.job_id,
                     message_id=message_id)

    async def reclaim_stale(self, consumer_group: str, consumer_name: str,
                            count: int = 10) -> list[tuple[str, dict[str, Any]]]:
        """
        Take over ready-stream entries that another consumer read but never
        acked within the visibility timeout (crashed or killed mid-handler).
        """
        response = await self._redis.xautoclaim(
            Queues.READY, consumer_group, consumer_name,
            min_idle_time=self._visibility_timeout_ms,
            start_id="0-0",
            count=count,
        )
        # Entries trimmed from the stream come back without fields
        claimed = [(message_id, fields) for message_id, fields in response[1] if fields]
        for message_id, fields in claimed:
            logger.warning("stale_job_reclaimed",
                           job_id=fields.get("job_id"),
                           message_id=message_id,
                           consumer=consumer_name)
        return claimed

    async def nack(self, job: QueueJob, error: str = ""):
        if job.exhausted:
            await self.dead_letter(job, f"Exceeded {job.max_attempts} attempts: {error}")
            return

        retry_job = job.next_retry_job(self.retry_backoff_base, now=self._now())
        await self._redis.set(Queues.JOB_PREFIX + job.job_id,
                              json.dumps(retry_job.to_dict()), xx=True, keepttl=True)
        await self._redis.zadd(Queues.DELAYED, {job.job_id: retry_job.run_at_dt.timestamp()})
        logger.info("job_scheduled_for_retry",
                    job_id=job.job_id,
                    attempt=retry_job.attempt,
                    run_at=retry_job.run_at)

    async def dead_letter(self, job: QueueJob, reason: str):
        job.metadata["dlq_reason"] = reason
        await self._redis.xadd(Queues.DLQ, job.to_dict())
        logger.warning("job_moved_to_dlq",
                       job_id=job.job_id,
                       name=job.name,
                       attempts=job.attempt + 1,
                       reason=reason)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._redis.zcard(queue)
        return await self._redis.xlen(queue)

    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        """Move jobs whose run_at <= now from the sorted set to the ready stream."""
        now = now or self._now()
        ready = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", now.timestamp())

        promoted = 0
        for job_id in ready:
            # ZREM is the claim: only one promoter moves a given job
            if not await self._redis.zrem(Queues.DELAYED, job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                logger.warning("delayed_job_body_missing", job_id=job_id)
                continue
            await self._redis.xadd(Queues.READY, job.to_dict())
            promoted += 1

        if promoted:
            logger.info("delayed_jobs_promoted", count=promoted)
        return promoted


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(self, promote_interval: float = 5.0, **kwargs):
        super().__init__(**kwargs)
        self._ready: asyncio.Queue = asyncio.Queue()
        self._delayed: list[QueueJob] = []
        self._jobs: dict[str, QueueJob] = {}
        self._dlq: list[QueueJob] = []
        self._running = False
        self._promote_interval = promote_interval
        self._delayed_promoter_task: Optional[asyncio.Task] = None

    async def connect(self):
        self._running = True
        self._delayed_promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        if self._delayed_promoter_task:
            self._delayed_promoter_task.cancel()
            try:
                await self._delayed_promoter_task
            except asyncio.CancelledError:
                pass

    async def enqueue(self, name: str, payload: dict[str, Any], job_id: Optional[str] = None,
                      delay_ms: int = 0, max_attempts: Optional[int] = None) -> QueueJob:
        job = self._build_job(name, payload, job_id, delay_ms, max_attempts)
        if job.job_id in self._jobs:
            raise JobExistsError(job.job_id)
        self._jobs[job.job_id] = job

        if delay_ms > 0:
            self._delayed.append(job)
            self._delayed.sort(key=lambda j: j.run_at_dt)
        else:
            await self._ready.put(job)

        logger.info("job_enqueued",
                    name=name,
                    job_id=job.job_id,
                    delay_ms=delay_ms,
                    run_at=job.run_at)
        return job

    async def has_job(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        return self._jobs.get(job_id)

    def forget(self, job_id: str) -> None:
        """Drop a job from every structure, as if Redis had lost it."""
        self._jobs.pop(job_id, None)
        self._delayed = [j for j in self._delayed if j.job_id != job_id]

    @property
    def delayed_jobs(self) -> list[QueueJob]:
        return list(self._delayed)

    @property
    def dead_letters(self) -> list[QueueJob]:
        return list(self._dlq)

    def ready_nowait(self) -> Optional[QueueJob]:
        try:
            return self._ready.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def consume(
        self,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
        concurrency: int = 1,
    ):
        self._running = True
        semaphore = asyncio.Semaphore(concurrency)
        in_flight: set[asyncio.Task] = set()
        logger.info("consumer_started", queue=Queues.READY, concurrency=concurrency)

        try:
            while self._running:
                try:
                    job = await asyncio.wait_for(self._ready.get(), timeout=2.0)
                    await self._start_bounded(semaphore, in_flight, self._process_job, handler, job)
                except asyncio.TimeoutError:
                    continue
                except asyncio.CancelledError:
                    break
        finally:
            await self._drain(in_flight)

    async def _process_job(self, handler: Callable[[QueueJob], Any], job: QueueJob):
        try:
            await handler(job)
        except Exception as e:
            logger.error("job_handler_error",
                         job_id=job.job_id,
                         error=str(e))
            await self.nack(job, str(e))

    async def nack(self, job: QueueJob, error: str = ""):
        if job.exhausted:
            await self.dead_letter(job, f"Exceeded {job.max_attempts} attempts: {error}")
            return
        retry_job = job.next_retry_job(self.retry_backoff_base, now=self._now())
        self._jobs[job.job_id] = retry_job
        self._delayed.append(retry_job)
        self._delayed.sort(key=lambda j: j.run_at_dt)
        logger.info("job_scheduled_for_retry",
                    job_id=job.job_id,
                    attempt=retry_job.attempt,
                    run_at=retry_job.run_at)

    async def dead_letter(self, job: QueueJob, reason: str):
        job.metadata["dlq_reason"] = reason
        self._dlq.append(job)
        logger.warning("job_moved_to_dlq",
                       job_id=job.job_id,
                       name=job.name,
                       attempts=job.attempt + 1,
                       reason=reason)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        if queue == Queues.DLQ:
            return len(self._dlq)
        return self._ready.qsize()

    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        now = now or self._now()
        ready = [j for j in self._delayed if j.run_at_dt <= now]
        self._delayed = [j for j in self._delayed if j.run_at_dt > now]

        for job in ready:
            await self._ready.put(job)

        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)

    async def _promote_loop(self):
        """Background loop to promote delayed jobs."""
        while self._running:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(queue_config: Any = None, **kwargs) -> MessageQueue:
    """Factory: create the appropriate queue backend from a QueueConfig or dict."""
    if queue_config is None:
        config: dict[str, Any] = {}
    elif isinstance(queue_config, dict):
        config = queue_config
    else:
        config = dict(queue_config.__dict__)

    common = {
        "max_attempts": config.get("max_attempts", 3),
        "retry_backoff_base": config.get("retry_backoff_base", 60),
        **kwargs,
    }
    backend = config.get("backend", "memory")

    if backend == "redis":
        queue = RedisMessageQueue(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            job_id_ttl_seconds=config.get("job_id_ttl_seconds", 30 * 24 * 3600),
            visibility_timeout_seconds=config.get("visibility_timeout_seconds", 300),
            reclaim_interval_seconds=config.get("reclaim_interval_seconds", 30),
            **common,
        )
    else:
        queue = InMemoryMessageQueue(
            promote_interval=config.get("delayed_promote_interval", 5),
            **common,
        )
    logger.info("queue_created", backend=backend)
    return queue
