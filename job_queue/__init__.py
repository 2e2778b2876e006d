"""
Job Queue — Decouples scheduling from execution.

- The scheduler and startup recovery PUBLISH delayed `timeout` / `execute` jobs
- Consumers route fired jobs to the timeout worker or the campaign executor
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev/tests)
"""
