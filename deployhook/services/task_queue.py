"""
Task queue for deployment work.

Two implementations share one ``enqueue`` signature:

- ``ArqTaskQueue`` puts jobs on the durable ARQ queue (worker process).
- ``BackgroundTaskQueue`` runs immediate work after the HTTP response has
  been sent and hands deferred work (reschedules) to ARQ.
"""
from typing import Protocol

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from fastapi import BackgroundTasks

from deployhook.config import settings
from deployhook.logging_config import get_logger


log = get_logger(component="task_queue")

PROCESS_DEPLOYMENT = "process_deployment"


class TaskQueue(Protocol):
    async def enqueue(self, task: str, deployment_id: str, defer_seconds: int = 0, attempt: int = 0) -> bool:
        ...


class ArqTaskQueue:
    """Enqueue onto ARQ. Reuses ``pool`` when given (inside the worker)."""

    def __init__(self, pool: ArqRedis | None = None, redis_url: str | None = None):
        self.pool = pool
        self.redis_url = redis_url or settings.REDIS_URL

    async def enqueue(self, task: str, deployment_id: str, defer_seconds: int = 0, attempt: int = 0) -> bool:
        owns_pool = self.pool is None
        try:
            pool = self.pool or await create_pool(RedisSettings.from_dsn(self.redis_url))
            try:
                # Job id dedupes repeated hand-offs of the same attempt
                job = await pool.enqueue_job(
                    task,
                    deployment_id,
                    attempt,
                    _job_id=f"{task}:{deployment_id}:{attempt}",
                    _defer_by=defer_seconds or None,
                )
            finally:
                if owns_pool:
                    await pool.close()
        except Exception as e:
            log.error("enqueue_failed", task=task, deployment_id=deployment_id, error=str(e))
            return False

        log.info(
            "task_enqueued",
            task=task,
            deployment_id=deployment_id,
            attempt=attempt,
            defer_seconds=defer_seconds,
            duplicate=job is None,
        )
        return True


class BackgroundTaskQueue:
    """
    Run work in-process after the response.

    ``orchestrator`` is attached after construction because the
    orchestrator itself depends on the queue.
    """

    def __init__(self, background_tasks: BackgroundTasks, deferred: TaskQueue | None = None):
        self.background_tasks = background_tasks
        self.deferred = deferred or ArqTaskQueue()
        self.orchestrator = None

    async def enqueue(self, task: str, deployment_id: str, defer_seconds: int = 0, attempt: int = 0) -> bool:
        if defer_seconds or self.orchestrator is None:
            return await self.deferred.enqueue(task, deployment_id, defer_seconds, attempt)

        self.background_tasks.add_task(self._run, task, deployment_id, attempt)
        log.info("task_scheduled_in_process", task=task, deployment_id=deployment_id, attempt=attempt)
        return True

    async def _run(self, task: str, deployment_id: str, attempt: int) -> None:
        handler = getattr(self.orchestrator, task)
        await handler(deployment_id, attempt=attempt)
