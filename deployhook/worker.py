"""
ARQ Background Worker for deployhook.

Processes artifact deployments off the request path and runs the
minute-by-minute sweep over active deployments.

Run with: arq deployhook.worker.WorkerSettings
"""
import asyncio

from arq import cron
from arq.connections import RedisSettings

from deployhook.config import settings
from deployhook.database import AsyncSessionLocal
from deployhook.logging_config import configure_logging, get_logger
from deployhook.sentry_config import configure_sentry
from deployhook.services.deployment_lock import DeploymentLock
from deployhook.services.deployment_store import DeploymentStore
from deployhook.services.orchestrator import DeploymentOrchestrator
from deployhook.services.retrieval import RetrievalClient
from deployhook.services.task_queue import ArqTaskQueue


log = get_logger(component="worker")


def build_orchestrator(ctx: dict) -> DeploymentOrchestrator:
    """Orchestrator whose reschedules go back onto this worker's queue."""
    store = DeploymentStore(AsyncSessionLocal, ctx["lock"], settings.SITE_ID)
    return DeploymentOrchestrator(store, RetrievalClient(), ArqTaskQueue(pool=ctx["redis"]))


async def process_deployment(ctx: dict, deployment_id: str, attempt: int = 0) -> dict:
    """Run the artifact-processing critical section for one deployment."""
    log.info("process_deployment", deployment_id=deployment_id, attempt=attempt, job_try=ctx.get("job_try", 1))

    result = await build_orchestrator(ctx).process_deployment(deployment_id, attempt=attempt)

    return {
        "ok": result.ok,
        "status": result.deployment.status.value if result.deployment else None,
        "rescheduled": result.rescheduled,
        "message": result.message,
    }


async def poll_deployments(ctx: dict) -> dict:
    """Advance building records, re-enqueue stale queued ones, fail interrupted ones."""
    return await build_orchestrator(ctx).poll_active_deployments()


async def startup(ctx: dict) -> None:
    configure_logging()
    configure_sentry()
    ctx["lock"] = DeploymentLock()
    log.info("worker_started", redis=settings.REDIS_URL, site_id=settings.SITE_ID)


async def shutdown(ctx: dict) -> None:
    lock = ctx.get("lock")
    if lock is not None:
        await lock.close()


# Register functions for ARQ
ARQ_FUNCTIONS = [
    process_deployment,
]


async def main():
    """Run the worker using arq cli."""
    print("Use: arq deployhook.worker.WorkerSettings")
    print(f"Redis: {settings.REDIS_URL}")


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq deployhook.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    # Extraction of large artifacts outlives ARQ's default timeout
    job_timeout = settings.PROCESSING_TIMEOUT_SECONDS
    # Failures are recorded on the deployment; lock contention reschedules explicitly
    max_tries = 1
    functions = ARQ_FUNCTIONS
    cron_jobs = [
        cron(poll_deployments, second=0, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    asyncio.run(main())
