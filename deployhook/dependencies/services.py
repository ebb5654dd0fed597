"""
Service wiring for FastAPI routes.

Each collaborator is its own dependency so tests can swap any of them
through ``app.dependency_overrides``.
"""
from fastapi import BackgroundTasks, Depends

from deployhook.config import settings
from deployhook.database import AsyncSessionLocal
from deployhook.services.deployment_lock import DeploymentLock
from deployhook.services.deployment_store import DeploymentStore
from deployhook.services.orchestrator import DeploymentOrchestrator
from deployhook.services.retrieval import RetrievalClient
from deployhook.services.task_queue import ArqTaskQueue, BackgroundTaskQueue, TaskQueue
from deployhook.services.webhook_ingress import WebhookIngress


# Shared across requests so the Redis connection pool is reused
_lock: DeploymentLock | None = None


def get_lock() -> DeploymentLock:
    global _lock
    if _lock is None:
        _lock = DeploymentLock()
    return _lock


def get_store(lock: DeploymentLock = Depends(get_lock)) -> DeploymentStore:
    return DeploymentStore(AsyncSessionLocal, lock, settings.SITE_ID)


def get_retrieval() -> RetrievalClient:
    return RetrievalClient()


def get_deferred_queue() -> TaskQueue:
    return ArqTaskQueue()


def get_orchestrator(
    background_tasks: BackgroundTasks,
    store: DeploymentStore = Depends(get_store),
    retrieval: RetrievalClient = Depends(get_retrieval),
    deferred: TaskQueue = Depends(get_deferred_queue),
) -> DeploymentOrchestrator:
    """
    Orchestrator for one request.

    In ``background`` mode immediate work runs after the response on the
    request's BackgroundTasks; in ``queue`` mode everything goes to ARQ.
    """
    if settings.WEBHOOK_PROCESSING_MODE == "queue":
        return DeploymentOrchestrator(store, retrieval, deferred)

    queue = BackgroundTaskQueue(background_tasks, deferred)
    orchestrator = DeploymentOrchestrator(store, retrieval, queue)
    queue.orchestrator = orchestrator
    return orchestrator


def get_ingress(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)) -> WebhookIngress:
    return WebhookIngress(orchestrator)
