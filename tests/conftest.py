"""
Shared fixtures.

Environment is set before anything from deployhook is imported so the
module-level settings and engine pick up test values.
"""
import io
import os
import tarfile
import zipfile

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("REPO_FULL_NAME", "acme/site-theme")
os.environ.setdefault("DEPLOY_BRANCH", "main")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("SENTRY_DSN", "")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from deployhook.config import settings
from deployhook.errors import ArtifactDownloadError, RemoteTriggerError
from deployhook.models.base import Base
from deployhook.models.deployment import Deployment  # noqa: F401
from deployhook.services.deployment_lock import EXTEND_SCRIPT, RELEASE_SCRIPT, DeploymentLock
from deployhook.services.deployment_store import DeploymentStore
from deployhook.services.jwt_service import JWTService
from deployhook.services.orchestrator import DeploymentOrchestrator
from deployhook.services.retrieval import ArtifactRef, RunStatus, WorkflowRun


THEME_FILES = {
    "site-theme/style.css": "/* Theme Name: Site Theme */",
    "site-theme/functions.php": "<?php // functions",
    "site-theme/templates/index.php": "<?php // index",
}


def zip_bytes(files: dict[str, str | bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def tar_bytes(files: dict[str, str | bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def make_zip():
    """Write a zip archive and return its path."""
    def _make(path, files):
        with open(path, "wb") as fh:
            fh.write(zip_bytes(files))
        return str(path)
    return _make


@pytest.fixture
def make_tar():
    def _make(path, files):
        with open(path, "wb") as fh:
            fh.write(tar_bytes(files))
        return str(path)
    return _make


class FakeRedis:
    """In-memory stand-in for the handful of commands the lock uses."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def eval(self, script, numkeys, key, *args):
        if self.data.get(key) != args[0]:
            return 0
        if script == RELEASE_SCRIPT:
            return await self.delete(key)
        if script == EXTEND_SCRIPT:
            self.ttls[key] = int(args[1])
            return 1
        raise NotImplementedError(script)

    async def aclose(self):
        pass


class FakeRetrieval:
    """Records every call; downloads write a real archive."""

    def __init__(self):
        self.correlation_id = "remote-123"
        self.trigger_error: str | None = None
        self.download_error: str | None = None
        self.files = dict(THEME_FILES)
        self.runs: list[WorkflowRun] = []
        self.statuses: dict[int, RunStatus] = {}
        self.artifacts: dict[int, list[ArtifactRef]] = {}
        self.triggered: list[str] = []
        self.fetched: list[ArtifactRef] = []
        self.snapshots: list[str] = []
        self.cancelled: list[int] = []
        self.reports: list[dict] = []

    async def trigger_build(self, ref):
        self.triggered.append(ref)
        if self.trigger_error:
            raise RemoteTriggerError(f"Failed to trigger remote build: {self.trigger_error}")
        return self.correlation_id

    async def poll_status(self, run_id):
        return self.statuses[run_id]

    async def list_recent_runs(self, limit=10):
        return self.runs[:limit]

    async def list_artifacts(self, run_id):
        return self.artifacts.get(run_id, [])

    async def fetch_artifact(self, ref, dest):
        self.fetched.append(ref)
        if self.download_error:
            raise ArtifactDownloadError(self.download_error)
        with open(dest, "wb") as fh:
            fh.write(zip_bytes(self.files))
        return dest

    async def fetch_source_snapshot(self, ref, dest):
        self.snapshots.append(ref)
        with open(dest, "wb") as fh:
            fh.write(zip_bytes(self.files))
        return dest

    async def cancel(self, run_id):
        self.cancelled.append(run_id)
        return True

    async def report_outcome(self, correlation_id, success, error_message=None, logs=None, context=None):
        self.reports.append({
            "deploymentId": correlation_id,
            "success": success,
            "errorMessage": error_message,
            "logs": logs,
            "context": context,
        })
        return True


class RecordingQueue:
    def __init__(self):
        self.calls: list[tuple[str, str, int, int]] = []

    async def enqueue(self, task, deployment_id, defer_seconds=0, attempt=0):
        self.calls.append((task, deployment_id, defer_seconds, attempt))
        return True

    def ids(self):
        return [call[1] for call in self.calls]


@pytest.fixture
def config(tmp_path, monkeypatch):
    """Global settings pointed at a private filesystem layout."""
    monkeypatch.setattr(settings, "LIVE_DIR", str(tmp_path / "themes" / "site-theme"))
    monkeypatch.setattr(settings, "BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setattr(settings, "SCRATCH_DIR", str(tmp_path / "scratch"))
    monkeypatch.setattr(settings, "DEPLOYMENT_METHOD", "ci_artifact")
    monkeypatch.setattr(settings, "AUTO_DEPLOY_ENABLED", True)
    monkeypatch.setattr(settings, "REQUIRE_MANUAL_APPROVAL", False)
    monkeypatch.setattr(settings, "REQUIRE_REPOSITORY_IDENTITY", False)
    monkeypatch.setattr(settings, "CREATE_BACKUPS", True)
    monkeypatch.setattr(settings, "WEBHOOK_SECRET", "test-webhook-secret")
    monkeypatch.setattr(settings, "REPO_FULL_NAME", "acme/site-theme")
    monkeypatch.setattr(settings, "WEBHOOK_PROCESSING_MODE", "background")
    return settings


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def lock(redis_client):
    return DeploymentLock(redis_client=redis_client, ttl=300)


@pytest.fixture
def store(session_factory, lock):
    return DeploymentStore(session_factory, lock, "default")


@pytest.fixture
def retrieval():
    return FakeRetrieval()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def orchestrator(store, retrieval, queue, config):
    return DeploymentOrchestrator(store, retrieval, queue, config=config)


@pytest.fixture
def admin_headers():
    token = JWTService().create_token("user-1", "admin", "ops@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(store, retrieval, queue, config):
    """HTTP client bound to the app with collaborators swapped for fakes."""
    from deployhook.main import app
    from deployhook.dependencies.services import get_deferred_queue, get_retrieval, get_store

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_retrieval] = lambda: retrieval
    app.dependency_overrides[get_deferred_queue] = lambda: queue

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http

    app.dependency_overrides.clear()
