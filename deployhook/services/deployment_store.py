"""
Deployment store.

Keyed CRUD over deployment records plus the advisory lock primitive.
Status changes go through ``transition`` which is a compare-and-set
update, so concurrent invocations racing on the same record cannot both
win.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from deployhook.models.base import utcnow
from deployhook.models.deployment import (
    ACTIVE_STATUSES,
    Deployment,
    DeploymentStatus,
)
from deployhook.services.deployment_lock import DeploymentLock


class DeploymentStore:
    """Service for persisting deployment records."""

    def __init__(self, session_factory: async_sessionmaker, lock: DeploymentLock, site_id: str = "default"):
        self.session_factory = session_factory
        self.lock = lock
        self.site_id = site_id

    async def insert(self, **fields) -> Deployment:
        """
        Create a new deployment record.

        Returns:
            Newly created Deployment
        """
        fields.setdefault("site_id", self.site_id)
        async with self.session_factory() as db:
            deployment = Deployment(**fields)
            db.add(deployment)
            await db.commit()
            await db.refresh(deployment)
            return deployment

    async def get(self, deployment_id: str) -> Deployment | None:
        """Get deployment by ID."""
        async with self.session_factory() as db:
            return await db.get(Deployment, deployment_id)

    async def update(self, deployment_id: str, **fields) -> Deployment | None:
        """Apply a partial update without touching the status guard."""
        async with self.session_factory() as db:
            await db.execute(
                update(Deployment)
                .where(Deployment.id == deployment_id)
                .values(**fields)
            )
            await db.commit()
        return await self.get(deployment_id)

    async def touch(self, deployment_id: str) -> None:
        """Bump ``updated_at`` so the sweep sees the record as alive."""
        async with self.session_factory() as db:
            await db.execute(
                update(Deployment)
                .where(Deployment.id == deployment_id)
                .values(updated_at=utcnow())
            )
            await db.commit()

    async def transition(
        self,
        deployment_id: str,
        from_statuses: Iterable[DeploymentStatus],
        to_status: DeploymentStatus,
        **fields
    ) -> Deployment | None:
        """
        Move a record to ``to_status`` only if it is currently in one of
        ``from_statuses``.

        Returns:
            The updated record, or None when the guard did not match
        """
        allowed = list(from_statuses)
        if not allowed:
            return None
        async with self.session_factory() as db:
            result = await db.execute(
                update(Deployment)
                .where(
                    Deployment.id == deployment_id,
                    Deployment.status.in_(allowed)
                )
                .values(status=to_status, **fields)
            )
            await db.commit()
            if result.rowcount == 0:
                return None
        return await self.get(deployment_id)

    async def append_log(self, deployment_id: str, message: str) -> None:
        """Append a timestamped line to the record's log text."""
        entry = f"[{utcnow().strftime('%Y-%m-%d %H:%M:%S')}] {message}\n"
        async with self.session_factory() as db:
            await db.execute(
                update(Deployment)
                .where(Deployment.id == deployment_id)
                .values(deployment_logs=func.coalesce(Deployment.deployment_logs, "") + entry)
            )
            await db.commit()

    async def increment_retry(self, deployment_id: str) -> int:
        async with self.session_factory() as db:
            await db.execute(
                update(Deployment)
                .where(Deployment.id == deployment_id)
                .values(retry_count=Deployment.retry_count + 1)
            )
            await db.commit()
        deployment = await self.get(deployment_id)
        return deployment.retry_count if deployment else 0

    async def get_by_correlation(self, correlation_id: str) -> Deployment | None:
        """Newest record bound to a remote deployment id."""
        if not correlation_id:
            return None
        stmt = (
            select(Deployment)
            .where(Deployment.correlation_id == str(correlation_id))
            .order_by(Deployment.created_at.desc())
            .limit(1)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def get_by_workflow_run(self, workflow_run_id: int) -> Deployment | None:
        if not workflow_run_id:
            return None
        stmt = (
            select(Deployment)
            .where(Deployment.workflow_run_id == int(workflow_run_id))
            .order_by(Deployment.created_at.desc())
            .limit(1)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def find_active_by_commit(self, commit_hash: str) -> Deployment | None:
        """Fallback correlation: newest pending/building record for a commit."""
        if not commit_hash:
            return None
        stmt = (
            select(Deployment)
            .where(
                Deployment.site_id == self.site_id,
                Deployment.commit_hash == commit_hash,
                Deployment.status.in_([DeploymentStatus.PENDING, DeploymentStatus.BUILDING])
            )
            .order_by(Deployment.created_at.desc())
            .limit(1)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def get_active(self) -> Deployment | None:
        """The record currently holding an active status, if any."""
        stmt = (
            select(Deployment)
            .where(
                Deployment.site_id == self.site_id,
                Deployment.status.in_(list(ACTIVE_STATUSES))
            )
            .order_by(Deployment.created_at.desc())
            .limit(1)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def list_active(self) -> list[Deployment]:
        stmt = (
            select(Deployment)
            .where(
                Deployment.site_id == self.site_id,
                Deployment.status.in_(list(ACTIVE_STATUSES))
            )
            .order_by(Deployment.created_at.asc())
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_recent(self, limit: int = 20, offset: int = 0) -> list[Deployment]:
        stmt = (
            select(Deployment)
            .where(Deployment.site_id == self.site_id)
            .order_by(Deployment.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    # Advisory lock

    async def lock_acquire(self, holder: str, ttl: int | None = None) -> bool:
        return await self.lock.acquire(self.site_id, holder, ttl)

    async def lock_read(self) -> str | None:
        return await self.lock.read(self.site_id)

    async def lock_extend(self, holder: str, ttl: int | None = None) -> bool:
        return await self.lock.extend(self.site_id, holder, ttl)

    async def lock_release(self, holder: str) -> bool:
        return await self.lock.release(self.site_id, holder)

    @asynccontextmanager
    async def hold_lock(self, holder: str, ttl: int | None = None) -> AsyncIterator[bool]:
        """
        Non-blocking lock scope.

        Yields whether the lock was taken; when it was, it is released on
        every exit path.
        """
        acquired = await self.lock_acquire(holder, ttl)
        try:
            yield acquired
        finally:
            if acquired:
                await self.lock_release(holder)
