"""
Deployment orchestrator.

Owns the deployment state machine. Every status change is a
compare-and-set against the store, so duplicate or out-of-order
notifications become no-ops instead of double work. Domain failures are
returned inside an ``ActionResult``; only programming errors propagate.
"""
import asyncio
import json
import os
import shutil
import tempfile
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta

import httpx

from deployhook.config import Settings, settings
from deployhook.errors import (
    ArtifactNotFound,
    ConflictError,
    DeploymentError,
    InvalidTransition,
    NotFound,
    ProcessingError,
    RemoteBuildFailure,
    RemoteTriggerError,
)
from deployhook.logging_config import DeploymentLogger
from deployhook.models.base import as_utc, utcnow
from deployhook.models.deployment import (
    Deployment,
    DeploymentMethod,
    DeploymentStatus,
    TERMINAL_STATUSES,
    TriggerType,
    can_transition,
)
from deployhook.routes.metrics import (
    track_deployment_finished,
    track_deployment_started,
    track_lock_contention,
    track_report_failed,
)
from deployhook.sentry_config import capture_exception
from deployhook.services.backup import create_backup, restore_backup
from deployhook.services.deployment_store import DeploymentStore
from deployhook.services.extraction import extract_and_place
from deployhook.services.retrieval import ArtifactRef, RetrievalClient
from deployhook.services.task_queue import PROCESS_DEPLOYMENT, TaskQueue


CANCELLED_BY_USER = "Deployment cancelled by user."
SUPERSEDED = "Superseded by a newer deployment."


def lock_holder(kind: str, deployment_id: str) -> str:
    """Lock token unique to one attempt, e.g. ``deployment:<id>:<hex>``."""
    return f"{kind}:{deployment_id}:{uuid.uuid4().hex}"


@dataclass
class ActionResult:
    """Outcome of an orchestrator operation."""
    ok: bool
    deployment: Deployment | None = None
    error: DeploymentError | Exception | None = None
    rescheduled: bool = False
    message: str = ""
    data: dict = field(default_factory=dict)

    @classmethod
    def failure(cls, error: DeploymentError, deployment: Deployment | None = None) -> "ActionResult":
        return cls(ok=False, deployment=deployment, error=error, message=str(error))


class DeploymentOrchestrator:
    """Drives deployments from creation to a terminal status."""

    def __init__(
        self,
        store: DeploymentStore,
        retrieval: RetrievalClient,
        queue: TaskQueue,
        logger: DeploymentLogger | None = None,
        config: Settings | None = None,
    ):
        self.store = store
        self.retrieval = retrieval
        self.queue = queue
        self.config = config or settings
        self.logger = logger or DeploymentLogger(site_id=store.site_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _awaiting_approval(self, deployment: Deployment) -> bool:
        return (
            deployment.status == DeploymentStatus.PENDING
            and self.config.REQUIRE_MANUAL_APPROVAL
            and deployment.trigger_type != TriggerType.MANUAL
        )

    async def transition(self, deployment_id: str, target: DeploymentStatus, **fields) -> ActionResult:
        """
        Move a record along one edge of the transition table.

        Returns an ``InvalidTransition`` failure when the edge is not in
        the table or the record changed underneath us.
        """
        deployment = await self.store.get(deployment_id)
        if deployment is None:
            return ActionResult.failure(NotFound(f"Deployment {deployment_id} not found"))

        current = deployment.status
        if not can_transition(current, target):
            return ActionResult.failure(
                InvalidTransition(
                    f"Cannot move deployment from {current.value} to {target.value}",
                    current=current.value,
                    target=target.value,
                ),
                deployment,
            )

        updated = await self.store.transition(deployment_id, [current], target, **fields)
        if updated is None:
            latest = await self.store.get(deployment_id)
            return ActionResult.failure(
                InvalidTransition(
                    f"Deployment changed to {latest.status.value} concurrently",
                    current=latest.status.value,
                    target=target.value,
                ),
                latest,
            )
        if target in TERMINAL_STATUSES:
            track_deployment_finished(self.store.site_id, target.value)
        return ActionResult(ok=True, deployment=updated)

    async def _fail(
        self,
        deployment_id: str,
        message: str,
        failure_point: str | None = None,
        context: dict | None = None,
        report: bool = True,
    ) -> Deployment | None:
        """Mark failed (from any non-terminal status) and report upstream."""
        result = await self.transition(
            deployment_id,
            DeploymentStatus.FAILED,
            error_message=message,
            failure_point=failure_point,
        )
        if not result.ok:
            return result.deployment
        await self.store.append_log(deployment_id, f"Deployment failed: {message}")
        self.logger.error("Deployment", "deployment_failed",
                          deployment_id=deployment_id, error=message, failure_point=failure_point)
        deployment = await self.store.get(deployment_id)
        if report:
            await self._report(deployment, False, message, context)
        return deployment

    async def _report(self, deployment: Deployment, success: bool, error_message: str | None, context: dict | None) -> None:
        """Tell the relay how it ended. Never re-fails the deployment."""
        if not deployment or not deployment.correlation_id:
            return
        try:
            acknowledged = await self.retrieval.report_outcome(
                deployment.correlation_id,
                success,
                error_message=error_message,
                logs=deployment.deployment_logs,
                context=context,
            )
        except Exception as e:
            self.logger.error("Deployment", "report_outcome_error", deployment_id=deployment.id, error=str(e))
            acknowledged = False
        if not acknowledged:
            track_report_failed(self.store.site_id)
            self.logger.warning("Deployment", "report_outcome_not_acknowledged", deployment_id=deployment.id)

    async def _dispatch(self, deployment_id: str, defer_seconds: int = 0, attempt: int = 0) -> bool:
        queued = await self.queue.enqueue(PROCESS_DEPLOYMENT, deployment_id, defer_seconds, attempt)
        if not queued:
            self.logger.error("Deployment", "dispatch_failed", deployment_id=deployment_id)
        return queued

    # ------------------------------------------------------------------
    # Start / approve / cancel
    # ------------------------------------------------------------------

    async def start_deployment(
        self,
        commit_hash: str,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        actor: str | None = None,
        commit_data: dict | None = None,
        correlation_id: str | None = None,
        method: DeploymentMethod | str | None = None,
    ) -> ActionResult:
        """
        Create a deployment for ``commit_hash`` and start it.

        A manual start is refused while another deployment is active.
        Webhook and auto starts supersede a pending or building record.
        """
        trigger_type = TriggerType(trigger_type)
        method = DeploymentMethod(method or self.config.DEPLOYMENT_METHOD)
        commit_data = commit_data or {}

        self.logger.log("Deployment", "start_deployment",
                        commit_hash=commit_hash, trigger_type=trigger_type.value, actor=actor)

        active = await self.store.get_active()
        if active is not None:
            if trigger_type == TriggerType.MANUAL:
                return ActionResult.failure(
                    ConflictError(
                        "A deployment is already in progress. Please cancel it before starting a new one.",
                        blocking_deployment=active,
                    ),
                    active,
                )
            self.logger.log("Deployment", "auto_cancelling_active_deployment",
                            existing_deployment_id=active.id, existing_status=active.status.value)
            cancelled = await self.cancel_deployment(active.id, message=SUPERSEDED)
            if not cancelled.ok:
                return ActionResult.failure(
                    ConflictError(
                        "The active deployment is already processing and cannot be superseded.",
                        blocking_deployment=cancelled.deployment or active,
                    ),
                    cancelled.deployment or active,
                )

        deployment = await self.store.insert(
            commit_hash=commit_hash,
            commit_message=commit_data.get("commit_message"),
            commit_author=commit_data.get("commit_author"),
            commit_date=commit_data.get("commit_date") or utcnow().isoformat(),
            status=DeploymentStatus.PENDING,
            trigger_type=trigger_type,
            triggered_by=actor,
            deployment_method=method,
            correlation_id=correlation_id,
        )
        track_deployment_started(self.store.site_id, trigger_type.value, method.value)
        await self.store.append_log(
            deployment.id, f"Deployment created for commit {commit_hash} ({trigger_type.value})."
        )
        self.logger.step(deployment.id, "database_record", "created")

        if self._awaiting_approval(deployment):
            await self.store.append_log(deployment.id, "Awaiting manual approval.")
            return ActionResult(ok=True, deployment=await self.store.get(deployment.id),
                                message="Deployment pending approval")

        return await self._begin(deployment)

    async def _begin(self, deployment: Deployment) -> ActionResult:
        """Kick off a pending record for its retrieval method."""
        if deployment.deployment_method == DeploymentMethod.DIRECT_SNAPSHOT:
            await self.store.append_log(deployment.id, "Retrieving source snapshot directly.")
            await self._dispatch(deployment.id)
            return ActionResult(ok=True, deployment=await self.store.get(deployment.id),
                                message="Direct deployment dispatched")

        if deployment.has_artifact:
            # Artifact arrived while the record waited for approval
            result = await self.transition(deployment.id, DeploymentStatus.QUEUED)
            if result.ok:
                await self._dispatch(deployment.id)
            return result

        if deployment.correlation_id:
            result = await self.transition(deployment.id, DeploymentStatus.BUILDING)
            if result.ok:
                await self.store.append_log(
                    deployment.id, f"Remote build running (remote deployment {deployment.correlation_id})."
                )
                result.deployment = await self.store.get(deployment.id)
            return result

        try:
            correlation_id = await self.retrieval.trigger_build(deployment.commit_hash)
        except RemoteTriggerError as e:
            await self.store.append_log(deployment.id, f"Failed to trigger remote build: {e.message}")
            failed = await self._fail(deployment.id, e.message, failure_point="trigger", report=False)
            return ActionResult.failure(e, failed)

        result = await self.transition(deployment.id, DeploymentStatus.BUILDING, correlation_id=correlation_id)
        if result.ok:
            await self.store.append_log(
                deployment.id, f"Remote build triggered for commit {deployment.commit_hash}."
            )
            result.deployment = await self.store.get(deployment.id)
        return result

    async def approve_deployment(self, deployment_id: str, actor: str | None = None) -> ActionResult:
        """Approve a pending deployment and start it as a manual one."""
        deployment = await self.store.get(deployment_id)
        if deployment is None:
            return ActionResult.failure(NotFound(f"Deployment {deployment_id} not found"))
        if deployment.status != DeploymentStatus.PENDING:
            return ActionResult.failure(
                InvalidTransition(f"Deployment cannot be approved (status: {deployment.status.value})"),
                deployment,
            )

        deployment = await self.store.update(
            deployment_id, trigger_type=TriggerType.MANUAL, triggered_by=actor
        )
        await self.store.append_log(deployment_id, f"Approved by {actor or 'unknown'}.")
        self.logger.step(deployment_id, "approve_deployment", "success", actor=actor)
        return await self._begin(deployment)

    async def cancel_deployment(self, deployment_id: str, message: str = CANCELLED_BY_USER) -> ActionResult:
        """Cancel a pending or building deployment."""
        deployment = await self.store.get(deployment_id)
        if deployment is None:
            return ActionResult.failure(NotFound(f"Deployment {deployment_id} not found"))
        if deployment.status not in (DeploymentStatus.PENDING, DeploymentStatus.BUILDING):
            return ActionResult.failure(
                InvalidTransition(f"Deployment cannot be cancelled (status: {deployment.status.value})"),
                deployment,
            )

        if deployment.workflow_run_id:
            try:
                remote_cancelled = await self.retrieval.cancel(deployment.workflow_run_id)
            except (httpx.HTTPError, DeploymentError) as e:
                self.logger.warning("Deployment", "remote_cancel_failed",
                                    deployment_id=deployment_id, error=str(e))
                remote_cancelled = False
            await self.store.append_log(
                deployment_id,
                "Remote workflow run cancellation requested."
                if remote_cancelled else "Failed to cancel remote workflow run.",
            )

        result = await self.transition(deployment_id, DeploymentStatus.CANCELLED, error_message=message)
        if result.ok:
            await self.store.append_log(deployment_id, message)
            result.deployment = await self.store.get(deployment_id)
            result.message = message
        return result

    # ------------------------------------------------------------------
    # Event-driven transitions
    # ------------------------------------------------------------------

    async def record_build_started(self, deployment: Deployment, run_id: int | None = None,
                                   build_url: str | None = None) -> ActionResult:
        """A remote workflow started running for ``deployment``."""
        fields = {}
        if run_id:
            fields["workflow_run_id"] = int(run_id)
        if build_url:
            fields["build_url"] = build_url

        if deployment.status != DeploymentStatus.PENDING or self._awaiting_approval(deployment):
            if fields and deployment.is_active:
                deployment = await self.store.update(deployment.id, **fields)
            return ActionResult(ok=True, deployment=deployment, message="Acknowledged")

        result = await self.transition(deployment.id, DeploymentStatus.BUILDING, **fields)
        if not result.ok:
            return ActionResult(ok=True, deployment=result.deployment, message="Acknowledged")
        await self.store.append_log(deployment.id, "Remote workflow running.")
        result.message = "Deployment marked as building"
        return result

    async def record_artifact_ready(self, deployment: Deployment, artifact: ArtifactRef) -> ActionResult:
        """Attach the build output and queue processing."""
        if deployment.status not in (DeploymentStatus.PENDING, DeploymentStatus.BUILDING):
            return ActionResult(ok=True, deployment=deployment,
                                message=f"Deployment already {deployment.status.value}")

        fields = {
            "artifact_id": artifact.id,
            "artifact_name": artifact.name,
            "artifact_size": artifact.size,
            "artifact_download_url": artifact.download_url,
        }
        if self._awaiting_approval(deployment):
            deployment = await self.store.update(deployment.id, **fields)
            await self.store.append_log(deployment.id, f"Artifact {artifact.name} ready; awaiting approval.")
            return ActionResult(ok=True, deployment=deployment, message="Artifact held for approval")

        result = await self.transition(deployment.id, DeploymentStatus.QUEUED, **fields)
        if not result.ok:
            return ActionResult(ok=True, deployment=result.deployment, message="Acknowledged")

        await self.store.append_log(
            deployment.id, f"Artifact {artifact.name} ({artifact.size} bytes) ready, queued for deployment."
        )
        await self._dispatch(deployment.id)
        result.message = "Artifact queued for deployment"
        return result

    async def record_build_failed(self, deployment: Deployment, error_message: str) -> ActionResult:
        """Remote build failed; keep its error text as-is."""
        if not deployment.is_active:
            return ActionResult(ok=True, deployment=deployment,
                                message=f"Deployment already {deployment.status.value}")
        failed = await self._fail(deployment.id, error_message, failure_point="build")
        return ActionResult(ok=True, deployment=failed, error=RemoteBuildFailure(error_message),
                            message="Deployment marked as failed")

    async def record_snapshot_ready(self, deployment: Deployment) -> ActionResult:
        """A source snapshot is available; switch to direct retrieval and queue."""
        if deployment.status not in (DeploymentStatus.PENDING, DeploymentStatus.BUILDING):
            return ActionResult(ok=True, deployment=deployment,
                                message=f"Deployment already {deployment.status.value}")
        if self._awaiting_approval(deployment):
            deployment = await self.store.update(
                deployment.id, deployment_method=DeploymentMethod.DIRECT_SNAPSHOT
            )
            return ActionResult(ok=True, deployment=deployment, message="Snapshot held for approval")

        result = await self.transition(
            deployment.id, DeploymentStatus.QUEUED,
            deployment_method=DeploymentMethod.DIRECT_SNAPSHOT,
        )
        if not result.ok:
            return ActionResult(ok=True, deployment=result.deployment, message="Acknowledged")
        await self.store.append_log(deployment.id, "Source snapshot ready, queued for deployment.")
        await self._dispatch(deployment.id)
        result.message = "Snapshot queued for deployment"
        return result

    async def record_run_completed(self, deployment: Deployment, conclusion: str | None,
                                   run_id: int | None = None, build_url: str | None = None) -> ActionResult:
        """A CI run completed. Success queues processing, anything else fails."""
        if run_id and deployment.is_active and deployment.workflow_run_id != int(run_id):
            deployment = await self.store.update(
                deployment.id, workflow_run_id=int(run_id), build_url=build_url or deployment.build_url
            )

        if conclusion == "success":
            if deployment.status not in (DeploymentStatus.PENDING, DeploymentStatus.BUILDING) \
                    or self._awaiting_approval(deployment):
                return ActionResult(ok=True, deployment=deployment, message="Acknowledged")
            result = await self.transition(deployment.id, DeploymentStatus.QUEUED)
            if not result.ok:
                return ActionResult(ok=True, deployment=result.deployment, message="Acknowledged")
            await self.store.append_log(deployment.id, "Remote build succeeded, queued for deployment.")
            await self._dispatch(deployment.id)
            result.message = "Build completed, deployment queued"
            return result

        return await self.record_build_failed(
            deployment, f"Workflow failed with conclusion: {conclusion}"
        )

    # ------------------------------------------------------------------
    # Artifact processing (critical section)
    # ------------------------------------------------------------------

    def _processable(self, deployment: Deployment) -> set[DeploymentStatus]:
        statuses = {DeploymentStatus.QUEUED}
        if deployment.deployment_method == DeploymentMethod.DIRECT_SNAPSHOT and not self._awaiting_approval(deployment):
            statuses.add(DeploymentStatus.PENDING)
        return statuses

    async def process_deployment(self, deployment_id: str, attempt: int = 0) -> ActionResult:
        """
        Download, back up, extract and place a deployment's bundle.

        Holds the site lock for the whole critical section. When the lock
        is taken by someone else the work is rescheduled, not failed.
        """
        deployment = await self.store.get(deployment_id)
        if deployment is None:
            return ActionResult.failure(NotFound(f"Deployment {deployment_id} not found"))

        processable = self._processable(deployment)
        if deployment.status not in processable:
            self.logger.log("Deployment", "process_skipped",
                            deployment_id=deployment_id, status=deployment.status.value)
            return ActionResult(ok=True, deployment=deployment,
                                message=f"Deployment already {deployment.status.value}")

        holder = lock_holder("deployment", deployment_id)
        async with self.store.hold_lock(holder, self.config.LOCK_TTL_SECONDS) as acquired:
            if not acquired:
                return await self._reschedule(deployment_id, attempt)

            claimed = await self.store.transition(deployment_id, processable, DeploymentStatus.DEPLOYING)
            if claimed is None:
                return ActionResult(ok=True, deployment=await self.store.get(deployment_id),
                                    message="Deployment claimed elsewhere")

            await self.store.append_log(deployment_id, "Deployment started.")
            self.logger.step(deployment_id, "process_deployment", "started", attempt=attempt)

            scratch_root = self.config.SCRATCH_DIR
            if scratch_root:
                os.makedirs(scratch_root, exist_ok=True)
            scratch = tempfile.mkdtemp(prefix=f"deploy-{deployment_id}-", dir=scratch_root)
            try:
                return await self._run_pipeline(claimed, holder, scratch)
            except ProcessingError as e:
                await self.store.append_log(deployment_id, f"{e.failure_point}: {e.message}")
                failed = await self._fail(
                    deployment_id, e.message, failure_point=e.failure_point, context=e.details.get("context")
                )
                return ActionResult.failure(e, failed)
            except Exception as e:
                capture_exception(e, deployment_id=deployment_id)
                self.logger.error("Deployment", "unexpected_error", deployment_id=deployment_id, error=str(e))
                failed = await self._fail(deployment_id, f"Deployment failed: {e}", failure_point="unexpected")
                return ActionResult(ok=False, deployment=failed, error=e, message=str(e))
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

    async def _reschedule(self, deployment_id: str, attempt: int) -> ActionResult:
        retry_count = await self.store.increment_retry(deployment_id)
        track_lock_contention(self.store.site_id)
        holder = await self.store.lock_read()
        delay = self.config.LOCK_RETRY_SECONDS
        await self.store.append_log(
            deployment_id,
            f"Another deployment is in progress ({holder}); retrying in {delay}s (retry {retry_count}).",
        )
        self.logger.log("Deployment", "lock_contention",
                        deployment_id=deployment_id, holder=holder, retry_count=retry_count)
        await self._dispatch(deployment_id, defer_seconds=delay, attempt=attempt + 1)
        return ActionResult(ok=True, deployment=await self.store.get(deployment_id),
                            rescheduled=True, message=f"Rescheduled in {delay}s")

    async def _resolve_artifact(self, deployment: Deployment) -> ArtifactRef:
        if deployment.has_artifact:
            return ArtifactRef(
                id=deployment.artifact_id or "",
                name=deployment.artifact_name or "artifact",
                size=deployment.artifact_size or 0,
                download_url=deployment.artifact_download_url,
            )
        if not deployment.workflow_run_id:
            raise ArtifactNotFound("No artifact descriptor and no workflow run to look one up from.")

        try:
            artifacts = await self.retrieval.list_artifacts(deployment.workflow_run_id)
        except httpx.HTTPError as e:
            raise ArtifactNotFound(f"Failed to list artifacts: {e}") from e
        if not artifacts:
            raise ArtifactNotFound(f"No artifacts found for workflow run {deployment.workflow_run_id}.")

        artifact = artifacts[0]
        await self.store.update(
            deployment.id,
            artifact_id=artifact.id,
            artifact_name=artifact.name,
            artifact_size=artifact.size,
        )
        return artifact

    @asynccontextmanager
    async def _heartbeat(self, deployment_id: str, holder: str):
        """
        Keep the lock and ``updated_at`` fresh while blocking work runs in
        a thread, so neither the TTL nor the stale sweep fires mid-copy.
        """
        interval = self.config.LOCK_HEARTBEAT_SECONDS

        async def beat():
            while True:
                await asyncio.sleep(interval)
                if not await self.store.lock_extend(holder, self.config.LOCK_TTL_SECONDS):
                    self.logger.warning("Deployment", "lock_lost", deployment_id=deployment_id, holder=holder)
                await self.store.touch(deployment_id)

        task = asyncio.create_task(beat())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run_pipeline(self, deployment: Deployment, holder: str, scratch: str) -> ActionResult:
        deployment_id = deployment.id
        config = self.config

        if deployment.deployment_method == DeploymentMethod.DIRECT_SNAPSHOT:
            archive = os.path.join(scratch, "source.zip")
            await self.store.append_log(deployment_id, f"Downloading source snapshot of {deployment.commit_hash}...")
            await self.retrieval.fetch_source_snapshot(deployment.commit_hash, archive)
        else:
            artifact = await self._resolve_artifact(deployment)
            archive = os.path.join(scratch, "artifact.zip")
            await self.store.append_log(deployment_id, f"Downloading artifact {artifact.name}...")
            await self.retrieval.fetch_artifact(artifact, archive)
        self.logger.step(deployment_id, "download", "success", size=os.path.getsize(archive))
        await self.store.lock_extend(holder, config.LOCK_TTL_SECONDS)

        if config.CREATE_BACKUPS:
            async with self._heartbeat(deployment_id, holder):
                backup_path = await asyncio.to_thread(
                    create_backup, deployment_id, config.LIVE_DIR, config.BACKUP_DIR
                )
            if backup_path:
                await self.store.update(deployment_id, backup_path=backup_path)
                await self.store.append_log(deployment_id, f"Backup created: {backup_path}")
            else:
                await self.store.append_log(deployment_id, "No existing files to back up (first deployment).")
            await self.store.lock_extend(holder, config.LOCK_TTL_SECONDS)

        await self.store.append_log(deployment_id, "Extracting artifact...")
        async with self._heartbeat(deployment_id, holder):
            placed = await asyncio.to_thread(
                extract_and_place,
                archive,
                scratch,
                config.LIVE_DIR,
                config.THEME_SLUG,
                config.THEME_MARKER_FILES,
                config.THEME_SEARCH_DEPTH,
            )
        manifest = placed["manifest"]

        result = await self.transition(
            deployment_id,
            DeploymentStatus.SUCCESS,
            deployed_at=utcnow(),
            file_manifest=json.dumps(manifest),
            error_message=None,
            failure_point=None,
        )
        if not result.ok:
            return result

        await self.store.append_log(
            deployment_id, f"Deployment successful: {len(manifest)} files placed from '{placed['source']}'."
        )
        self.logger.step(deployment_id, "process_deployment", "success", files=len(manifest))
        deployment = await self.store.get(deployment_id)
        await self._report(deployment, True, None, None)
        return ActionResult(ok=True, deployment=deployment, message="Deployment successful")

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback_deployment(self, deployment_id: str) -> ActionResult:
        """Restore the backup taken before ``deployment_id`` went live."""
        deployment = await self.store.get(deployment_id)
        if deployment is None:
            return ActionResult.failure(NotFound(f"Deployment {deployment_id} not found"))
        if deployment.status != DeploymentStatus.SUCCESS:
            return ActionResult.failure(
                InvalidTransition(f"Deployment cannot be rolled back (status: {deployment.status.value})"),
                deployment,
            )
        if not deployment.backup_path:
            return ActionResult.failure(
                InvalidTransition("Deployment has no backup to roll back to"), deployment
            )

        holder = lock_holder("rollback", deployment_id)
        async with self.store.hold_lock(holder, self.config.LOCK_TTL_SECONDS) as acquired:
            if not acquired:
                holder = await self.store.lock_read()
                return ActionResult.failure(
                    ConflictError(f"Another deployment is in progress ({holder}); try again shortly."),
                    deployment,
                )
            try:
                async with self._heartbeat(deployment_id, holder):
                    manifest = await asyncio.to_thread(
                        restore_backup, deployment.backup_path, self.config.LIVE_DIR, self.config.SCRATCH_DIR
                    )
            except ProcessingError as e:
                await self.store.append_log(deployment_id, f"Rollback failed: {e.message}")
                return ActionResult.failure(e, deployment)

            result = await self.transition(deployment_id, DeploymentStatus.ROLLED_BACK)
            if result.ok:
                await self.store.append_log(
                    deployment_id, f"Rolled back to {os.path.basename(deployment.backup_path)} ({len(manifest)} files)."
                )
                result.deployment = await self.store.get(deployment_id)
                result.message = "Deployment rolled back"
            return result

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def poll_active_deployments(self) -> dict:
        """
        Advance records waiting on something outside this process.

        Returns a summary of what changed, keyed by action.
        """
        summary = {"checked": 0, "queued": 0, "failed": 0, "requeued": 0, "interrupted": 0}
        now = utcnow()
        stale_after = timedelta(seconds=self.config.LOCK_TTL_SECONDS)

        for deployment in await self.store.list_active():
            summary["checked"] += 1
            age = now - as_utc(deployment.updated_at)
            try:
                if deployment.status == DeploymentStatus.BUILDING:
                    outcome = await self._poll_building(deployment)
                    if outcome:
                        summary[outcome] += 1
                elif deployment.status == DeploymentStatus.QUEUED and age > stale_after:
                    await self._dispatch(deployment.id, attempt=deployment.retry_count)
                    summary["requeued"] += 1
                elif deployment.status == DeploymentStatus.DEPLOYING and age > stale_after:
                    holder = await self.store.lock_read() or ""
                    if not holder.startswith(f"deployment:{deployment.id}:"):
                        await self._fail(
                            deployment.id,
                            "Deployment was interrupted before it finished.",
                            failure_point="interrupted",
                        )
                        summary["interrupted"] += 1
            except (httpx.HTTPError, DeploymentError) as e:
                self.logger.error("Deployment", "poll_failed", deployment_id=deployment.id, error=str(e))

        self.logger.log("Deployment", "poll_complete", **summary)
        return summary

    async def _poll_building(self, deployment: Deployment) -> str | None:
        run_id = deployment.workflow_run_id
        if not run_id:
            runs = await self.retrieval.list_recent_runs(self.config.RECENT_RUNS_LIMIT)
            match = next((run for run in runs if run.head_sha == deployment.commit_hash), None)
            if match is None:
                return None
            deployment = await self.store.update(
                deployment.id, workflow_run_id=match.id, build_url=match.html_url
            )
            await self.store.append_log(deployment.id, f"Bound to workflow run {match.id}.")
            run_id = match.id

        status = await self.retrieval.poll_status(run_id)
        if not status.completed:
            return None

        result = await self.record_run_completed(deployment, status.conclusion)
        if result.deployment is None:
            return None
        if result.deployment.status == DeploymentStatus.QUEUED:
            return "queued"
        if result.deployment.status == DeploymentStatus.FAILED:
            return "failed"
        return None
