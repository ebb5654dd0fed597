"""
Deployment API routes.

Manual actions for operators: start, inspect, approve, cancel, roll back
and force a sweep. All routes require an admin token.
"""
import json

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from deployhook.dependencies.auth import TokenPayload, require_admin
from deployhook.dependencies.services import get_orchestrator
from deployhook.errors import DeploymentError
from deployhook.models.deployment import Deployment, DeploymentMethod, TriggerType
from deployhook.services.orchestrator import ActionResult, DeploymentOrchestrator


router = APIRouter(prefix="/api/deployments", tags=["deployments"])


class StartDeploymentRequest(BaseModel):
    """Request model for a manual deployment."""
    commit_hash: str
    commit_message: str | None = None
    commit_author: str | None = None
    method: DeploymentMethod | None = None


class DeploymentResponse(BaseModel):
    """Response model for a deployment."""
    id: str
    site_id: str
    commit_hash: str
    commit_message: str | None = None
    commit_author: str | None = None
    status: str
    trigger_type: str
    triggered_by: str | None = None
    deployment_method: str
    correlation_id: str | None = None
    workflow_run_id: int | None = None
    build_url: str | None = None
    artifact_name: str | None = None
    artifact_size: int | None = None
    backup_path: str | None = None
    file_manifest: list[str] | None = None
    deployment_logs: str | None = None
    error_message: str | None = None
    failure_point: str | None = None
    retry_count: int = 0
    created_at: str | None = None
    deployed_at: str | None = None


def deployment_to_response(deployment: Deployment) -> DeploymentResponse:
    """Convert Deployment model to DeploymentResponse."""
    return DeploymentResponse(
        id=deployment.id,
        site_id=deployment.site_id,
        commit_hash=deployment.commit_hash,
        commit_message=deployment.commit_message,
        commit_author=deployment.commit_author,
        status=deployment.status.value,
        trigger_type=deployment.trigger_type.value,
        triggered_by=deployment.triggered_by,
        deployment_method=deployment.deployment_method.value,
        correlation_id=deployment.correlation_id,
        workflow_run_id=deployment.workflow_run_id,
        build_url=deployment.build_url,
        artifact_name=deployment.artifact_name,
        artifact_size=deployment.artifact_size,
        backup_path=deployment.backup_path,
        file_manifest=json.loads(deployment.file_manifest) if deployment.file_manifest else None,
        deployment_logs=deployment.deployment_logs,
        error_message=deployment.error_message,
        failure_point=deployment.failure_point,
        retry_count=deployment.retry_count,
        created_at=deployment.created_at.isoformat() if deployment.created_at else None,
        deployed_at=deployment.deployed_at.isoformat() if deployment.deployed_at else None,
    )


def result_to_response(result: ActionResult) -> dict:
    """Raise on failure, otherwise wrap the deployment."""
    if not result.ok:
        error = result.error
        if isinstance(error, DeploymentError):
            raise HTTPException(status_code=error.status_code, detail=error.to_dict())
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "internal_error", "message": str(error)},
        )
    return {
        "success": True,
        "message": result.message,
        "rescheduled": result.rescheduled,
        "deployment": deployment_to_response(result.deployment) if result.deployment else None,
    }


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def start_deployment(
    request: StartDeploymentRequest,
    user: TokenPayload = Depends(require_admin),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """
    Start a manual deployment.

    Returns 409 with the blocking deployment when one is already active.
    """
    result = await orchestrator.start_deployment(
        request.commit_hash,
        TriggerType.MANUAL,
        actor=user.actor,
        commit_data={
            "commit_message": request.commit_message,
            "commit_author": request.commit_author,
        },
        method=request.method,
    )
    return result_to_response(result)


@router.get("")
async def list_deployments(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: TokenPayload = Depends(require_admin),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """List recent deployments, newest first."""
    deployments = await orchestrator.store.list_recent(limit=limit, offset=offset)
    return {
        "deployments": [deployment_to_response(d) for d in deployments],
        "limit": limit,
        "offset": offset,
    }


@router.post("/poll")
async def poll_deployments(
    user: TokenPayload = Depends(require_admin),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Run the active-deployment sweep now instead of waiting for the cron."""
    return await orchestrator.poll_active_deployments()


@router.get("/{deployment_id}")
async def get_deployment(
    deployment_id: str,
    user: TokenPayload = Depends(require_admin),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Get a single deployment with its log."""
    deployment = await orchestrator.store.get(deployment_id)
    if deployment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Deployment not found"
        )
    return deployment_to_response(deployment)


@router.post("/{deployment_id}/cancel")
async def cancel_deployment(
    deployment_id: str,
    user: TokenPayload = Depends(require_admin),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Cancel a pending or building deployment."""
    return result_to_response(await orchestrator.cancel_deployment(deployment_id))


@router.post("/{deployment_id}/approve")
async def approve_deployment(
    deployment_id: str,
    user: TokenPayload = Depends(require_admin),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Approve a deployment waiting for manual approval."""
    return result_to_response(await orchestrator.approve_deployment(deployment_id, user.actor))


@router.post("/{deployment_id}/rollback")
async def rollback_deployment(
    deployment_id: str,
    user: TokenPayload = Depends(require_admin),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Restore the files that were live before this deployment."""
    return result_to_response(await orchestrator.rollback_deployment(deployment_id))
