"""
Webhook API routes.

Inbound CI/relay deliveries and a secret-status check for operators.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from deployhook.config import settings
from deployhook.dependencies.auth import TokenPayload, require_admin
from deployhook.dependencies.services import get_ingress
from deployhook.errors import DeploymentError
from deployhook.services.webhook_ingress import WebhookIngress


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/deploy")
async def receive_webhook(
    request: Request,
    ingress: WebhookIngress = Depends(get_ingress),
):
    """
    Receive a signed deployment event.

    The raw body is read before any parsing so the signature is checked
    against the exact bytes the sender signed.
    """
    raw_body = await request.body()
    try:
        body = await ingress.handle(raw_body, request.headers)
    except DeploymentError as e:
        return JSONResponse(status_code=e.status_code, content={"success": False, **e.to_dict()})
    return body


@router.get("/status")
async def webhook_status(token: TokenPayload = Depends(require_admin)):
    """Report whether a webhook secret is configured, without revealing it."""
    secret = settings.WEBHOOK_SECRET or ""
    return {
        "configured": bool(secret),
        "length": len(secret),
        "repository": settings.REPO_FULL_NAME or None,
        "require_repository_identity": settings.REQUIRE_REPOSITORY_IDENTITY,
        "processing_mode": settings.WEBHOOK_PROCESSING_MODE,
    }
