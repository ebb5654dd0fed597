"""
Webhook ingress.

Authenticates inbound deliveries (HMAC-SHA256 over the exact signed
bytes), normalises relay and direct CI events into ``InboundEvent`` and
routes each one to the orchestrator. Errors are raised as domain errors
and turned into HTTP responses by the route.
"""
import enum
import hashlib
import hmac
import json
from typing import Mapping
from urllib.parse import parse_qs

from pydantic import BaseModel

from deployhook.config import Settings, settings
from deployhook.errors import (
    AuthenticationError,
    CorrelationNotFound,
    DeploymentError,
    IdentityMismatch,
    MalformedEvent,
)
from deployhook.logging_config import get_logger
from deployhook.models.deployment import Deployment, DeploymentMethod, TriggerType
from deployhook.routes.metrics import track_identity_missing, track_webhook_event
from deployhook.services.orchestrator import ActionResult, DeploymentOrchestrator
from deployhook.services.retrieval import ArtifactRef


SIGNATURE_HEADER = "x-hub-signature-256"
RELAY_EVENT_HEADER = "x-deployhook-event"
PROVIDER_EVENT_HEADER = "x-github-event"
FORWARDED_HEADER = "x-deployhook-forwarded"
DELIVERY_HEADER = "x-github-delivery"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


class EventKind(str, enum.Enum):
    NEW_COMMIT = "new_commit"
    WORKFLOW_RUNNING = "workflow_running"
    ARTIFACT_READY = "artifact_ready"
    WORKFLOW_FAILED = "workflow_failed"
    CLONE_READY = "clone_ready"
    PUSH = "push"
    WORKFLOW_RUN = "workflow_run"
    PING = "ping"


RELAY_EVENTS = frozenset({
    EventKind.NEW_COMMIT,
    EventKind.WORKFLOW_RUNNING,
    EventKind.ARTIFACT_READY,
    EventKind.WORKFLOW_FAILED,
    EventKind.CLONE_READY,
    EventKind.PING,
})

DIRECT_EVENTS = frozenset({
    EventKind.PUSH,
    EventKind.WORKFLOW_RUN,
    EventKind.PING,
})

# Events that can start or advance a deployment
IDENTITY_GUARDED = frozenset({
    EventKind.NEW_COMMIT,
    EventKind.ARTIFACT_READY,
    EventKind.CLONE_READY,
    EventKind.PUSH,
    EventKind.WORKFLOW_RUN,
})

# Relay names for the retrieval method
RELAY_METHODS = {
    "direct_clone": DeploymentMethod.DIRECT_SNAPSHOT,
    "direct_snapshot": DeploymentMethod.DIRECT_SNAPSHOT,
    "github_actions": DeploymentMethod.CI_ARTIFACT,
    "ci_artifact": DeploymentMethod.CI_ARTIFACT,
}


class InboundEvent(BaseModel):
    """A verified, parsed delivery."""
    kind: EventKind
    name: str
    relayed: bool = False
    forwarded: bool = False
    delivery_id: str | None = None
    payload: dict


def verify_signature(payload: bytes, signature_header: str | None, secret: str | None) -> bool:
    """
    Check an ``X-Hub-Signature-256`` value against ``payload``.

    Accepts ``sha256=<hex>`` or bare hex. Any other algorithm prefix,
    an empty header or an unset secret fails.
    """
    if not signature_header or not secret:
        return False

    if "=" in signature_header:
        algorithm, digest = signature_header.split("=", 1)
        if algorithm.strip().lower() != "sha256":
            return False
    else:
        digest = signature_header

    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, digest.strip().lower())


def sign_payload(payload: bytes, secret: str) -> str:
    """Header value a sender would attach to ``payload``."""
    return "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def split_body(raw_body: bytes, content_type: str | None) -> str:
    """
    Return the JSON text carried by the delivery.

    Form-encoded deliveries carry it in the ``payload`` field; the
    signature still covers the raw form body.
    """
    if content_type and FORM_CONTENT_TYPE in content_type.lower():
        form = parse_qs(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True)
        if "payload" in form:
            return form["payload"][0]
    return raw_body.decode("utf-8", errors="replace")


def resolve_event_name(headers: Mapping[str, str]) -> tuple[str, bool]:
    """
    Pick the event name, relay header first.

    Returns:
        (event name without namespace prefix, whether it came from the relay)
    """
    relay_event = headers.get(RELAY_EVENT_HEADER)
    if relay_event:
        return relay_event.rsplit(":", 1)[-1].strip(), True
    return (headers.get(PROVIDER_EVENT_HEADER) or "").strip(), False


def parse_event(raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> InboundEvent:
    """
    Authenticate and decode a delivery.

    Check order: secret configured, payload present, signature valid,
    JSON valid, event supported.
    """
    headers = {k.lower(): v for k, v in headers.items()}
    name, relayed = resolve_event_name(headers)

    if not secret:
        raise AuthenticationError("Webhook secret must be configured.")

    payload_text = split_body(raw_body, headers.get("content-type"))
    if not payload_text.strip():
        raise MalformedEvent("Empty payload received.")

    if not verify_signature(raw_body, headers.get(SIGNATURE_HEADER), secret):
        raise AuthenticationError("Invalid webhook signature.")

    try:
        payload = json.loads(payload_text)
    except ValueError as e:
        raise MalformedEvent(f"Invalid JSON payload: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedEvent("Invalid JSON payload: expected an object")

    try:
        kind = EventKind(name)
    except ValueError:
        raise MalformedEvent(f"Unsupported event type: {name or 'none'}") from None
    allowed = RELAY_EVENTS if relayed else DIRECT_EVENTS
    if kind not in allowed:
        raise MalformedEvent(f"Unsupported event type: {name}")

    return InboundEvent(
        kind=kind,
        name=name,
        relayed=relayed,
        forwarded=(headers.get(FORWARDED_HEADER) or "").lower() == "true",
        delivery_id=headers.get(DELIVERY_HEADER),
        payload=payload,
    )


def integer_field(payload: dict, key: str) -> int | None:
    """Optional numeric payload field; anything non-numeric is malformed."""
    value = payload.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MalformedEvent(f"Invalid {key}: expected a number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedEvent(f"Invalid {key}: expected a number") from None


def repository_of(payload: dict) -> str | None:
    """Repository full name carried by a relay or provider payload."""
    name = payload.get("repoFullName")
    if not name and isinstance(payload.get("repository"), dict):
        name = payload["repository"].get("full_name")
    return name or None


def validate_repository(event: InboundEvent, expected: str | None, require: bool = False) -> None:
    """
    Refuse deployment-triggering events for another repository.

    Comparison is case-insensitive. An event with no repository identity
    is let through (and counted) unless ``require`` is set.
    """
    if event.kind not in IDENTITY_GUARDED or not expected:
        return

    actual = repository_of(event.payload)
    if actual is None:
        track_identity_missing(event.kind.value)
        if require:
            raise IdentityMismatch("Repository identity missing from payload.")
        get_logger(component="webhook").warning(
            "repository_identity_missing", event=event.kind.value, expected=expected
        )
        return

    if actual.lower() != expected.lower():
        raise IdentityMismatch(
            "Repository mismatch.", expected=expected, received=actual
        )


class WebhookIngress:
    """Dispatches verified events to the orchestrator."""

    def __init__(self, orchestrator: DeploymentOrchestrator, config: Settings | None = None):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.config = config or settings

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> dict:
        """
        Process one delivery end to end.

        Returns the response body; raises ``DeploymentError`` for error
        responses.
        """
        event_name = resolve_event_name({k.lower(): v for k, v in headers.items()})[0] or "unknown"
        try:
            event = parse_event(raw_body, headers, self.config.WEBHOOK_SECRET)
            log = get_logger(component="webhook", event=event.kind.value,
                             delivery_id=event.delivery_id, forwarded=event.forwarded)
            log.info("webhook_received", relayed=event.relayed, payload_keys=sorted(event.payload))

            validate_repository(event, self.config.REPO_FULL_NAME, self.config.REQUIRE_REPOSITORY_IDENTITY)

            handler = getattr(self, f"_on_{event.kind.value}")
            response = await handler(event.payload)
        except DeploymentError as e:
            track_webhook_event(event_name, e.code)
            get_logger(component="webhook", event=event_name).warning(
                "webhook_rejected", error=e.code, message=e.message
            )
            raise

        track_webhook_event(event.kind.value, "accepted")
        return response

    # Correlation

    async def _correlate(self, payload: dict, by_commit: bool = True) -> Deployment | None:
        run_id = integer_field(payload, "workflowRunId")
        deployment = await self.store.get_by_correlation(payload.get("deploymentId") or "")
        if deployment is None and run_id:
            deployment = await self.store.get_by_workflow_run(run_id)
        if deployment is None and by_commit:
            deployment = await self.store.find_active_by_commit(payload.get("commitSha") or "")
            if deployment is not None and payload.get("deploymentId") and not deployment.correlation_id:
                deployment = await self.store.update(deployment.id, correlation_id=str(payload["deploymentId"]))
        return deployment

    @staticmethod
    def _respond(result: ActionResult, message: str | None = None) -> dict:
        if not result.ok:
            error = result.error
            if isinstance(error, DeploymentError):
                raise error
            raise DeploymentError(str(error))
        body = {"success": True, "message": message or result.message}
        if result.deployment is not None:
            body["deployment_id"] = result.deployment.id
        return body

    # Relay events

    async def _on_ping(self, payload: dict) -> dict:
        return {"success": True, "message": "Webhook ping received successfully!"}

    async def _on_new_commit(self, payload: dict) -> dict:
        remote_id = payload.get("deploymentId")
        branch = payload.get("branch") or ""

        if not self.config.AUTO_DEPLOY_ENABLED:
            return {
                "success": True,
                "message": "Auto-deploy is disabled. Deployment acknowledged but not started.",
            }
        if self.config.DEPLOY_BRANCH and branch != self.config.DEPLOY_BRANCH:
            return {
                "success": True,
                "message": f"Ignoring push to branch {branch} (configured: {self.config.DEPLOY_BRANCH})",
            }

        commit_hash = payload.get("commitSha")
        if not commit_hash:
            raise MalformedEvent("No commit hash found in payload.")

        if remote_id:
            existing = await self.store.get_by_correlation(str(remote_id))
            if existing is not None:
                return {"success": True, "message": "Deployment already recorded.", "deployment_id": existing.id}

        result = await self.orchestrator.start_deployment(
            commit_hash,
            TriggerType.WEBHOOK,
            actor=None,
            commit_data={
                "commit_message": payload.get("commitMessage"),
                "commit_author": payload.get("commitAuthor"),
            },
            correlation_id=str(remote_id) if remote_id else None,
            method=RELAY_METHODS.get(payload.get("deploymentMethod") or ""),
        )
        return self._respond(result, "New commit acknowledged.")

    async def _on_workflow_running(self, payload: dict) -> dict:
        deployment = await self._correlate(payload, by_commit=False)
        if deployment is None:
            return {"success": True, "message": "Workflow running status acknowledged."}
        result = await self.orchestrator.record_build_started(
            deployment, integer_field(payload, "workflowRunId"), payload.get("buildUrl")
        )
        return self._respond(result, "Workflow running status acknowledged.")

    async def _on_artifact_ready(self, payload: dict) -> dict:
        artifact = payload.get("artifact")
        if not isinstance(artifact, dict) or artifact.get("id") is None:
            raise MalformedEvent("No artifact found in payload.")
        size = integer_field(artifact, "sizeInBytes") or 0

        deployment = await self._correlate(payload)
        if deployment is None:
            raise CorrelationNotFound("No deployment found for this artifact.")

        ref = ArtifactRef(
            id=str(artifact["id"]),
            name=artifact.get("name") or "artifact",
            size=size,
            download_url=artifact.get("downloadUrl"),
        )
        result = await self.orchestrator.record_artifact_ready(deployment, ref)
        return self._respond(result)

    async def _on_workflow_failed(self, payload: dict) -> dict:
        deployment = await self._correlate(payload, by_commit=False)
        if deployment is None:
            return {"success": True, "message": "Workflow failure acknowledged."}
        error = payload.get("error") or f"Workflow failed with conclusion: {payload.get('workflowConclusion') or ''}"
        result = await self.orchestrator.record_build_failed(deployment, error)
        return self._respond(result, "Workflow failure acknowledged.")

    async def _on_clone_ready(self, payload: dict) -> dict:
        deployment = await self._correlate(payload)
        if deployment is None:
            raise CorrelationNotFound("No deployment found.")
        result = await self.orchestrator.record_snapshot_ready(deployment)
        return self._respond(result)

    # Direct provider events

    async def _on_push(self, payload: dict) -> dict:
        if not self.config.AUTO_DEPLOY_ENABLED:
            return {"success": True, "message": "Auto-deploy is disabled."}

        branch = (payload.get("ref") or "").removeprefix("refs/heads/")
        if branch != self.config.DEPLOY_BRANCH:
            return {
                "success": True,
                "message": f"Ignoring push to branch {branch} (configured: {self.config.DEPLOY_BRANCH})",
            }

        head_commit = payload.get("head_commit") or {}
        commit_hash = head_commit.get("id")
        if not commit_hash:
            raise MalformedEvent("No commit hash found in payload.")

        existing = await self.store.find_active_by_commit(commit_hash)
        if existing is not None:
            return {
                "success": True,
                "message": "Deployment already in progress for this commit.",
                "deployment_id": existing.id,
            }

        result = await self.orchestrator.start_deployment(
            commit_hash,
            TriggerType.WEBHOOK,
            actor=None,
            commit_data={
                "commit_message": head_commit.get("message"),
                "commit_author": (head_commit.get("author") or {}).get("name"),
                "commit_date": head_commit.get("timestamp"),
            },
        )
        return self._respond(result, result.message or "Deployment started successfully.")

    async def _on_workflow_run(self, payload: dict) -> dict:
        action = payload.get("action") or ""
        if action != "completed":
            return {
                "success": True,
                "message": f'Workflow run action "{action}" ignored (waiting for completion).',
            }

        run = payload.get("workflow_run") or {}
        if not isinstance(run, dict):
            raise MalformedEvent("Invalid workflow_run: expected an object")
        run_id = integer_field(run, "id")
        if not run_id:
            raise MalformedEvent("No workflow run ID found in payload.")

        deployment = await self.store.get_by_workflow_run(run_id)
        if deployment is None and run.get("head_sha"):
            deployment = await self.store.find_active_by_commit(run["head_sha"])
        if deployment is None:
            raise CorrelationNotFound("No deployment found for this workflow run.")

        result = await self.orchestrator.record_run_completed(
            deployment, run.get("conclusion"), run_id=run_id, build_url=run.get("html_url")
        )
        return self._respond(result)
