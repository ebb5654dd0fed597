"""
Retrieval client.

Talks to the relay backend over HTTP: triggers remote builds, reads CI
run state through the relay's provider proxy, downloads artifacts and
source snapshots, and reports deployment outcomes back upstream.

Every response shape is normalised here so callers only ever see the
pydantic models below.
"""
import os
from typing import Any

import httpx
from pydantic import BaseModel

from deployhook.config import settings
from deployhook.errors import ArtifactDownloadError, RemoteTriggerError
from deployhook.logging_config import get_logger


log = get_logger(component="retrieval")

DOWNLOAD_CHUNK_SIZE = 64 * 1024


class RunStatus(BaseModel):
    """State of a single CI run."""
    id: int
    status: str
    conclusion: str | None = None
    head_sha: str | None = None
    html_url: str | None = None

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @property
    def succeeded(self) -> bool:
        return self.completed and self.conclusion == "success"


class WorkflowRun(RunStatus):
    """Entry of the recent-runs listing."""
    created_at: str | None = None


class ArtifactRef(BaseModel):
    """Downloadable build output."""
    id: str
    name: str = "artifact"
    size: int = 0
    download_url: str | None = None


def _unwrap(body: Any, key: str) -> list:
    """
    Pull a list out of a response body.

    Accepts a bare list, ``{key: [...]}``, or the relay's proxy envelope
    ``{"data": {key: [...]}}`` / ``{"data": [...]}``.
    """
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return []
    if isinstance(body.get(key), list):
        return body[key]
    data = body.get("data")
    if data is not None and data is not body:
        return _unwrap(data, key)
    return []


def _as_artifact(raw: dict) -> ArtifactRef:
    return ArtifactRef(
        id=str(raw.get("id")),
        name=raw.get("name") or "artifact",
        size=int(raw.get("size_in_bytes") or raw.get("sizeInBytes") or raw.get("size") or 0),
        download_url=raw.get("downloadUrl") or raw.get("download_url"),
    )


def _as_run(raw: dict) -> WorkflowRun:
    return WorkflowRun(
        id=int(raw.get("id")),
        status=raw.get("status") or "unknown",
        conclusion=raw.get("conclusion"),
        head_sha=raw.get("head_sha") or raw.get("headSha"),
        html_url=raw.get("html_url") or raw.get("htmlUrl"),
        created_at=raw.get("created_at"),
    )


class RetrievalClient:
    """HTTP client for the relay backend."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        repo_full_name: str | None = None,
        workflow_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.BACKEND_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.BACKEND_API_KEY
        self.repo_full_name = repo_full_name or settings.REPO_FULL_NAME
        self.workflow_name = workflow_name or settings.WORKFLOW_NAME
        self.transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-API-Key": self.api_key or ""},
            timeout=timeout or settings.BACKEND_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    async def _proxy(self, method: str, endpoint: str, data: dict | None = None) -> tuple[int, Any]:
        """
        Forward a CI provider API call through the relay.

        Returns:
            (provider status code, provider body)
        """
        if method == "GET" and data:
            endpoint = f"{endpoint}?{httpx.QueryParams(data)}"
            data = None

        async with self._client() as client:
            response = await client.post(
                "/api/plugin/github/proxy",
                json={"method": method, "endpoint": endpoint, "data": data},
            )
        body = response.json() if response.content else {}
        if response.status_code >= 400 or (isinstance(body, dict) and body.get("error")):
            message = body.get("message") if isinstance(body, dict) else None
            raise httpx.HTTPStatusError(
                message or f"Relay error {response.status_code}",
                request=response.request,
                response=response,
            )
        if isinstance(body, dict) and "status" in body and "data" in body:
            return int(body.get("status") or 200), body.get("data")
        return response.status_code, body

    async def trigger_build(self, ref: str) -> str:
        """
        Ask the relay to start a remote build for ``ref``.

        Returns:
            The remote deployment id used to correlate later events

        Raises:
            RemoteTriggerError: when the relay refuses or returns no id
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    "/api/plugin/deployments/trigger",
                    json={"ref": ref, "workflow": self.workflow_name},
                )
            body = response.json() if response.content else {}
        except (httpx.HTTPError, ValueError) as e:
            log.error("trigger_build_failed", ref=ref, error=str(e))
            raise RemoteTriggerError(f"Failed to trigger remote build: {e}") from e

        if response.status_code >= 400 or not body.get("success"):
            message = body.get("message") or body.get("error") or f"HTTP {response.status_code}"
            raise RemoteTriggerError(f"Failed to trigger remote build: {message}")

        deployment = body.get("deployment") or {}
        correlation_id = deployment.get("id") or body.get("deploymentId")
        if not correlation_id:
            raise RemoteTriggerError("Remote build was accepted but no deployment id was returned")

        log.info("trigger_build_ok", ref=ref, correlation_id=correlation_id)
        return str(correlation_id)

    async def poll_status(self, run_id: int) -> RunStatus:
        status, body = await self._proxy(
            "GET", f"/repos/{self.repo_full_name}/actions/runs/{run_id}"
        )
        if status >= 400 or not isinstance(body, dict):
            raise httpx.HTTPError(f"Failed to get workflow run {run_id}: HTTP {status}")
        return _as_run(body)

    async def list_recent_runs(self, limit: int = 10) -> list[WorkflowRun]:
        status, body = await self._proxy(
            "GET",
            f"/repos/{self.repo_full_name}/actions/workflows/{self.workflow_name}/runs",
            {"per_page": limit},
        )
        if status >= 400:
            return []
        return [_as_run(raw) for raw in _unwrap(body, "workflow_runs")[:limit]]

    async def list_artifacts(self, run_id: int) -> list[ArtifactRef]:
        status, body = await self._proxy(
            "GET", f"/repos/{self.repo_full_name}/actions/runs/{run_id}/artifacts"
        )
        if status >= 400:
            return []
        return [_as_artifact(raw) for raw in _unwrap(body, "artifacts")]

    async def _stream_to(self, client: httpx.AsyncClient, url: str, dest: str, headers: dict | None = None) -> int:
        written = 0
        async with client.stream("GET", url, headers=headers, follow_redirects=True) as response:
            if response.status_code != 200:
                raise ArtifactDownloadError(
                    f"Failed to download artifact. Status: {response.status_code}",
                    status_code=response.status_code,
                )
            with open(dest, "wb") as fh:
                async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                    fh.write(chunk)
                    written += len(chunk)
        return written

    async def fetch_artifact(self, ref: ArtifactRef, dest: str) -> str:
        """
        Download an artifact to ``dest``.

        The pre-resolved URL from the event is used when present, otherwise
        the relay's artifact endpoint for ``ref.id``.
        """
        url = ref.download_url or f"/api/plugin/github/artifacts/{ref.id}/download"
        log.info("fetch_artifact", artifact_id=ref.id, url=url, using_event_url=bool(ref.download_url))
        try:
            async with self._client(timeout=settings.DOWNLOAD_TIMEOUT_SECONDS) as client:
                written = await self._stream_to(client, url, dest)
        except httpx.HTTPError as e:
            raise ArtifactDownloadError(f"Artifact download failed: {e}") from e

        if written == 0 or not os.path.exists(dest):
            raise ArtifactDownloadError("Artifact download produced an empty file")
        return dest

    async def fetch_source_snapshot(self, ref: str, dest: str) -> str:
        """Download a source archive of ``ref`` using a short-lived clone token."""
        try:
            async with self._client() as client:
                response = await client.post("/api/plugin/github/clone-token", json={"ref": ref})
            body = response.json() if response.content else {}
        except (httpx.HTTPError, ValueError) as e:
            raise ArtifactDownloadError(f"Failed to get clone credentials: {e}") from e

        if response.status_code >= 400 or not body.get("success"):
            raise ArtifactDownloadError(body.get("error") or "Failed to get clone credentials")

        archive_url = body.get("archiveUrl")
        token = body.get("token")
        if not archive_url:
            raise ArtifactDownloadError("Could not get repository archive URL")

        headers = {"Authorization": f"token {token}"} if token else None
        try:
            async with self._client(timeout=settings.DOWNLOAD_TIMEOUT_SECONDS) as client:
                written = await self._stream_to(client, archive_url, dest, headers=headers)
        except httpx.HTTPError as e:
            raise ArtifactDownloadError(f"Repository download failed: {e}") from e

        if written == 0:
            raise ArtifactDownloadError("Repository download produced an empty file")
        return dest

    async def cancel(self, run_id: int) -> bool:
        """Request cancellation of a CI run. The provider answers 202."""
        status, _ = await self._proxy(
            "POST", f"/repos/{self.repo_full_name}/actions/runs/{run_id}/cancel"
        )
        return status == 202

    async def report_outcome(
        self,
        correlation_id: str,
        success: bool,
        error_message: str | None = None,
        logs: str | None = None,
        context: dict | None = None,
    ) -> bool:
        """
        Report the final outcome of a deployment to the relay.

        Returns False when there is nothing to report to or the relay
        did not acknowledge; never raises.
        """
        if not correlation_id:
            log.warning("report_outcome_skipped", reason="No remote deployment ID")
            return False

        payload = {
            "deploymentId": correlation_id,
            "success": success,
            "errorMessage": error_message,
            "logs": logs,
        }
        if context:
            payload["context"] = context

        try:
            async with self._client() as client:
                response = await client.post("/api/plugin/deployments/status", json=payload)
        except httpx.HTTPError as e:
            log.error("report_outcome_failed", correlation_id=correlation_id, error=str(e))
            return False

        if response.status_code >= 400:
            log.error("report_outcome_failed", correlation_id=correlation_id, status_code=response.status_code)
            return False
        return True
