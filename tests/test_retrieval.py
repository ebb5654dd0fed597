"""
Retrieval client tests against a mocked relay.
"""
import json

import httpx
import pytest

from deployhook.errors import ArtifactDownloadError, RemoteTriggerError
from deployhook.services.retrieval import ArtifactRef, RetrievalClient


BASE_URL = "https://relay.example.com"


def relay(handler, requests: list):
    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return RetrievalClient(
        base_url=BASE_URL,
        api_key="relay-key",
        repo_full_name="acme/site-theme",
        workflow_name="deploy.yml",
        transport=httpx.MockTransport(record),
    )


def body_of(request: httpx.Request) -> dict:
    return json.loads(request.content)


class TestTriggerBuild:
    async def test_returns_remote_deployment_id(self):
        requests = []
        client = relay(lambda r: httpx.Response(200, json={"success": True, "deployment": {"id": "rd-1"}}), requests)

        assert await client.trigger_build("abc123") == "rd-1"

        assert requests[0].url.path == "/api/plugin/deployments/trigger"
        assert requests[0].headers["X-API-Key"] == "relay-key"
        assert body_of(requests[0]) == {"ref": "abc123", "workflow": "deploy.yml"}

    async def test_flat_deployment_id(self):
        client = relay(lambda r: httpx.Response(200, json={"success": True, "deploymentId": 42}), [])

        assert await client.trigger_build("abc123") == "42"

    async def test_refused(self):
        client = relay(lambda r: httpx.Response(200, json={"success": False, "message": "quota exceeded"}), [])

        with pytest.raises(RemoteTriggerError) as exc:
            await client.trigger_build("abc123")

        assert "quota exceeded" in exc.value.message

    async def test_missing_id(self):
        client = relay(lambda r: httpx.Response(200, json={"success": True}), [])

        with pytest.raises(RemoteTriggerError):
            await client.trigger_build("abc123")


class TestProxy:
    async def test_list_artifacts_unwraps_envelope(self):
        requests = []
        client = relay(lambda r: httpx.Response(200, json={
            "status": 200,
            "data": {"artifacts": [{"id": 9, "name": "site-theme", "size_in_bytes": 4096}]},
        }), requests)

        artifacts = await client.list_artifacts(77)

        assert artifacts == [ArtifactRef(id="9", name="site-theme", size=4096)]
        assert body_of(requests[0]) == {
            "method": "GET",
            "endpoint": "/repos/acme/site-theme/actions/runs/77/artifacts",
            "data": None,
        }

    async def test_list_recent_runs_sends_query(self):
        requests = []
        client = relay(lambda r: httpx.Response(200, json={"workflow_runs": [
            {"id": 1, "status": "completed", "conclusion": "success", "head_sha": "abc123"},
        ]}), requests)

        runs = await client.list_recent_runs(limit=5)

        assert runs[0].head_sha == "abc123"
        assert body_of(requests[0])["endpoint"].endswith("/actions/workflows/deploy.yml/runs?per_page=5")

    async def test_poll_status(self):
        client = relay(lambda r: httpx.Response(200, json={
            "status": 200, "data": {"id": 501, "status": "completed", "conclusion": "failure"},
        }), [])

        status = await client.poll_status(501)

        assert status.completed
        assert not status.succeeded

    async def test_cancel_accepted(self):
        client = relay(lambda r: httpx.Response(200, json={"status": 202, "data": {}}), [])

        assert await client.cancel(501) is True

    async def test_relay_error_raises(self):
        client = relay(lambda r: httpx.Response(500, json={"error": True, "message": "boom"}), [])

        with pytest.raises(httpx.HTTPStatusError):
            await client.poll_status(501)


class TestDownloads:
    async def test_fetch_artifact_prefers_event_url(self, tmp_path):
        requests = []
        client = relay(lambda r: httpx.Response(200, content=b"PK\x03\x04 archive bytes"), requests)
        dest = str(tmp_path / "artifact.zip")

        await client.fetch_artifact(
            ArtifactRef(id="9", download_url="https://storage.example.com/a/9.zip"), dest
        )

        assert str(requests[0].url) == "https://storage.example.com/a/9.zip"
        assert (tmp_path / "artifact.zip").read_bytes() == b"PK\x03\x04 archive bytes"

    async def test_fetch_artifact_by_id(self, tmp_path):
        requests = []
        client = relay(lambda r: httpx.Response(200, content=b"data"), requests)

        await client.fetch_artifact(ArtifactRef(id="9"), str(tmp_path / "artifact.zip"))

        assert requests[0].url.path == "/api/plugin/github/artifacts/9/download"

    async def test_fetch_artifact_error_status(self, tmp_path):
        client = relay(lambda r: httpx.Response(410), [])

        with pytest.raises(ArtifactDownloadError) as exc:
            await client.fetch_artifact(ArtifactRef(id="9"), str(tmp_path / "artifact.zip"))

        assert exc.value.message == "Failed to download artifact. Status: 410"

    async def test_fetch_artifact_empty_body(self, tmp_path):
        client = relay(lambda r: httpx.Response(200, content=b""), [])

        with pytest.raises(ArtifactDownloadError):
            await client.fetch_artifact(ArtifactRef(id="9"), str(tmp_path / "artifact.zip"))

    async def test_fetch_source_snapshot(self, tmp_path):
        requests = []

        def handler(request):
            if request.url.path == "/api/plugin/github/clone-token":
                return httpx.Response(200, json={
                    "success": True, "archiveUrl": "https://codeload.example.com/abc123.zip", "token": "t0k",
                })
            return httpx.Response(200, content=b"zip bytes")

        client = relay(handler, requests)

        await client.fetch_source_snapshot("abc123", str(tmp_path / "source.zip"))

        assert requests[1].headers["Authorization"] == "token t0k"
        assert (tmp_path / "source.zip").read_bytes() == b"zip bytes"


class TestReportOutcome:
    async def test_posts_outcome(self):
        requests = []
        client = relay(lambda r: httpx.Response(200, json={"success": True}), requests)

        acknowledged = await client.report_outcome(
            "relay-42", False, error_message="copy: disk full", logs="[..] log", context={"disk_free_bytes": 0}
        )

        assert acknowledged
        assert requests[0].url.path == "/api/plugin/deployments/status"
        assert body_of(requests[0]) == {
            "deploymentId": "relay-42",
            "success": False,
            "errorMessage": "copy: disk full",
            "logs": "[..] log",
            "context": {"disk_free_bytes": 0},
        }

    async def test_without_remote_id_sends_nothing(self):
        requests = []
        client = relay(lambda r: httpx.Response(200), requests)

        assert await client.report_outcome("", True) is False
        assert requests == []

    async def test_relay_failure_is_not_raised(self):
        client = relay(lambda r: httpx.Response(503), [])

        assert await client.report_outcome("relay-42", True) is False
