"""
HTTP tests for the webhook receiver and the manual actions API.

Relay collaborators are faked; immediate processing runs in-process after
the response (``background`` mode), so by the time a request returns its
deployment has been processed.
"""
import json
import os

import pytest

from deployhook.models.deployment import DeploymentStatus as S
from deployhook.services.jwt_service import JWTService
from deployhook.services.retrieval import ArtifactRef, RunStatus
from deployhook.services.webhook_ingress import sign_payload


SECRET = "test-webhook-secret"
REPO = "acme/site-theme"


async def deliver(client, event, payload, relay=True, secret=SECRET, delivery_id="d-1"):
    body = json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Hub-Signature-256": sign_payload(body, secret),
        "X-GitHub-Delivery": delivery_id,
        ("X-DeployHook-Event" if relay else "X-GitHub-Event"): event,
    }
    return await client.post("/api/webhooks/deploy", content=body, headers=headers)


def new_commit(**overrides):
    payload = {
        "deploymentId": "relay-42",
        "commitSha": "abc123",
        "commitMessage": "Tweak header spacing",
        "commitAuthor": "dev",
        "branch": "main",
        "repoFullName": REPO,
    }
    payload.update(overrides)
    return payload


def artifact_ready(**overrides):
    payload = {
        "deploymentId": "relay-42",
        "commitSha": "abc123",
        "repoFullName": REPO,
        "artifact": {
            "id": 555,
            "name": "site-theme",
            "sizeInBytes": 2048,
            "downloadUrl": "https://relay.example.com/artifacts/555.zip",
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def live_site(config):
    os.makedirs(config.LIVE_DIR)
    with open(os.path.join(config.LIVE_DIR, "old.css"), "w") as fh:
        fh.write("/* previous release */")
    return config.LIVE_DIR


class TestRelayFlow:
    async def test_commit_to_live_site(self, client, store, retrieval, queue, live_site):
        response = await deliver(client, "new_commit", new_commit())
        assert response.status_code == 200
        deployment_id = response.json()["deployment_id"]
        record = await store.get(deployment_id)
        assert record.status == S.BUILDING
        assert record.correlation_id == "relay-42"
        assert retrieval.triggered == []

        response = await deliver(client, "workflow_running", {
            "deploymentId": "relay-42", "workflowRunId": 901, "buildUrl": "https://ci.example.com/runs/901",
        })
        assert response.status_code == 200
        assert (await store.get(deployment_id)).workflow_run_id == 901

        response = await deliver(client, "artifact_ready", artifact_ready())
        assert response.status_code == 200

        record = await store.get(deployment_id)
        assert record.status == S.SUCCESS
        assert record.deployed_at is not None
        assert os.path.isfile(record.backup_path)
        assert sorted(os.listdir(live_site)) == ["functions.php", "style.css", "templates"]
        assert retrieval.reports[-1]["deploymentId"] == "relay-42"
        assert retrieval.reports[-1]["success"] is True
        assert queue.calls == []

    async def test_duplicate_artifact_delivery(self, client, store, retrieval):
        await deliver(client, "new_commit", new_commit())
        first = await deliver(client, "artifact_ready", artifact_ready(), delivery_id="d-2")

        second = await deliver(client, "artifact_ready", artifact_ready(), delivery_id="d-2")

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["message"] == "Deployment already success"
        assert len(retrieval.fetched) == 1
        assert len(retrieval.reports) == 1
        assert len(await store.list_recent()) == 1

    async def test_duplicate_new_commit_is_recorded_once(self, client, store):
        await deliver(client, "new_commit", new_commit())
        response = await deliver(client, "new_commit", new_commit())

        assert response.json()["message"] == "Deployment already recorded."
        assert len(await store.list_recent()) == 1

    async def test_artifact_correlated_by_commit(self, client, store, retrieval):
        await deliver(client, "new_commit", new_commit(deploymentId=None))

        response = await deliver(client, "artifact_ready", artifact_ready(deploymentId="relay-77"))

        assert response.status_code == 200
        record = (await store.list_recent())[0]
        assert record.status == S.SUCCESS
        assert retrieval.triggered == ["abc123"]
        assert retrieval.reports[-1]["deploymentId"] == "remote-123"

    async def test_workflow_failed_keeps_remote_error(self, client, store, retrieval):
        await deliver(client, "new_commit", new_commit())

        response = await deliver(client, "workflow_failed", {
            "deploymentId": "relay-42", "error": "Process completed with exit code 2.",
        })

        assert response.status_code == 200
        record = (await store.list_recent())[0]
        assert record.status == S.FAILED
        assert record.error_message == "Process completed with exit code 2."
        assert retrieval.reports[-1]["errorMessage"] == "Process completed with exit code 2."

    async def test_clone_ready_deploys_snapshot(self, client, store, retrieval):
        await deliver(client, "new_commit", new_commit(deploymentMethod="direct_clone"))

        response = await deliver(client, "clone_ready", {"deploymentId": "relay-42", "repoFullName": REPO})

        assert response.status_code == 200
        record = (await store.list_recent())[0]
        assert record.status == S.SUCCESS
        assert retrieval.snapshots == ["abc123"]

    async def test_other_branch_is_ignored(self, client, store):
        response = await deliver(client, "new_commit", new_commit(branch="feature/x"))

        assert response.status_code == 200
        assert "Ignoring push to branch feature/x" in response.json()["message"]
        assert await store.list_recent() == []

    async def test_auto_deploy_disabled(self, client, store, config, monkeypatch):
        monkeypatch.setattr(config, "AUTO_DEPLOY_ENABLED", False)

        response = await deliver(client, "new_commit", new_commit())

        assert response.status_code == 200
        assert await store.list_recent() == []

    async def test_unknown_artifact_is_not_found(self, client):
        response = await deliver(client, "artifact_ready", artifact_ready(deploymentId="nope", commitSha="zzz"))

        assert response.status_code == 404
        assert response.json()["error"] == "deployment_not_found"

    async def test_artifact_without_descriptor(self, client):
        response = await deliver(client, "artifact_ready", {"deploymentId": "relay-42", "repoFullName": REPO})

        assert response.status_code == 400


class TestDirectProviderFlow:
    def push(self, sha="def456", ref="refs/heads/main"):
        return {
            "ref": ref,
            "head_commit": {
                "id": sha,
                "message": "Update footer",
                "timestamp": "2026-10-01T12:00:00Z",
                "author": {"name": "dev"},
            },
            "repository": {"full_name": REPO},
        }

    async def test_push_triggers_build(self, client, store, retrieval):
        response = await deliver(client, "push", self.push(), relay=False)

        assert response.status_code == 200
        record = await store.get(response.json()["deployment_id"])
        assert record.status == S.BUILDING
        assert record.correlation_id == "remote-123"
        assert retrieval.triggered == ["def456"]

    async def test_duplicate_push_is_acknowledged(self, client, store):
        await deliver(client, "push", self.push(), relay=False)

        response = await deliver(client, "push", self.push(), relay=False)

        assert response.json()["message"] == "Deployment already in progress for this commit."
        assert len(await store.list_recent()) == 1

    async def test_push_to_other_branch(self, client, store):
        response = await deliver(client, "push", self.push(ref="refs/heads/develop"), relay=False)

        assert response.status_code == 200
        assert await store.list_recent() == []

    async def test_completed_run_deploys(self, client, store, retrieval):
        started = await deliver(client, "push", self.push(), relay=False)
        retrieval.artifacts[3001] = [ArtifactRef(id="88", name="site-theme", size=100)]

        response = await deliver(client, "workflow_run", {
            "action": "completed",
            "workflow_run": {
                "id": 3001,
                "head_sha": "def456",
                "conclusion": "success",
                "html_url": "https://ci.example.com/runs/3001",
            },
            "repository": {"full_name": REPO},
        }, relay=False)

        assert response.status_code == 200
        record = await store.get(started.json()["deployment_id"])
        assert record.status == S.SUCCESS
        assert record.workflow_run_id == 3001
        assert record.artifact_id == "88"

    async def test_in_progress_run_is_ignored(self, client):
        response = await deliver(client, "workflow_run", {
            "action": "in_progress",
            "workflow_run": {"id": 3001},
            "repository": {"full_name": REPO},
        }, relay=False)

        assert response.status_code == 200
        assert "ignored" in response.json()["message"]

    async def test_ping(self, client):
        response = await deliver(client, "ping", {"zen": "Design for failure."}, relay=False)

        assert response.status_code == 200
        assert response.json()["message"] == "Webhook ping received successfully!"


class TestWebhookRejections:
    async def test_bad_signature(self, client, store):
        response = await deliver(client, "new_commit", new_commit(), secret="wrong-secret")

        assert response.status_code == 401
        assert response.json()["success"] is False
        assert await store.list_recent() == []

    async def test_no_secret_configured(self, client, config, monkeypatch):
        monkeypatch.setattr(config, "WEBHOOK_SECRET", None)

        response = await deliver(client, "ping", {})

        assert response.status_code == 401

    async def test_empty_body(self, client):
        response = await client.post(
            "/api/webhooks/deploy", content=b"", headers={"X-DeployHook-Event": "ping"}
        )

        assert response.status_code == 400

    async def test_unsupported_event(self, client):
        response = await deliver(client, "release", {}, relay=False)

        assert response.status_code == 400
        assert response.json()["message"] == "Unsupported event type: release"

    async def test_repository_mismatch(self, client, store):
        response = await deliver(client, "new_commit", new_commit(repoFullName="evil/fork"))

        assert response.status_code == 403
        assert response.json()["error"] == "repository_mismatch"
        assert await store.list_recent() == []

    async def test_missing_identity_allowed(self, client, store):
        payload = new_commit()
        del payload["repoFullName"]

        response = await deliver(client, "new_commit", payload)

        assert response.status_code == 200
        assert len(await store.list_recent()) == 1

    async def test_missing_identity_refused_when_required(self, client, store, config, monkeypatch):
        monkeypatch.setattr(config, "REQUIRE_REPOSITORY_IDENTITY", True)
        payload = new_commit()
        del payload["repoFullName"]

        response = await deliver(client, "new_commit", payload)

        assert response.status_code == 403
        assert await store.list_recent() == []

    async def test_non_numeric_run_id_is_malformed(self, client, store):
        await deliver(client, "new_commit", new_commit())

        response = await deliver(
            client, "workflow_running", {"deploymentId": "relay-42", "workflowRunId": "run-abc"}
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid workflowRunId: expected a number"
        record = (await store.list_recent())[0]
        assert record.workflow_run_id is None

    async def test_non_numeric_artifact_size_is_malformed(self, client, store):
        await deliver(client, "new_commit", new_commit())
        payload = artifact_ready()
        payload["artifact"]["sizeInBytes"] = "2kb"

        response = await deliver(client, "artifact_ready", payload)

        assert response.status_code == 400
        assert response.json()["error"] == "malformed_event"
        record = (await store.list_recent())[0]
        assert record.artifact_id is None

    async def test_non_numeric_provider_run_id_is_malformed(self, client):
        response = await deliver(
            client,
            "workflow_run",
            {"action": "completed", "workflow_run": {"id": "run-abc", "conclusion": "success"},
             "repository": {"full_name": REPO}},
            relay=False,
        )

        assert response.status_code == 400


class TestDeploymentsApi:
    async def test_requires_token(self, client):
        response = await client.get("/api/deployments")

        assert response.status_code in (401, 403)

    async def test_requires_admin_role(self, client):
        token = JWTService().create_token("user-2", "viewer", "viewer@example.com")

        response = await client.get("/api/deployments", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403

    async def test_rejects_bad_token(self, client):
        response = await client.get("/api/deployments", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401

    async def test_manual_start_conflict(self, client, admin_headers):
        first = await client.post("/api/deployments", json={"commit_hash": "abc123"}, headers=admin_headers)
        assert first.status_code == 202
        first_id = first.json()["deployment"]["id"]
        assert first.json()["deployment"]["status"] == "building"
        assert first.json()["deployment"]["triggered_by"] == "ops@example.com"

        second = await client.post("/api/deployments", json={"commit_hash": "def456"}, headers=admin_headers)

        assert second.status_code == 409
        assert second.json()["detail"]["blocking_deployment_id"] == first_id
        listing = await client.get("/api/deployments", headers=admin_headers)
        assert [d["id"] for d in listing.json()["deployments"]] == [first_id]

    async def test_trigger_failure_is_bad_gateway(self, client, retrieval, admin_headers):
        retrieval.trigger_error = "relay offline"

        response = await client.post("/api/deployments", json={"commit_hash": "abc123"}, headers=admin_headers)

        assert response.status_code == 502
        assert response.json()["detail"]["error"] == "remote_trigger_failed"

    async def test_get_and_cancel(self, client, admin_headers):
        started = await client.post("/api/deployments", json={"commit_hash": "abc123"}, headers=admin_headers)
        deployment_id = started.json()["deployment"]["id"]

        fetched = await client.get(f"/api/deployments/{deployment_id}", headers=admin_headers)
        assert fetched.status_code == 200
        assert fetched.json()["commit_hash"] == "abc123"

        cancelled = await client.post(f"/api/deployments/{deployment_id}/cancel", headers=admin_headers)
        assert cancelled.status_code == 200
        assert cancelled.json()["deployment"]["status"] == "cancelled"

        again = await client.post(f"/api/deployments/{deployment_id}/cancel", headers=admin_headers)
        assert again.status_code == 409

    async def test_unknown_deployment(self, client, admin_headers):
        response = await client.get("/api/deployments/missing", headers=admin_headers)

        assert response.status_code == 404

    async def test_approve(self, client, store, config, monkeypatch, admin_headers):
        monkeypatch.setattr(config, "REQUIRE_MANUAL_APPROVAL", True)
        created = await deliver(client, "new_commit", new_commit())
        deployment_id = created.json()["deployment_id"]
        assert (await store.get(deployment_id)).status == S.PENDING

        response = await client.post(f"/api/deployments/{deployment_id}/approve", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["deployment"]["status"] == "building"
        assert response.json()["deployment"]["trigger_type"] == "manual"

    async def test_rollback(self, client, store, admin_headers, live_site):
        await deliver(client, "new_commit", new_commit())
        await deliver(client, "artifact_ready", artifact_ready())
        deployment_id = (await store.list_recent())[0].id

        response = await client.post(f"/api/deployments/{deployment_id}/rollback", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["deployment"]["status"] == "rolled_back"
        assert os.listdir(live_site) == ["old.css"]

    async def test_poll(self, client, store, retrieval, admin_headers):
        deployment = await store.insert(commit_hash="abc123", status=S.BUILDING, workflow_run_id=501)
        retrieval.statuses[501] = RunStatus(id=501, status="completed", conclusion="failure")

        response = await client.post("/api/deployments/poll", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["failed"] == 1
        assert (await store.get(deployment.id)).status == S.FAILED


class TestOperationalEndpoints:
    async def test_webhook_status(self, client, admin_headers):
        response = await client.get("/api/webhooks/status", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["configured"] is True
        assert body["length"] == len(SECRET)
        assert body["repository"] == REPO
        assert SECRET not in response.text

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.json()["status"] == "healthy"

    async def test_metrics(self, client):
        await deliver(client, "ping", {})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_events_total" in response.text
