"""
Domain errors for the deployment pipeline.

Ingress errors are turned into HTTP responses by the routes. Processing
errors carry a failure_point tag and a diagnostic context bundle that is
persisted and reported upstream.
"""
import os
import shutil
from typing import Any


class DeploymentError(Exception):
    """Base class for all domain errors."""

    code = "deployment_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


# Ingress

class AuthenticationError(DeploymentError):
    code = "authentication_failed"
    status_code = 401


class IdentityMismatch(DeploymentError):
    code = "repository_mismatch"
    status_code = 403


class MalformedEvent(DeploymentError):
    code = "malformed_event"
    status_code = 400


class CorrelationNotFound(DeploymentError):
    code = "deployment_not_found"
    status_code = 404


# State machine

class NotFound(DeploymentError):
    code = "not_found"
    status_code = 404


class ConflictError(DeploymentError):
    """An active deployment blocks a manual start."""

    code = "deployment_in_progress"
    status_code = 409

    def __init__(self, message: str, blocking_deployment=None):
        super().__init__(message)
        self.blocking_deployment = blocking_deployment

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.blocking_deployment is not None:
            data["blocking_deployment_id"] = self.blocking_deployment.id
            data["blocking_status"] = self.blocking_deployment.status.value
        return data


class InvalidTransition(DeploymentError):
    code = "invalid_transition"
    status_code = 409


class RemoteTriggerError(DeploymentError):
    code = "remote_trigger_failed"
    status_code = 502


class RemoteBuildFailure(DeploymentError):
    code = "remote_build_failed"
    status_code = 502


# Processing (terminal failures tagged with a failure_point)

class ProcessingError(DeploymentError):
    failure_point = "processing"
    status_code = 500


class ArtifactNotFound(ProcessingError):
    code = "artifact_not_found"
    failure_point = "resolve_artifact"


class ArtifactDownloadError(ProcessingError):
    code = "artifact_download_failed"
    failure_point = "download"


class ArchiveOpenError(ProcessingError):
    code = "archive_open_failed"
    failure_point = "open_archive"


class ArchiveExtractError(ProcessingError):
    code = "archive_extract_failed"
    failure_point = "extract"


class CopyError(ProcessingError):
    code = "copy_failed"
    failure_point = "copy"


class BackupError(ProcessingError):
    code = "backup_failed"
    failure_point = "backup"


def file_diagnostics(*paths: str) -> dict:
    """Existence/size of the given paths plus free disk space of the first one."""
    bundle: dict[str, Any] = {}
    disk_free = None
    for path in paths:
        if not path:
            continue
        exists = os.path.exists(path)
        bundle[path] = {
            "exists": exists,
            "size": os.path.getsize(path) if exists and os.path.isfile(path) else None,
        }
    probe = next((p for p in paths if p), None)
    if probe:
        directory = probe if os.path.isdir(probe) else os.path.dirname(probe) or "."
        while directory and not os.path.exists(directory):
            parent = os.path.dirname(directory)
            if parent == directory:
                break
            directory = parent
        try:
            disk_free = shutil.disk_usage(directory).free
        except OSError:
            disk_free = None
    return {"files": bundle, "disk_free_bytes": disk_free}
