"""
Deployment model and its state machine.

A deployment record moves forward through the statuses below. Only one
record per site may hold an active status at a time; the orchestrator
enforces this with a pre-check plus the processing lock.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, BigInteger, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from deployhook.models.base import Base, TimestampMixin


class DeploymentStatus(str, enum.Enum):
    """Deployment status enum."""
    PENDING = "pending"
    BUILDING = "building"
    QUEUED = "queued"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


class TriggerType(str, enum.Enum):
    """What started the deployment."""
    MANUAL = "manual"
    WEBHOOK = "webhook"
    AUTO = "auto"


class DeploymentMethod(str, enum.Enum):
    """How the deployable bundle is obtained."""
    CI_ARTIFACT = "ci_artifact"
    DIRECT_SNAPSHOT = "direct_snapshot"


ACTIVE_STATUSES = frozenset({
    DeploymentStatus.PENDING,
    DeploymentStatus.BUILDING,
    DeploymentStatus.QUEUED,
    DeploymentStatus.DEPLOYING,
})

TERMINAL_STATUSES = frozenset({
    DeploymentStatus.SUCCESS,
    DeploymentStatus.FAILED,
    DeploymentStatus.CANCELLED,
    DeploymentStatus.ROLLED_BACK,
})

# Forward-only. pending -> queued covers an artifact notification that
# overtakes the "workflow running" one; pending -> deploying is the
# direct-snapshot path which never builds.
ALLOWED_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset({
        DeploymentStatus.BUILDING,
        DeploymentStatus.QUEUED,
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.FAILED,
        DeploymentStatus.CANCELLED,
    }),
    DeploymentStatus.BUILDING: frozenset({
        DeploymentStatus.QUEUED,
        DeploymentStatus.FAILED,
        DeploymentStatus.CANCELLED,
    }),
    DeploymentStatus.QUEUED: frozenset({
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.FAILED,
    }),
    DeploymentStatus.DEPLOYING: frozenset({
        DeploymentStatus.SUCCESS,
        DeploymentStatus.FAILED,
    }),
    DeploymentStatus.SUCCESS: frozenset({
        DeploymentStatus.ROLLED_BACK,
    }),
    DeploymentStatus.FAILED: frozenset(),
    DeploymentStatus.CANCELLED: frozenset(),
    DeploymentStatus.ROLLED_BACK: frozenset(),
}


def can_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    """Check a single edge of the transition table."""
    return target in ALLOWED_TRANSITIONS.get(DeploymentStatus(current), frozenset())


def sources_for(target: DeploymentStatus) -> frozenset[DeploymentStatus]:
    """All statuses from which ``target`` can be reached."""
    return frozenset(
        status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


class Deployment(Base, TimestampMixin):
    """
    Deployment record.

    Created on a new commit or a manual trigger, bound to the remote build
    through ``correlation_id`` / ``workflow_run_id``.
    """
    __tablename__ = "deployments"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    site_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True, default="default")

    commit_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    commit_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    commit_author: Mapped[str | None] = mapped_column(String(255), nullable=True)
    commit_date: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[DeploymentStatus] = mapped_column(
        SQLEnum(DeploymentStatus, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DeploymentStatus.PENDING,
        index=True
    )
    trigger_type: Mapped[TriggerType] = mapped_column(
        SQLEnum(TriggerType, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TriggerType.MANUAL
    )
    triggered_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deployment_method: Mapped[DeploymentMethod] = mapped_column(
        SQLEnum(DeploymentMethod, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DeploymentMethod.CI_ARTIFACT
    )

    correlation_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    workflow_run_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    build_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    artifact_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    artifact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    artifact_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    artifact_download_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    backup_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    file_manifest: Mapped[str | None] = mapped_column(Text, nullable=True)
    deployment_logs: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_point: Mapped[str | None] = mapped_column(String(50), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    deployed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def has_artifact(self) -> bool:
        return bool(self.artifact_id or self.artifact_download_url)

    def __repr__(self):
        return f"<Deployment(id={self.id}, commit={self.commit_hash[:7]}, status={self.status})>"
