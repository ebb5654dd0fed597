"""
Prometheus metrics endpoint.

Exposes deployment pipeline metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Deployment Metrics
# ============================================

deployments_started = Counter(
    'deployments_started_total',
    'Total deployments started',
    ['site_id', 'trigger_type', 'method']
)

deployments_finished = Counter(
    'deployments_finished_total',
    'Total deployments reaching a terminal status',
    ['site_id', 'status']
)

deployment_lock_contention = Counter(
    'deployment_lock_contention_total',
    'Processing attempts rescheduled because the site lock was held',
    ['site_id']
)

# ============================================
# Webhook Metrics
# ============================================

webhook_events = Counter(
    'webhook_events_total',
    'Inbound webhook events by type and outcome',
    ['event', 'outcome']
)

webhook_identity_missing = Counter(
    'webhook_repository_identity_missing_total',
    'Deployment-triggering events that carried no repository identity',
    ['event']
)

upstream_reports_failed = Counter(
    'upstream_reports_failed_total',
    'Outcome reports the relay did not acknowledge',
    ['site_id']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_deployment_started(site_id: str, trigger_type: str, method: str):
    """Record a new deployment record."""
    deployments_started.labels(site_id=site_id, trigger_type=trigger_type, method=method).inc()


def track_deployment_finished(site_id: str, status: str):
    """Record a deployment reaching success, failed, cancelled or rolled_back."""
    deployments_finished.labels(site_id=site_id, status=status).inc()


def track_lock_contention(site_id: str):
    deployment_lock_contention.labels(site_id=site_id).inc()


def track_webhook_event(event: str, outcome: str):
    """Record an inbound webhook and how it was handled."""
    webhook_events.labels(event=event, outcome=outcome).inc()


def track_identity_missing(event: str):
    webhook_identity_missing.labels(event=event).inc()


def track_report_failed(site_id: str):
    upstream_reports_failed.labels(site_id=site_id).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
