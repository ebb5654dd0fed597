"""
deployhook - webhook-driven theme deployments

FastAPI application entry point.
"""
from fastapi import FastAPI

# Import observability modules
from deployhook.config import settings
from deployhook.logging_config import configure_logging
from deployhook.sentry_config import configure_sentry
from deployhook.middleware.logging import LoggingMiddleware
from deployhook.routes.metrics import router as metrics_router

# Import route modules
from deployhook.routes.webhooks import router as webhooks_router
from deployhook.routes.deployments import router as deployments_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Deploys CI-built themes to a live site from signed webhook events",
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include webhook routes
app.include_router(webhooks_router)

# Include manual action routes
app.include_router(deployments_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "site_id": settings.SITE_ID,
        "webhook_secret_configured": bool(settings.WEBHOOK_SECRET),
    }
