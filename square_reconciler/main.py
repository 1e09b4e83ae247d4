"""
FastAPI application entry point.
Initializes the FastAPI app, configures logging, and includes webhook and sync routes.
"""

import structlog
from fastapi import FastAPI

from square_reconciler.config import settings
from square_reconciler.routers import sync, webhooks
from square_reconciler.utils.logger import configure_logging

# Configure logging first
configure_logging()
logger = structlog.get_logger()

app = FastAPI(
    title="Square Reconciler",
    description="Square webhook validation plus payment and catalog reconciliation",
    version="1.0.0",
)

app.include_router(webhooks.router)
app.include_router(sync.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    logger.info(
        "Square Reconciler started",
        environment=settings.app_environment,
        square_sandbox=settings.use_square_sandbox,
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event."""
    await webhooks.close_dedup_store()
    logger.info("Square Reconciler shutting down")


@app.get("/")
async def root():
    """Root endpoint - also serves as a simple health check."""
    return {
        "status": "healthy",
        "service": "Square Reconciler",
        "version": "1.0.0",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "environment": settings.app_environment}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("square_reconciler.main:app", host="0.0.0.0", port=8000, reload=True)
