"""
FastAPI application initialization

Read-only status API for operators. The worker itself runs as a separate
process (scripts/run_worker.py).
"""

from fastapi import FastAPI
from api.routes import health, imports, stats
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Apple Health Import Worker API",
    description="Queue and metric status for the Apple Health import worker",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)


# Include routers
app.include_router(health.router)
app.include_router(imports.router)
app.include_router(stats.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Apple Health Import Worker API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Apple Health Import Worker API")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Apple Health Import Worker API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "imports": "/imports/{import_id}",
            "stats": "/stats"
        }
    }
