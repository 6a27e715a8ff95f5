"""Main FastAPI application - operational views over the lead pipeline."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Import database and models FIRST so every table is registered
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
from progeodata.database import Base, init_db
from progeodata import models  # noqa: F401

from progeodata.config import settings
from progeodata.routers import pipeline_routes
from progeodata.scheduler import start_scheduler, stop_scheduler
from progeodata.sources import load_providers, load_sources

VERSION = "0.4.0"

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="ProGeoData Pipeline API",
    description="Scrape queue, ICP detection, enrichment and ghost profile publishing",
    version=VERSION,
    redirect_slashes=False
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# ROUTER REGISTRATION
# ============================================

app.include_router(pipeline_routes.router)  # Already has /api/v1/pipeline prefix


# ============================================
# HEALTH & ROOT ENDPOINTS
# ============================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": VERSION,
        "environment": settings.ENVIRONMENT,
        "registered_tables": len(Base.metadata.tables),
        "tables": list(Base.metadata.tables.keys()),
        "policies": {
            "icp": settings.ICP_DETECTOR_VERSION,
            "lead_score": settings.LEAD_SCORE_VERSION,
        },
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "ProGeoData Pipeline API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health"
    }


# ============================================
# STARTUP & SHUTDOWN
# ============================================

@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info("Starting ProGeoData Pipeline API...")
    logger.info("=" * 50)

    init_db()
    logger.info(f"Registered {len(Base.metadata.tables)} SQLAlchemy tables:")
    for table_name in sorted(Base.metadata.tables.keys()):
        logger.info(f"  ✓ {table_name}")
    logger.info("=" * 50)

    if settings.SCHEDULER_ENABLED:
        start_scheduler(
            sources=load_sources(settings.SOURCES_CONFIG_PATH),
            providers=load_providers(settings.PROVIDERS_CONFIG_PATH, settings.GOOGLE_KG_API_KEY)
        )
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    stop_scheduler()
    logger.info("Shutting down ProGeoData Pipeline API...")
