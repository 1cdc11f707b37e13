"""Breakdown Status Ledger API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.core.config import get_settings
from app.core.logging import configure_logging, logger
from app.routers import ledger, reports
from app.services.wiring import open_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    app.state.ledger_services = open_services(settings.ledger_db_path)
    logger.info(
        "Status ledger API starting",
        version="0.1.0",
        ledger_db_path=str(app.state.ledger_services.database.path),
        app_mode=settings.normalized_app_mode(),
    )
    yield
    # Shutdown
    app.state.ledger_services.close()
    app.state.ledger_services = None
    logger.info("Status ledger API shutting down")


app = FastAPI(
    title="Breakdown Status Ledger API",
    description="Status transitions and dwell-time analytics for vehicle breakdown cases",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(ledger.router)
app.include_router(reports.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Breakdown Status Ledger API",
        "version": "0.1.0",
        "description": "Status transitions and dwell-time analytics for vehicle breakdown cases",
        "endpoints": {
            "ledger": "/ledger",
            "reports": "/reports",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
