"""Main FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from recon.config import settings
from recon.database import Base, create_engine, create_session_factory, init_models
from recon.events import EventPublisher
from recon.routers import recon_routes
from recon.scheduler import start_scheduler, stop_scheduler
from recon.services.pipeline_coordinator import create_pipeline_coordinator
from recon.websocket import attach_to_publisher, get_connection_stats, get_socket_app, register_handlers

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: tables, coordinator, workers, scheduler. Shutdown in reverse."""
    logger.info("Starting Recon Pipeline API...")

    engine = create_engine(settings.DATABASE_URL)
    await init_models(engine)
    logger.info(f"Registered {len(Base.metadata.tables)} SQLAlchemy tables")

    publisher = EventPublisher(settings.EVENT_DELIVERY_TIMEOUT_SECONDS)
    attach_to_publisher(publisher)

    coordinator = create_pipeline_coordinator(settings, create_session_factory(engine), publisher)
    register_handlers(coordinator)
    app.state.coordinator = coordinator

    if settings.RUN_WORKERS:
        # Browser launch failure aborts startup
        await coordinator.start()
        start_scheduler(coordinator, settings.RECOVERY_INTERVAL_SECONDS)

    logger.info("Application started successfully!")
    try:
        yield
    finally:
        logger.info("Shutting down Recon Pipeline API...")
        stop_scheduler()
        await coordinator.stop()
        await engine.dispose()


# Create FastAPI app
app = FastAPI(
    title="Recon Pipeline API",
    description="Domain reconnaissance and source enrichment pipeline",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(recon_routes.router)

# Mount WebSocket
socket_app = get_socket_app()
app.mount("/socket.io", socket_app)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    coordinator = getattr(app.state, "coordinator", None)
    return {
        "status": "healthy",
        "version": "1.0.0",
        "workers": bool(coordinator and coordinator.browser_pool.is_running),
        "websocket": get_connection_stats(),
    }
