"""
Ticketflow - FastAPI application

Builds the HTTP app around the process-wide WorkflowEngine. The lifespan
warms the definition store and runs the automation scheduler.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

from .config.settings import settings
from .api.routes import api_router
from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .engine.engine import get_engine, set_engine
from .repositories.mongo_client import create_indexes, close_connection, health_check
from .scheduler.automation_scheduler import scheduler_running, start_scheduler, stop_scheduler
from .utils.logger import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

APP_NAME = "Ticketflow Workflow Engine"
APP_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: indexes, definition warm-up, scheduler.
    Shutdown: scheduler, action worker pool, Mongo client.

    Index or warm-up failures are logged and the app still starts; the
    store loads definitions lazily on first lookup.
    """
    logger.info(f"Starting {APP_NAME} ({settings.environment})")

    try:
        create_indexes()
    except PyMongoError as e:
        logger.error(f"Failed to create indexes: {e}")

    engine = get_engine()
    try:
        loaded = engine.definition_store.load_all()
        logger.info(f"Loaded {loaded} workflow definitions")
    except PyMongoError as e:
        logger.error(f"Failed to load workflow definitions: {e}")

    if settings.scheduler_enabled:
        start_scheduler()

    yield

    stop_scheduler()
    engine.shutdown()
    set_engine(None)
    close_connection()
    logger.info(f"{APP_NAME} stopped")


def create_app() -> FastAPI:
    application = FastAPI(
        title=APP_NAME,
        description="Workflow definitions, guarded ticket transitions, post-commit actions and history",
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )

    _configure_middleware(application)
    register_error_handlers(application)
    _configure_routes(application)
    return application


def _configure_middleware(app: FastAPI) -> None:
    # Browsers reject credentials with a wildcard origin
    allow_all = settings.cors_origins.strip() == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins_list,
        allow_credentials=not allow_all,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "X-User-Id", "X-Correlation-Id"],
        expose_headers=["X-Correlation-Id"],
    )
    app.add_middleware(CorrelationIdMiddleware)


def _configure_routes(app: FastAPI) -> None:
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health", tags=["Health"])
    async def health():
        """Mongo connectivity plus engine and scheduler state"""
        mongo = health_check()
        engine = get_engine()
        return {
            "status": "healthy" if mongo.get("status") == "healthy" else "degraded",
            "version": APP_VERSION,
            "environment": settings.environment,
            "mongo": mongo,
            "engine": {
                "workflow_types": len(engine.definition_store.list_definitions()),
                "scheduler_running": scheduler_running(),
            },
        }

    @app.get("/", tags=["Health"])
    async def root():
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "api": "/api/v1",
            "docs": "/api/docs" if settings.debug else None,
        }


app = create_app()
