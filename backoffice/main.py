from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from backoffice.config import settings
from backoffice.api.v1.router import api_router
from backoffice.core.exceptions import BackofficeError
from backoffice.database import create_engine, create_session_factory
from backoffice.db_types import utcnow
from backoffice.services.notification_service import NotificationService
from backoffice.services.payment_gateway import MidtransGateway


logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create the database engine and session factory (unless already provided)
    - Create the payment gateway client and notifier

    Schema is managed by Alembic; run ``alembic upgrade head`` before starting.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")

    owns_engine = getattr(app.state, "session_factory", None) is None
    if owns_engine:
        app.state.engine = create_engine()
        app.state.session_factory = create_session_factory(app.state.engine)
    if getattr(app.state, "payment_gateway", None) is None:
        app.state.payment_gateway = MidtransGateway()
    if getattr(app.state, "notifier", None) is None:
        app.state.notifier = NotificationService()

    yield

    # Shutdown
    if owns_engine:
        await app.state.engine.dispose()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Orders", "description": "Order placement, status tracking, and fulfillment"},
    {"name": "Payments", "description": "Midtrans payment notifications and status sync"},
    {"name": "Returns", "description": "Return requests, inspection, and refunds"},
    {"name": "Return Policies", "description": "Product, category, and global return rules"},
    {"name": "Health", "description": "Service health"},
]


async def backoffice_error_handler(request: Request, exc: BackofficeError):
    """Domain errors carry their own status code and a stable ``type``."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "type": type(exc).__name__,
            "details": exc.details,
            "retryable": exc.retryable,
            "path": str(request.url.path),
            "method": request.method,
        },
    )


async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    content = {
        "error": str(exc) if settings.DEBUG else "Internal server error",
        "type": type(exc).__name__,
        "path": str(request.url.path),
        "method": request.method,
    }
    return JSONResponse(status_code=500, content=content)


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Order placement and returns lifecycle back office",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=OPENAPI_TAGS,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BackofficeError, backoffice_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # Include API router
    app.include_router(api_router)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint with database validation."""
        health_status = {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "timestamp": utcnow().isoformat(),
            "checks": {
                "database": "unknown"
            }
        }

        try:
            async with request.app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
                health_status["checks"]["database"] = "connected"
        except Exception as e:
            health_status["status"] = "unhealthy"
            health_status["checks"]["database"] = f"error: {str(e)}"

        # Return 503 if unhealthy
        if health_status["status"] == "unhealthy":
            return JSONResponse(status_code=503, content=health_status)

        return health_status

    return app


app = create_app()
