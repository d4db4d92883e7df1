"""Murmur Backend Application.

This is the main entry point for the Murmur messaging service: the realtime
core of a social feed, carrying direct messages and group chat between
signed-in users.

Modules:
    - realtime: WebSocket endpoint, rooms and the session manager
    - messages: HTTP history, send, edit, delete and group creation
    - groups: group member listing
    - messaging: DuckDB persistence, membership lookups, error taxonomy
    - auth: bearer token verification
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_config
from app.groups.router import router as groups_router
from app.messages.router import router as messages_router
from app.messaging.errors import MessagingError
from app.realtime.router import router as realtime_router
from app.services import build_services, get_services, set_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn.access logs every HTTP request and WebSocket upgrade.
for _noisy in ("uvicorn.access", "httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in murmur.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    # Tests install services against an in-memory database before startup.
    owns_services = get_services() is None
    if owns_services:
        set_services(build_services(config))
        logger.info(
            "Messaging services ready: database=%s pool_size=%d",
            config.database.path,
            config.database.pool_size,
        )

    yield  # Application runs here

    # Shutdown
    if owns_services:
        services = get_services()
        set_services(None)
        if services is not None:
            services.close()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Murmur API",
    description="Realtime direct and group messaging",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Map messaging errors onto HTTP status codes."""
    if exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__}: {exc.public_message} - Path: {request.url.path}")
    else:
        logger.info(f"{exc.__class__.__name__}: {exc.public_message} - Path: {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.public_message, "type": exc.__class__.__name__},
    )


# Register all routers
app.include_router(realtime_router)
app.include_router(messages_router)
app.include_router(groups_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
