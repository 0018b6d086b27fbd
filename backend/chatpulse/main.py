"""ChatPulse Backend Application.

This is the main entry point for the ChatPulse backend service: a
real-time presence and message relay for one-to-one and group chat.

Modules:
    - auth: registration, login and bearer-token verification
    - session: per-connection websocket state machine
    - presence: connection registry, roster broadcasts, grace-window removal
    - relay: persist-then-deliver messaging, typing signals, receipts
    - files: media upload storage
    - store: DuckDB-backed users, messages and groups
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatpulse.auth.router import router as auth_router
from chatpulse.config import get_config
from chatpulse.files.router import router as files_router
from chatpulse.relay.router import router as relay_router
from chatpulse.runtime import Runtime, set_runtime
from chatpulse.session.router import router as session_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "passlib",
    "multipart",
    "python_multipart",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatpulse.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    runtime = Runtime(config)
    set_runtime(runtime)
    await runtime.start()
    logger.info(
        f"Server running on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    await runtime.shutdown()
    set_runtime(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="ChatPulse API",
    description="Real-time presence and message relay",
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

# Register all routers
app.include_router(session_router)
app.include_router(auth_router)
app.include_router(files_router)
app.include_router(relay_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
