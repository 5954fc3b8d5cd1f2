"""Chat room server application.

Main entry point. Each room is served by a single coordinator that owns the
room's message history, presence, moderation settings and self-destructing
message timers.

Modules:
    - room: WebSocket gateway, room coordinators and their components
    - config: YAML configuration
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatroom.config import get_config
from chatroom.room.manager import manager
from chatroom.room.persistence import SnapshotStore
from chatroom.room.router import router as room_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatroom.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    if config.persistence.enabled:
        logger.info("Room snapshots enabled: %s", config.persistence.db_path)
    else:
        logger.info("Room snapshots disabled; rooms are in-memory only")

    yield  # Application runs here

    # Shutdown
    await manager.close_all()
    SnapshotStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chat Room API",
    description="Real-time group chat rooms with moderation, ratings, threads and self-destructing messages",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["GET"],
    allow_headers=["*"],
)

app.include_router(room_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of live rooms.
    """
    return {"status": "ok", "rooms": len(manager.rooms)}
