"""Quorum Backend Application.

This is the main entry point for the Quorum group-chat backend.

Modules:
    - chat: Connection registry, room fan-out, message ingest, WebSocket/HTTP API
    - store: Durable message stores (in-memory, MongoDB)
    - membership: Group membership resolution
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from quorum.chat.router import router as chat_router
from quorum.chat.service import build_chat_service
from quorum.config import AppSettings, get_config
from quorum.membership import MembershipService
from quorum.store import MessageStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# pymongo logs every server heartbeat and pool checkout; httpx/httpcore and
# websockets log each request and frame in the client.
for _noisy in (
    "pymongo",
    "motor",
    "httpx",
    "httpcore",
    "websockets",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppSettings = app.state.config

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in quorum.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = app.state.chat.store
    await store.ensure_ready()
    logger.info(f"Message store ready: {store.name}")

    yield  # Application runs here

    # Shutdown
    await store.close()
    logger.info("Application shutdown complete")


def create_app(
    config: Optional[AppSettings] = None,
    store: Optional[MessageStore] = None,
    membership: Optional[MembershipService] = None,
) -> FastAPI:
    """Build the FastAPI application with its own chat components.

    Components are created here rather than in the lifespan so that test
    clients used without a ``with`` block still get a working app.
    """
    config = config or get_config()

    app = FastAPI(
        title="Quorum API",
        description="Backend service for Quorum - realtime group chat",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.chat = build_chat_service(config, store=store, membership=membership)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object with the active store backend.
        """
        return {"status": "ok", "store": app.state.chat.store.name}

    return app


app = create_app()
