"""roomchat backend application.

Real-time room chat: clients authenticate with a JWT, join public or
private rooms, exchange persisted messages and see typing indicators.

Modules:
    - chat: WebSocket endpoint, room broadcast router and room REST API
    - policy: room access policy
    - storage: DuckDB persistence gateway
    - auth: bearer-token verification
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from roomchat.auth.service import IdentityVerifier
from roomchat.chat.broadcast import RoomBroadcastRouter
from roomchat.chat.registry import SessionRegistry
from roomchat.chat.rooms_router import router as rooms_router
from roomchat.chat.router import router as chat_router
from roomchat.config import AppConfig, get_config
from roomchat.errors import ChatError
from roomchat.policy.access import AccessPolicy
from roomchat.storage.service import ChatStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Per-request access lines drown out the [WS] / [Chat] logs
for _noisy in ("uvicorn.access", "multipart"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Explicit configuration; defaults to ``get_config()``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the store and wire the chat core for the app's lifetime."""
        cfg = config or get_config()

        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in roomchat.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, cfg.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", cfg.logging.level.upper())

        ChatStore.reset_instance()
        store = ChatStore.get_instance(db_path=cfg.database.path)
        registry = SessionRegistry()
        app.state.config = cfg
        app.state.store = store
        app.state.verifier = IdentityVerifier.from_config(cfg)
        app.state.broadcaster = RoomBroadcastRouter(
            store=store,
            registry=registry,
            policy=AccessPolicy(),
            settings=cfg.chat,
        )
        logger.info(
            f"Chat server running on http://{cfg.server.host}:{cfg.server.port}"
        )

        yield  # Application runs here

        # Shutdown
        await app.state.broadcaster.shutdown()
        ChatStore.reset_instance()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="roomchat API",
        description="Real-time room chat with persisted history",
        version="0.1.0",
        lifespan=lifespan,
    )

    origins = (config or get_config()).server.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    app.include_router(chat_router)
    app.include_router(rooms_router)

    @app.get("/")
    async def root() -> dict:
        return {"message": "Chat API is running!"}

    @app.get("/api")
    async def api_root() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"message": "Chat API is running!", "status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _cfg = get_config()
    uvicorn.run(
        "roomchat.main:app",
        host=_cfg.server.host,
        port=_cfg.server.port,
        reload=_cfg.server.reload,
    )
