"""
Pindrop relay — FastAPI application entry point.

Serves the rendezvous relay on a WebSocket endpoint and a small
status API.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from config import RELAY_HOST, RELAY_PORT, SSL_CERTFILE, SSL_KEYFILE
from relay.service import RendezvousRelay
from relay.websocket import RelayConnectionManager

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(relay: RendezvousRelay | None = None) -> FastAPI:
    """Build the relay application around its own relay state."""
    relay_manager = RelayConnectionManager(relay or RendezvousRelay())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Pindrop relay ready on {RELAY_HOST}:{RELAY_PORT}")
        yield
        logger.info(
            f"Shutting down relay with {relay_manager.relay.session_count()} open session(s)"
        )

    app = FastAPI(
        title="Pindrop Relay",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    init_routes(relay_manager)
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await relay_manager.serve(websocket)

    app.state.relay_manager = relay_manager
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=RELAY_HOST,
        port=RELAY_PORT,
        ssl_certfile=SSL_CERTFILE,
        ssl_keyfile=SSL_KEYFILE,
        log_level="info",
    )
