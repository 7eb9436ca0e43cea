"""
FastAPI relay for end-to-end encrypted chat.

This server:
- Binds WebSocket connections to public keys ("register" frames)
- Relays encrypted envelopes to every live connection of the recipient
- Stores nothing: messages to offline keys are dropped
- Never sees plaintext or key material
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect

from .config import RelaySettings
from .registry import Connection, ConnectionRegistry
from .router import Router

logger = logging.getLogger(__name__)


def get_registry(websocket: WebSocket) -> ConnectionRegistry:
    return websocket.app.state.registry


def get_router(websocket: WebSocket) -> Router:
    return websocket.app.state.router


def create_app(settings: Optional[RelaySettings] = None) -> FastAPI:
    """
    Build the relay application.

    Each application owns its registry; it is handed to the endpoints as a
    dependency rather than living in a module global.
    """
    settings = settings or RelaySettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Relay listening on ws://%s:%d/ws", settings.host, settings.port)
        yield
        logger.info("Relay shutting down (%d keys online)", len(app.state.registry.online_keys()))

    app = FastAPI(
        title="Sealed Relay",
        description="Ciphertext-only relay for sender-key encrypted chat",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.registry = ConnectionRegistry()
    app.state.router = Router(app.state.registry)

    @app.get("/api/status")
    async def status():
        """Report how many keys and connections are online"""
        registry: ConnectionRegistry = app.state.registry
        return {
            "online_keys": len(registry.online_keys()),
            "connections": registry.connection_count()
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket,
                                 registry: ConnectionRegistry = Depends(get_registry),
                                 router: Router = Depends(get_router)):
        """
        WebSocket endpoint for relaying envelopes.

        Protocol:
        1. Client sends: {"type": "register", "publicKey": "..."} (any number of times)
        2. Client sends envelopes: {"type": "message", "from": ..., "to": ..., ...}
        3. Server forwards each envelope, unchanged, to the recipients' connections
        """
        await websocket.accept()
        connection = Connection(websocket)
        logger.info("Incoming connection %r", connection)

        try:
            while True:
                raw = await websocket.receive_text()
                await router.handle_frame(connection, raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("WebSocket error on %r", connection)
        finally:
            registry.unregister(connection)

    return app


app = create_app(RelaySettings.from_env())


def main():
    import uvicorn

    settings = RelaySettings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
