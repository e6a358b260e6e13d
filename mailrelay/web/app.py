"""
FastAPI Application Factory

Push server for inbox notifications: clients open /ws, send
{"type": "register", "userId": "..."} and then receive inbox_update
envelopes for that user until they disconnect.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from ..dispatch.registry import ConnectionRegistry


logger = logging.getLogger(__name__)


def create_app(registry: Optional[ConnectionRegistry] = None) -> FastAPI:
    """
    Create and configure the push server.

    Args:
        registry: Connection registry shared with the WebSocketSink

    Returns:
        Configured FastAPI app
    """
    registry = registry or ConnectionRegistry()

    app = FastAPI(
        title="Mailbox Notification Relay",
        description="Push channel for disposable mailbox notifications",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.registry = registry

    @app.get("/health")
    async def health_check():
        """Basic health check."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "connections": len(registry),
            "service": "mailrelay",
        }

    @app.websocket("/ws")
    async def push_socket(websocket: WebSocket):
        """Register a socket for a user's inbox updates."""
        await websocket.accept()
        logger.debug("New push connection established")

        try:
            while True:
                data = await websocket.receive_json()
                if not isinstance(data, dict):
                    continue

                if data.get("type") == "register" and data.get("userId"):
                    user_id = str(data["userId"])
                    replaced = registry.register(user_id, websocket)
                    if replaced is not None:
                        logger.info(f"User {user_id} re-registered from a new connection")
                    await websocket.send_json({"type": "registered", "userId": user_id})
                elif data.get("type") == "unregister" and data.get("userId"):
                    registry.unregister(str(data["userId"]), websocket)
                else:
                    logger.debug(f"Ignoring push message: {data.get('type')!r}")
        except WebSocketDisconnect:
            pass
        except (KeyError, ValueError) as e:
            # Binary or non-JSON frame; drop the connection
            logger.warning(f"Malformed push message, closing connection: {e}")
            await websocket.close(code=1003)
        finally:
            registry.unregister_connection(websocket)

    logger.info("FastAPI application created successfully")

    return app


def build_server(app: FastAPI, host: str = "0.0.0.0", port: int = 3001) -> uvicorn.Server:
    """
    uvicorn server that can run inside an existing event loop.

    Usage:
        server = build_server(create_app(registry), port=3001)
        await server.serve()
    """
    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    return uvicorn.Server(config)
