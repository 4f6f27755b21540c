"""
Signaling Service - Main Application
Pairs waiting clients and relays their WebRTC negotiation messages
"""
import logging
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from signaling_service import config
from signaling_service.api_endpoints import api_stats, health, read_root
from signaling_service.client_websocket import websocket_client_session
from signaling_service.models import ServiceState


def create_app(state: Optional[ServiceState] = None, allowed_origins: Optional[List[str]] = None) -> FastAPI:
    state = state if state is not None else ServiceState()
    allowed_origins = allowed_origins if allowed_origins is not None else config.ALLOWED_ORIGINS

    app = FastAPI(title="Signaling Service")
    app.state.signaling = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Register HTTP endpoints
    app.get("/")(read_root)
    app.get("/health")(health)
    app.get("/api/stats")(api_stats)

    @app.websocket("/ws")
    async def ws_client(websocket: WebSocket):
        await websocket_client_session(websocket, state, allowed_origins)

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
    logging.getLogger(__name__).info(f"Signaling server listening on port {config.PORT}")
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())
