"""
WebSocket handler for client connections
"""
import logging
import uuid
from typing import List

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from signaling_protocol import (
    CONNECTED, ERROR, HANGUP, JOIN_WAITING_POOL, LEAVE_WAITING_POOL, SIGNAL, decode_message,
)
from signaling_service.broadcast import emit_to_client
from signaling_service.config import origin_allowed
from signaling_service.models import ClientRecord, HangupRequest, JoinRequest, ServiceState, SignalRequest
from signaling_service.pairing import join_waiting_pool, leave
from signaling_service.relay import relay_signal

logger = logging.getLogger(__name__)


async def handle_client_event(state: ServiceState, client_id: str, event: str, message: dict) -> None:
    if event == JOIN_WAITING_POOL:
        JoinRequest.model_validate(message)
        await join_waiting_pool(state, client_id)

    elif event == SIGNAL:
        request = SignalRequest.model_validate(message)
        await relay_signal(state, client_id, request.signalData, request.partnerId)

    elif event in (HANGUP, LEAVE_WAITING_POOL):
        if event == HANGUP:
            HangupRequest.model_validate(message)
        await leave(state, client_id)

    else:
        logger.warning(f"Client '{client_id}' sent unhandled event type: {event}")
        await emit_to_client(state, client_id, ERROR, {"message": f"Unknown event '{event}'"})


async def websocket_client_session(websocket: WebSocket, state: ServiceState, allowed_origins: List[str]):
    """Serve one client connection from accept to disconnect.

    ``leave`` runs exactly once when the connection ends, however it ends.
    """
    origin = websocket.headers.get("origin")
    if not origin_allowed(origin, allowed_origins):
        logger.warning(f"Rejecting WebSocket from disallowed origin: {origin}")
        await websocket.close(code=1008, reason="Origin not allowed")
        return

    await websocket.accept()
    client_id = uuid.uuid4().hex
    client_host = websocket.client.host if websocket.client else None
    client_port = websocket.client.port if websocket.client else None

    async with state.lock:
        state.clients[client_id] = ClientRecord(
            client_id=client_id,
            websocket=websocket,
            remote_host=client_host,
            remote_port=client_port,
        )
    logger.info(f"Client '{client_id}' connected from {client_host}:{client_port}. Total: {len(state.clients)}")

    try:
        await emit_to_client(state, client_id, CONNECTED, {"clientId": client_id})
        while True:
            raw_data = await websocket.receive_text()
            try:
                event, message = decode_message(raw_data)
                await handle_client_event(state, client_id, event, message)
            except ValidationError as e:
                logger.info(f"Client '{client_id}' sent an invalid '{event}' event: {e.error_count()} error(s)")
                await emit_to_client(state, client_id, ERROR, {"message": f"Invalid '{event}' payload"})
            except ValueError as e:
                # json.JSONDecodeError is a ValueError too
                logger.info(f"Client '{client_id}' sent a malformed frame: {e}")
                await emit_to_client(state, client_id, ERROR, {"message": "Malformed message"})

    except WebSocketDisconnect:
        logger.info(f"Client '{client_id}' disconnected.")
    except Exception as e:
        logger.exception(f"Error with client '{client_id}' WebSocket: {e}")
    finally:
        await leave(state, client_id)
        async with state.lock:
            state.clients.pop(client_id, None)
        logger.info(f"Client '{client_id}' de-registered. Total: {len(state.clients)}")
