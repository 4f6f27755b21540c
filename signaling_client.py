import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from signaling_protocol import CONNECTED, decode_message, encode_message

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnect"

EventHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class SignalingClient:
    """Named-event connection to the signaling service.

    Inbound frames are handed to ``handler(event, fields)`` one at a time, in
    arrival order. Outbound events go through a queue drained by a single
    writer so they leave in the order ``emit`` was called. When the socket
    drops, ``handler("disconnect", {})`` runs and the client reconnects after
    ``reconnect_delay`` seconds with a fresh client id.
    """

    def __init__(self, url: str, handler: EventHandler, reconnect_delay: float = 3.0):
        self.url = url
        self.handler = handler
        self.reconnect_delay = reconnect_delay
        self.client_id: Optional[str] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._stop = False
        self._ws = None

    @property
    def connected(self) -> bool:
        return self._outbound is not None

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        if self._outbound is None:
            logger.warning(f"Signaling: Not connected, dropping outbound '{event}'.")
            return False
        self._outbound.put_nowait(encode_message(event, payload))
        return True

    async def _writer(self, ws, outbound: asyncio.Queue) -> None:
        while True:
            frame = await outbound.get()
            await ws.send(frame)

    async def _serve_connection(self, ws) -> None:
        outbound: asyncio.Queue = asyncio.Queue()
        self._outbound = outbound
        writer_task = asyncio.create_task(self._writer(ws, outbound))
        try:
            async for raw in ws:
                try:
                    event, fields = decode_message(raw)
                except ValueError as e:
                    logger.warning(f"Signaling: Ignoring malformed frame from server: {e}")
                    continue
                if event == CONNECTED:
                    self.client_id = fields.get("clientId")
                    logger.info(f"Signaling: Connected with client id '{self.client_id}'.")
                await self.handler(event, fields)
        finally:
            self._outbound = None
            writer_task.cancel()
            try:
                await writer_task
            except asyncio.CancelledError:
                pass
            except websockets.exceptions.ConnectionClosed:
                pass

    async def run(self) -> None:
        ping_interval = float(os.environ.get("PING_INTERVAL_SEC", "25"))
        ping_timeout = float(os.environ.get("PING_TIMEOUT_SEC", "25"))
        while not self._stop:
            try:
                async with websockets.connect(self.url, ping_interval=ping_interval,
                                              ping_timeout=ping_timeout) as ws:
                    self._ws = ws
                    logger.info(f"Signaling: Connected to {self.url}")
                    await self._serve_connection(ws)
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(f"Signaling: Connection closed: {e}")
            except websockets.exceptions.WebSocketException as e:
                logger.warning(f"Signaling: WebSocket error: {type(e).__name__} - {e}")
            except OSError as e:
                logger.warning(f"Signaling: Could not reach {self.url}: {e}")
            finally:
                had_id = self.client_id is not None
                self._ws = None
                self.client_id = None
                if had_id:
                    await self.handler(DISCONNECTED, {})
            if not self._stop:
                await asyncio.sleep(self.reconnect_delay)

    async def close(self) -> None:
        self._stop = True
        if self._ws is not None:
            await self._ws.close()
