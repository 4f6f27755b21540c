"""
Delivery of named events to connected clients

Events are queued on the client's record (usually while ``state.lock`` is
held, so the queue order is the order decisions were made) and written out
later by ``flush_client`` once the lock is released. A slow or dead socket
therefore only holds up the task flushing that one client.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

from signaling_protocol import encode_message
from signaling_service.models import ServiceState

logger = logging.getLogger(__name__)


def queue_event(state: ServiceState, client_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
    """Append one event to the client's outbox. Returns False if the client is not connected."""
    record = state.clients.get(client_id)
    if record is None:
        logger.debug(f"Dropping '{event}' for '{client_id}': client not connected.")
        return False
    record.outbox.append(encode_message(event, payload))
    return True


async def flush_client(state: ServiceState, client_id: str) -> bool:
    """Write out everything queued for ``client_id``, oldest first.

    Each send is bounded by ``state.send_timeout``. Nothing is retried: a frame
    that fails or times out is dropped. Returns False if any frame written by
    this call was dropped.
    """
    record = state.clients.get(client_id)
    if record is None:
        return False
    delivered = True
    async with record.send_lock:
        while record.outbox:
            frame = record.outbox.popleft()
            try:
                await asyncio.wait_for(record.websocket.send_text(frame), timeout=state.send_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out sending to client '{client_id}' after {state.send_timeout}s. Frame dropped.")
                delivered = False
            except Exception as e:
                logger.warning(f"Error sending to client '{client_id}': {type(e).__name__} - {e}")
                delivered = False
    return delivered


async def flush_clients(state: ServiceState, client_ids: Iterable[str]) -> None:
    await asyncio.gather(*(flush_client(state, client_id) for client_id in client_ids))


async def emit_to_client(state: ServiceState, client_id: str, event: str,
                         payload: Optional[Dict[str, Any]] = None) -> bool:
    """Queue one event and send it. Returns False if it could not be delivered."""
    if not queue_event(state, client_id, event, payload):
        return False
    return await flush_client(state, client_id)
