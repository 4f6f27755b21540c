"""
Signal relay between paired clients
"""
import logging
from typing import Any, Dict, Optional

from signaling_protocol import SIGNAL, signal_kind
from signaling_service.broadcast import flush_client, flush_clients, queue_event
from signaling_service.models import ServiceState
from signaling_service.pairing import force_unpair_locked

logger = logging.getLogger(__name__)


async def relay_signal(state: ServiceState, from_client_id: str, signal_data: Dict[str, Any],
                       claimed_partner_id: Optional[str] = None) -> bool:
    """Forward ``signal_data`` verbatim to the directory partner of ``from_client_id``.

    Routing only ever follows the directory; ``claimed_partner_id`` (what the
    client thinks its partner is) is just compared for logging. Returns True
    when the payload was handed to the partner's socket.
    """
    async with state.lock:
        partner_id = state.partners.get(from_client_id)
        if partner_id is None:
            logger.debug(f"Relay: Dropping signal from '{from_client_id}': no partner.")
            return False
        if state.partners.get(partner_id) != from_client_id:
            logger.error(f"Relay: Directory asymmetry between '{from_client_id}' and '{partner_id}'. Forcing both out.")
            notified = force_unpair_locked(state, [from_client_id, partner_id])
            forced = True
        else:
            forced = False
            # Queued under the lock so it stays behind any matched / user_left already decided for the partner.
            queue_event(state, partner_id, SIGNAL, {"signalData": signal_data})

    if forced:
        await flush_clients(state, notified)
        return False

    if claimed_partner_id is not None and claimed_partner_id != partner_id:
        logger.warning(f"Relay: '{from_client_id}' addressed '{claimed_partner_id}' but is paired with '{partner_id}'.")

    logger.debug(f"Relay: {signal_kind(signal_data) or 'unknown'} from '{from_client_id}' to '{partner_id}'.")
    return await flush_client(state, partner_id)
