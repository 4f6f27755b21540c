"""
Client pairing logic: the waiting pool and the partner directory
"""
import logging
from typing import Iterable, List, Optional

from signaling_protocol import MATCHED, USER_LEFT, caller_for
from signaling_service.broadcast import flush_clients, queue_event
from signaling_service.models import ServiceState

logger = logging.getLogger(__name__)


def _pop_next_waiting(state: ServiceState) -> Optional[str]:
    """Pop the longest-waiting client that is still connected. Caller holds the lock."""
    while state.waiting_pool:
        candidate_id = state.waiting_pool.pop(0)
        if candidate_id in state.clients and candidate_id not in state.partners:
            return candidate_id
        logger.warning(f"Pairing: Client '{candidate_id}' in waiting pool is stale. Removing.")
    return None


async def join_waiting_pool(state: ServiceState, client_id: str) -> Optional[str]:
    """Pair ``client_id`` with the head of the pool, or queue it.

    Returns the partner id when a pair was made. Joining while already
    waiting or already paired is a no-op.
    """
    async with state.lock:
        if client_id not in state.clients:
            logger.warning(f"Pairing: Client '{client_id}' is not registered. Ignoring join.")
            return None
        if client_id in state.partners or client_id in state.waiting_pool:
            logger.info(f"Pairing: Client '{client_id}' is already {state.status_of(client_id)}. Ignoring join.")
            return None

        partner_id = _pop_next_waiting(state)
        if partner_id is None:
            state.waiting_pool.append(client_id)
            logger.info(f"Pairing: Client '{client_id}' joined the waiting pool. Waiting: {len(state.waiting_pool)}")
            return None

        state.partners[client_id] = partner_id
        state.partners[partner_id] = client_id
        caller_id = caller_for(client_id, partner_id)
        logger.info(f"Pairing: Paired '{client_id}' with '{partner_id}'. Caller: '{caller_id}'.")

        # Queued under the lock so no relayed signal can overtake a matched event.
        queue_event(state, client_id, MATCHED, {"partnerId": partner_id, "caller": caller_id})
        queue_event(state, partner_id, MATCHED, {"partnerId": client_id, "caller": caller_id})

    await flush_clients(state, [client_id, partner_id])
    return partner_id


async def leave(state: ServiceState, client_id: str) -> Optional[str]:
    """Take ``client_id`` out of the pool and the directory.

    The former partner, if any, is told with ``user_left``. Returns that
    partner's id. Calling it again for the same client does nothing.
    """
    async with state.lock:
        if client_id in state.waiting_pool:
            state.waiting_pool.remove(client_id)
            logger.info(f"Pairing: Client '{client_id}' removed from the waiting pool.")

        partner_id = state.partners.get(client_id)
        if partner_id is None:
            return None

        if state.partners.get(partner_id) != client_id:
            logger.error(f"Pairing: Directory asymmetry between '{client_id}' and '{partner_id}'. Forcing both out.")
            notified = force_unpair_locked(state, [client_id, partner_id], skip_notify=[client_id])
        else:
            del state.partners[client_id]
            del state.partners[partner_id]
            logger.info(f"Pairing: Cleaned up session between '{client_id}' and '{partner_id}'.")
            queue_event(state, partner_id, USER_LEFT)
            notified = [partner_id]

    await flush_clients(state, notified)
    return partner_id


def force_unpair_locked(state: ServiceState, client_ids: Iterable[str], skip_notify: Iterable[str] = ()) -> List[str]:
    """Drop every directory entry touching ``client_ids`` and queue ``user_left``.

    Caller holds the lock and flushes the returned ids after releasing it.
    """
    affected = set(client_ids)
    for key, value in list(state.partners.items()):
        if key in affected or value in affected:
            affected.update((key, value))
    for affected_id in affected:
        state.partners.pop(affected_id, None)
        if affected_id in state.waiting_pool:
            state.waiting_pool.remove(affected_id)
    notified = sorted(affected - set(skip_notify))
    for affected_id in notified:
        queue_event(state, affected_id, USER_LEFT)
    return notified


def find_directory_violations(state: ServiceState) -> List[str]:
    """Ids breaking pool exclusivity or directory symmetry (empty when consistent)."""
    violations = []
    for client_id, partner_id in state.partners.items():
        if state.partners.get(partner_id) != client_id or client_id == partner_id:
            violations.append(client_id)
        elif client_id in state.waiting_pool:
            violations.append(client_id)
    if len(set(state.waiting_pool)) != len(state.waiting_pool):
        violations.extend(cid for cid in state.waiting_pool if state.waiting_pool.count(cid) > 1)
    return sorted(set(violations))
