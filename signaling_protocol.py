"""
Event names and wire helpers shared by the signaling service and the voice client.

Every frame on the signaling websocket is a JSON object carrying the event
name under ``"type"`` and the event's fields next to it, e.g.::

    {"type": "signal", "partnerId": "3f2a...", "signalData": {"offer": {...}}}
"""
import json
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# server -> client
CONNECTED = "connected"
MATCHED = "matched"
USER_LEFT = "user_left"
ERROR = "error"

# client -> server
JOIN_WAITING_POOL = "join_waiting_pool"
LEAVE_WAITING_POOL = "leave_waiting_pool"
HANGUP = "hangup"

# both directions
SIGNAL = "signal"

SIGNAL_KINDS = ("offer", "answer", "candidate")


class Role(str, Enum):
    CALLER = "caller"
    CALLEE = "callee"


def caller_for(client_a: str, client_b: str) -> str:
    """Return the id that initiates the offer for the pair (the greater one)."""
    if client_a == client_b:
        raise ValueError(f"Cannot pair client '{client_a}' with itself")
    return max(client_a, client_b)


def is_caller(self_id: str, partner_id: str) -> bool:
    return caller_for(self_id, partner_id) == self_id


def role_for(self_id: str, partner_id: str, caller_id: Optional[str] = None) -> Role:
    """Resolve the local role.

    The server names the caller in the ``matched`` event; when it does not,
    both sides fall back to the same id comparison so they still agree.
    """
    if caller_id is None:
        caller_id = caller_for(self_id, partner_id)
    return Role.CALLER if caller_id == self_id else Role.CALLEE


def signal_kind(signal_data: Dict[str, Any]) -> Optional[str]:
    for kind in SIGNAL_KINDS:
        if signal_data.get(kind) is not None:
            return kind
    return None


def build_message(event: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    message = {"type": event}
    if payload:
        message.update(payload)
    return message


def encode_message(event: str, payload: Optional[Dict[str, Any]] = None) -> str:
    return json.dumps(build_message(event, payload))


def decode_message(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse one frame into ``(event, fields)``.

    Raises ``ValueError`` (``json.JSONDecodeError`` included) for anything that
    is not a JSON object with a string ``type``.
    """
    message = json.loads(raw)
    if not isinstance(message, dict):
        raise ValueError(f"Expected a JSON object, got {type(message).__name__}")
    event = message.pop("type", None)
    if not isinstance(event, str) or not event:
        raise ValueError("Message has no 'type' field")
    return event, message
