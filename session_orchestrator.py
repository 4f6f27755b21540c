"""
Glue between the signaling connection, the negotiation state machine and
whatever front end drives the session (the CLI in ``voice_client``).

Front ends call ``start_search``, ``next_partner``, ``hang_up``, ``send_text``
and ``toggle_mute`` and listen for ``state_changed``, ``matched``,
``remote_stream_ready``, ``chat_message`` and ``media_error``.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pyee.asyncio import AsyncIOEventEmitter

from negotiation import MediaBackend, NegotiationState, NegotiationStateMachine
from signaling_client import DISCONNECTED
from signaling_protocol import CONNECTED, ERROR, HANGUP, JOIN_WAITING_POOL, MATCHED, SIGNAL, USER_LEFT

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    IDLE = "IDLE"
    SEARCHING = "SEARCHING"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


class Sender(str, Enum):
    SELF = "self"
    PEER = "peer"


@dataclass
class ChatMessage:
    id: int
    text: str
    sender: Sender


class SessionOrchestrator(AsyncIOEventEmitter):
    def __init__(self, backend: MediaBackend, transport, negotiation_timeout: Optional[float] = None,
                 auto_rejoin: bool = False):
        super().__init__()
        self.transport = transport
        self.auto_rejoin = auto_rejoin
        self.machine = NegotiationStateMachine(backend, self._send_signal, negotiation_timeout)
        self.app_state = AppState.IDLE
        self.messages: List[ChatMessage] = []
        self.client_id: Optional[str] = None
        self.last_media_error: Optional[str] = None
        self.status_message: Optional[str] = None
        self._last_partner_id: Optional[str] = None
        self._message_ids = itertools.count(1)

        self.machine.on("state_changed", self._on_negotiation_state)
        self.machine.on("message", self._on_peer_message)
        self.machine.on("remote_stream_ready", self._on_remote_stream)
        self.machine.on("media_error", self._on_media_error)
        self.machine.on("closed", self._on_session_closed)
        self.machine.on("failed", self._on_session_failed)

    # ---- observable state ---------------------------------------------

    @property
    def partner_id(self) -> Optional[str]:
        return self.machine.partner_id

    @property
    def negotiation_state(self) -> NegotiationState:
        return self.machine.state

    @property
    def remote_track(self):
        return self.machine.remote_track

    @property
    def is_muted(self) -> bool:
        return self.machine.muted

    def _set_state(self, new_state: AppState) -> None:
        if new_state is self.app_state:
            return
        logger.info(f"App state: {self.app_state.value} -> {new_state.value}")
        self.app_state = new_state
        self.emit("state_changed", new_state)

    # ---- front-end operations -----------------------------------------

    async def start_search(self) -> bool:
        if self.client_id is None:
            logger.warning("Cannot search: not connected to the signaling server.")
            return False
        if self.machine.state in (NegotiationState.NEGOTIATING, NegotiationState.CONNECTED):
            # Still paired on the server; a join would be ignored until the pairing is dropped.
            self.transport.emit(HANGUP, {"partnerId": self.machine.partner_id})
        self.messages.clear()
        await self.machine.reset()
        self.last_media_error = None
        self.status_message = "Searching for a partner..."
        self.machine.begin_search()
        self._set_state(AppState.SEARCHING)
        self.transport.emit(JOIN_WAITING_POOL)
        return True

    async def hang_up(self) -> None:
        """Stop: end the call (or the search) and stay idle."""
        self.transport.emit(HANGUP, {"partnerId": self.machine.partner_id or self._last_partner_id})
        await self.machine.hang_up()
        self.status_message = "You stopped the chat."
        self._set_state(AppState.IDLE)

    async def next_partner(self) -> bool:
        """Hang up on the current partner and look for a new one."""
        self.transport.emit(HANGUP, {"partnerId": self.machine.partner_id or self._last_partner_id})
        await self.machine.hang_up()
        return await self.start_search()

    def send_text(self, text: str) -> bool:
        if not text.strip():
            return False
        sent = self.machine.send_text(text)
        message = ChatMessage(id=next(self._message_ids), text=text, sender=Sender.SELF)
        self.messages.append(message)
        self.emit("chat_message", message)
        return sent

    def toggle_mute(self) -> bool:
        return self.machine.toggle_mute()

    # ---- signaling events ---------------------------------------------

    async def handle_event(self, event: str, fields: Dict[str, Any]) -> None:
        if event == CONNECTED:
            self.client_id = fields.get("clientId")
            self.machine.client_id = self.client_id

        elif event == MATCHED:
            await self._on_matched(fields.get("partnerId"), fields.get("caller"))

        elif event == SIGNAL:
            signal_data = fields.get("signalData")
            if isinstance(signal_data, dict):
                await self.machine.handle_signal(signal_data)
            else:
                logger.warning("Ignoring signal without signalData.")

        elif event == USER_LEFT:
            if self.app_state in (AppState.CONNECTING, AppState.CONNECTED):
                self.status_message = "Your partner left the chat."
                self._set_state(AppState.DISCONNECTED)
                await self.machine.peer_left()
                if self.auto_rejoin:
                    await self.start_search()

        elif event == ERROR:
            logger.warning(f"Signaling server reported an error: {fields.get('message')}")

        elif event == DISCONNECTED:
            self.client_id = None
            self.machine.client_id = None
            await self.machine.reset()
            self.status_message = "Lost connection to the signaling server."
            self._set_state(AppState.IDLE)

        else:
            logger.debug(f"Unhandled signaling event: {event}")

    async def _on_matched(self, partner_id: Optional[str], caller_id: Optional[str]) -> None:
        if not partner_id:
            logger.warning("Ignoring matched event without partnerId.")
            return
        if self.machine.state is not NegotiationState.AWAITING_MATCH:
            logger.warning(f"Matched with '{partner_id}' while {self.machine.state.value}. Hanging up.")
            self.transport.emit(HANGUP, {"partnerId": partner_id})
            return

        self._last_partner_id = partner_id
        self.status_message = "Partner found. Connecting..."
        self._set_state(AppState.CONNECTING)
        self.emit("matched", partner_id)
        await self.machine.on_matched(partner_id, caller_id)

        if self.machine.state is NegotiationState.FAILED and self.machine.last_media_error:
            await self.machine.reset()
            self._set_state(AppState.IDLE)

    def _send_signal(self, partner_id: str, signal_data: Dict[str, Any]) -> None:
        self.transport.emit(SIGNAL, {"partnerId": partner_id, "signalData": signal_data})

    # ---- negotiation events -------------------------------------------

    def _on_negotiation_state(self, state: NegotiationState) -> None:
        if state is NegotiationState.CONNECTED:
            self.status_message = "Connected. Say hi!"
            self._set_state(AppState.CONNECTED)

    def _on_peer_message(self, text: str) -> None:
        message = ChatMessage(id=next(self._message_ids), text=str(text), sender=Sender.PEER)
        self.messages.append(message)
        self.emit("chat_message", message)

    def _on_remote_stream(self, track) -> None:
        self.emit("remote_stream_ready", track)

    def _on_media_error(self, message: str) -> None:
        self.last_media_error = message
        self.status_message = message
        self.emit("media_error", message)

    def _on_session_closed(self, reason: str) -> None:
        if reason != "peer disconnected":
            return
        # The call dropped at the ICE level; free the pairing on the server too.
        self.transport.emit(HANGUP, {"partnerId": self._last_partner_id})
        self.status_message = "Peer disconnected."
        self._set_state(AppState.DISCONNECTED)
        if self.auto_rejoin:
            asyncio.ensure_future(self.start_search())

    def _on_session_failed(self, reason: str) -> None:
        self.transport.emit(HANGUP, {"partnerId": self._last_partner_id})
        if reason == self.last_media_error:
            return
        self.status_message = f"Call failed: {reason}."
        self._set_state(AppState.DISCONNECTED)
